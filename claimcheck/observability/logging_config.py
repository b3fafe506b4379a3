"""
校验引擎日志配置：structlog，参数缺省时取 Settings（ENV / LOG_LEVEL / APP_NAME）

宿主服务启动时调用一次 setup_logging()；引擎本身只用 structlog.get_logger()，
不主动配置日志。
"""

import logging
import sys

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

from claimcheck.config import get_settings


def _add_service(service: str) -> Processor:
    """每条日志带上服务名，便于与宿主服务的日志区分"""

    def processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service)
        return event_dict

    return processor


def _resolve_level(level: str) -> int:
    log_level = logging.getLevelName(level.upper())
    # 未知级别名 getLevelName 返回字符串，回退到 INFO
    return log_level if isinstance(log_level, int) else logging.INFO


def setup_logging(env: str | None = None, level: str | None = None) -> None:
    """初始化结构化日志，conversation_id 经 contextvars 自动注入"""
    settings = get_settings()
    env = env or settings.ENV
    log_level = _resolve_level(level or settings.LOG_LEVEL)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_service(settings.APP_NAME),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if env == "production":
        # 异常栈转成结构化字段，JSON 里不出现多行文本
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors += [structlog.processors.StackInfoRenderer(), structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
