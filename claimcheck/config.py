"""
全局配置模块：通过 pydantic-settings 读取 .env 环境变量
"""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """校验引擎全局配置，从 .env 文件加载"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 应用 ──
    ENV: str = "development"  # development | production
    APP_NAME: str = "claimcheck"  # 日志 service 字段
    LOG_LEVEL: str = "INFO"

    # ── 数值容差 ──
    VALIDATION_COUNT_TOLERANCE: int = 0  # 计数类声明允许的绝对误差
    VALIDATION_PERCENTAGE_TOLERANCE: float = 0.1  # 百分比声明允许的百分点误差

    # ── 校验 / 修正行为 ──
    VALIDATION_STRICT_MODE: bool = True  # 预留，当前不影响判定
    VALIDATION_AUTO_CORRECT: bool = True  # 关闭后只报告不改写
    VALIDATION_BLOCK_ON_CRITICAL: bool = True  # critical 时标记 blocked，由调用方决定是否拦截

    # ── 优先级权重（仅用于排序 / 报告） ──
    VALIDATION_WEIGHT_DEVICE_COUNT: int = 10
    VALIDATION_WEIGHT_UPTIME: int = 8
    VALIDATION_WEIGHT_PERCENTAGE: int = 7
    VALIDATION_WEIGHT_STREAM_AGGREGATION: int = 5
    VALIDATION_WEIGHT_OTHER: int = 3

    @model_validator(mode="after")
    def _check_tolerances(self) -> "Settings":
        """容差不允许为负数，配置错误时启动即失败"""
        if self.VALIDATION_COUNT_TOLERANCE < 0 or self.VALIDATION_PERCENTAGE_TOLERANCE < 0:
            raise ValueError(
                "VALIDATION_COUNT_TOLERANCE / VALIDATION_PERCENTAGE_TOLERANCE 不能为负数"
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """单例获取配置（带缓存）"""
    return Settings()
