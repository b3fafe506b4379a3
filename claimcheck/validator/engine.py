"""
数值声明校验引擎：解析 → 核对 → 修正 编排器

执行顺序：
  1. ResponseParser 抽取声明与列表
  2. resolve_overlaps 去除重叠的冗余声明（保留最具体的规则）
  3. MathValidator 逐条核对（每次调用新建实例，解析缓存不跨会话）
  4. ResponseCorrector 生成并应用修正

输出处理规则：
  - auto_correct=False：只报告，不改写（动作放在 proposed_corrections）
  - block_on_critical=True 且出现 critical：标记 blocked=True，是否拦截由调用方决定
  - 任一环节出现意外异常：静默降级，原样返回
"""

from __future__ import annotations

import time
from collections import Counter
from datetime import datetime, timezone

import structlog

from claimcheck.observability.metrics import (
    BLOCKED_RESPONSE_TOTAL,
    CLAIMS_VALIDATED_TOTAL,
    CORRECTION_TOTAL,
    VALIDATION_DURATION,
    VALIDATION_ERROR_TOTAL,
)
from claimcheck.validator.math_validator import MathValidator
from claimcheck.validator.response_corrector import ResponseCorrector
from claimcheck.validator.response_parser import ResponseParser, resolve_overlaps
from claimcheck.validator.schemas import (
    CorrectedResponse,
    CorrectionMetadata,
    ToolResult,
    ValidationConfig,
    ValidationContext,
    ValidationResult,
    ValidationStats,
    max_severity,
)

log = structlog.get_logger()


def _passthrough(text: str) -> CorrectedResponse:
    """降级结果：原文返回，不带任何校验信息"""
    return CorrectedResponse(
        text=text,
        metadata=CorrectionMetadata(
            original_length=len(text),
            corrected_length=len(text),
            claims_validated=0,
            claims_corrected=0,
            lists_validated=0,
            lists_corrected=0,
        ),
    )


class ResponseValidationEngine:
    """
    回复校验引擎：对外唯一入口。

    应用启动时实例化一次，所有请求共享；Parser / Corrector 无状态，
    MathValidator 按调用新建。
    """

    def __init__(self, config: ValidationConfig | None = None) -> None:
        self.config = config or ValidationConfig.from_settings()
        self.parser = ResponseParser()
        self.corrector = ResponseCorrector(self.parser)

    def process(
        self,
        response_text: str,
        tool_results: list[ToolResult],
        conversation_id: str | None = None,
        config: ValidationConfig | None = None,
    ) -> CorrectedResponse:
        """
        校验并修正一条最终回复。

        不抛出异常：数据质量问题走「无法核实」分支，意外异常降级为原样返回。
        """
        cfg = config or self.config
        started = time.perf_counter()

        with structlog.contextvars.bound_contextvars(conversation_id=conversation_id):
            try:
                parsed = self.parser.parse(response_text)
                claims = resolve_overlaps(parsed.claims)
                validations = MathValidator(cfg).validate_all(claims, tool_results)
                result = self.corrector.correct_response(
                    parsed, validations, tool_results, auto_correct=cfg.auto_correct
                )
            except Exception as e:
                log.warning("回复校验异常，降级返回原文", error=str(e), exc_info=True)
                return _passthrough(response_text)

            failing_severity = max_severity(v.severity for v in validations if not v.is_valid)
            result.blocked = cfg.block_on_critical and "critical" in (result.severity, failing_severity)

            duration_ms = (time.perf_counter() - started) * 1000
            stats = self._build_stats(validations, result, conversation_id, duration_ms)
            self._record(stats, result, cfg)

        return result

    def validate_context(self, context: ValidationContext) -> CorrectedResponse:
        """按会话上下文校验"""
        return self.process(
            context.response_text,
            context.tool_results,
            conversation_id=context.conversation_id,
        )

    @staticmethod
    def _build_stats(
        validations: list[ValidationResult],
        result: CorrectedResponse,
        conversation_id: str | None,
        duration_ms: float,
    ) -> ValidationStats:
        failures = [v for v in validations if not v.is_valid]
        error_percents = [v.error_percent for v in failures if v.error_percent is not None]
        return ValidationStats(
            timestamp=datetime.now(timezone.utc),
            conversation_id=conversation_id,
            claims_validated=len(validations),
            errors_detected=len(failures),
            errors_by_type=dict(Counter(v.claim.claim_type for v in failures)),
            errors_by_severity=dict(Counter(v.severity for v in failures)),
            corrections_made=len(result.corrections),
            avg_error_percent=sum(error_percents) / len(error_percents) if error_percents else 0.0,
            validation_duration_ms=round(duration_ms, 3),
        )

    @staticmethod
    def _record(stats: ValidationStats, result: CorrectedResponse, cfg: ValidationConfig) -> None:
        """写 Prometheus 指标 + 汇总日志"""
        CLAIMS_VALIDATED_TOTAL.inc(stats.claims_validated)
        for v in result.validation_results:
            if not v.is_valid:
                VALIDATION_ERROR_TOTAL.labels(claim_type=v.claim.claim_type, severity=v.severity).inc()
        for action in result.corrections:
            CORRECTION_TOTAL.labels(correction_type=action.type).inc()
        if result.blocked:
            BLOCKED_RESPONSE_TOTAL.inc()
        VALIDATION_DURATION.observe(stats.validation_duration_ms)

        if not stats.errors_detected and not result.corrections and not result.proposed_corrections:
            log.debug("回复校验通过，无问题", claims_validated=stats.claims_validated)
            return

        # 按优先级权重排出最值得关注的问题，仅用于日志
        ranked = sorted(
            (v for v in result.validation_results if not v.is_valid),
            key=lambda v: (-cfg.priority_for(v.claim), v.claim.start),
        )
        log_fn = log.warning if result.blocked else log.info
        log_fn(
            "回复校验完成",
            claims_validated=stats.claims_validated,
            errors_detected=stats.errors_detected,
            errors_by_severity=stats.errors_by_severity,
            corrections_made=stats.corrections_made,
            proposed=len(result.proposed_corrections),
            severity=result.severity,
            blocked=result.blocked,
            top_issues=[v.claim.raw_text for v in ranked[:3]],
            avg_error_percent=round(stats.avg_error_percent, 2),
            duration_ms=stats.validation_duration_ms,
        )
