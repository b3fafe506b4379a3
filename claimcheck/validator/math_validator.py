"""
Math Validator：用工具返回的真实数据核对回复中的数值声明（确定性，零 LLM 成本）

流程（单条声明）：
1. 从 STRATEGIES 中挑出适用的策略（声明类型匹配 + 工具结果里有对应工具），按优先级降序
2. 逐个尝试，第一个返回 GroundTruth 的策略胜出
3. 从 GroundTruth 中取出实际数值，与声明值比较，按容差判定是否通过，并评定严重级别

注意：
- 找不到 Ground Truth 时一律视为通过（severity=none, actual_value=None），
  宁可漏报也不做无依据的修正
- 容差边界包含在「通过」一侧
- 严重级别只看误差本身，与是否通过无关；是否修正只看 is_valid
"""

from __future__ import annotations

from typing import Any

import structlog

from claimcheck.validator.schemas import (
    ClaimType,
    GroundTruth,
    NumericClaim,
    Severity,
    ToolResult,
    ValidationConfig,
    ValidationResult,
)
from claimcheck.validator.strategies import STRATEGIES, GroundTruthStrategy, ToolResultCache

log = structlog.get_logger()

# 浮点表示误差，避免 98.6 vs 98.7 这类「恰好在边界」的比较被误判
_FLOAT_EPSILON = 1e-9


def extract_actual_value(ground_truth: GroundTruth) -> int | float | None:
    """
    从 GroundTruth 中取出用于比较的数值。

    - raw_data 是数组：取长度
    - raw_data 是数字：直接使用
    - raw_data 是对象：按 path（点分隔）逐级取值，"length" 段对数组取长度
    - 路径走不通：返回 None（视为无法核实）
    """
    data = ground_truth.raw_data
    if isinstance(data, list):
        return len(data)
    if isinstance(data, bool):
        return None
    if isinstance(data, (int, float)):
        return data
    if not isinstance(data, dict):
        return None

    value: Any = data
    for part in ground_truth.path.split("."):
        if part == "length" and isinstance(value, list):
            value = len(value)
        elif isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return None

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


class MathValidator:
    """
    数值声明校验器。

    持有一份 ToolResultCache，同一实例内多条声明共享解析结果；
    引擎每次调用新建实例，不同会话之间不共享任何可变状态。
    """

    def __init__(
        self,
        config: ValidationConfig | None = None,
        strategies: tuple[GroundTruthStrategy, ...] = STRATEGIES,
    ) -> None:
        self.config = config or ValidationConfig.from_settings()
        self._strategies = strategies
        self._cache = ToolResultCache()

    def validate(self, claim: NumericClaim, tool_results: list[ToolResult]) -> ValidationResult:
        """校验单条声明"""
        available = {r.tool_name for r in tool_results}
        # sorted 是稳定排序，同优先级保持目录顺序
        applicable = sorted(
            (s for s in self._strategies if s.applies_to(claim, available)),
            key=lambda s: s.priority,
            reverse=True,
        )

        ground_truth: GroundTruth | None = None
        actual: int | float | None = None
        for strategy in applicable:
            ground_truth = strategy.extract(claim, tool_results, self._cache)
            if ground_truth is None:
                continue
            actual = extract_actual_value(ground_truth)
            log.debug(
                "找到 Ground Truth",
                strategy=strategy.name,
                claim_type=claim.claim_type,
                claim_value=claim.value,
                actual_value=actual,
            )
            break

        if ground_truth is None or actual is None:
            return ValidationResult(
                claim=claim,
                is_valid=True,
                actual_value=None,
                claimed_value=claim.value,
                severity="none",
                validation_method="no_ground_truth_available",
            )

        error = abs(claim.value - actual)
        error_percent = error / actual * 100 if actual != 0 else 0.0

        is_valid = self._is_within_tolerance(claim.claim_type, error, error_percent)
        # 容差内的误差同样评级，设备数量只要有偏差就是 critical
        severity = self._calculate_severity(claim, error, error_percent)

        if not is_valid:
            log.warning(
                "数值声明校验不通过",
                claim=claim.raw_text,
                claimed_value=claim.value,
                actual_value=actual,
                error=error,
                error_percent=round(error_percent, 2),
                severity=severity,
            )

        return ValidationResult(
            claim=claim,
            is_valid=is_valid,
            actual_value=actual,
            claimed_value=claim.value,
            error=error,
            error_percent=error_percent,
            severity=severity,
            ground_truth=ground_truth,
            validation_method=f"validated_against_{ground_truth.source}",
        )

    def validate_all(
        self, claims: list[NumericClaim], tool_results: list[ToolResult]
    ) -> list[ValidationResult]:
        """逐条校验，结果顺序与输入一致"""
        return [self.validate(claim, tool_results) for claim in claims]

    def _is_within_tolerance(self, claim_type: ClaimType, error: float, error_percent: float) -> bool:
        if claim_type == "count":
            return error <= self.config.count_tolerance + _FLOAT_EPSILON
        if claim_type == "percentage":
            return error <= self.config.percentage_tolerance + _FLOAT_EPSILON
        # 其他类型（均值 / 求和 / ...）按相对误差比较
        return error_percent <= self.config.percentage_tolerance + _FLOAT_EPSILON

    @staticmethod
    def _calculate_severity(claim: NumericClaim, error: float, error_percent: float) -> Severity:
        """自上而下，第一条命中即返回"""
        # 设备数量出错一律 critical
        if claim.entity == "device" and claim.claim_type == "count" and error > 0:
            return "critical"
        if claim.filter == "uptime" or (claim.claim_type == "percentage" and error_percent > 5):
            return "major"
        if claim.claim_type == "count" and error_percent > 10:
            return "major"
        if error_percent > 1:
            return "minor"
        return "none"
