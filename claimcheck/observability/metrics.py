"""
校验引擎 Prometheus 指标定义

所有指标统一在此文件定义，引擎按需引用。宿主服务负责暴露 /metrics 端点。
"""

from prometheus_client import Counter, Histogram

# ── 声明级指标 ──

CLAIMS_VALIDATED_TOTAL = Counter(
    "claimcheck_claims_validated_total",
    "已校验的数值声明总数",
)

VALIDATION_ERROR_TOTAL = Counter(
    "claimcheck_validation_error_total",
    "校验不通过的声明总数",
    ["claim_type", "severity"],
)

# ── 修正级指标 ──

CORRECTION_TOTAL = Counter(
    "claimcheck_correction_total",
    "已应用的修正动作总数",
    ["correction_type"],  # replace/remove/regenerate/...
)

BLOCKED_RESPONSE_TOTAL = Counter(
    "claimcheck_blocked_response_total",
    "因 critical 错误被标记 blocked 的回复总数",
)

# ── 耗时 ──

VALIDATION_DURATION = Histogram(
    "claimcheck_validation_duration_ms",
    "单次回复校验 + 修正耗时（毫秒）",
    buckets=[1, 2, 5, 10, 20, 50, 100, 200, 500],
)
