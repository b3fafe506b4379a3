"""
数值声明校验 / 修正 数据结构定义

Parser → MathValidator → ResponseCorrector 之间的标准数据契约。
所有 span（start / end）都是「原始回复文本」坐标系下的半开区间 [start, end)，
修正动作即使作用在副本上也始终引用原始坐标。
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

from claimcheck.config import get_settings

ClaimType = Literal["count", "percentage", "average", "sum", "duration", "ratio"]
EntityType = Literal["device", "stream", "alert", "group", "job", "firmware", "other"]
Severity = Literal["critical", "major", "minor", "none"]
CorrectionType = Literal["replace", "remove", "add", "truncate", "regenerate"]

# none < minor < major < critical
SEVERITY_ORDER: dict[str, int] = {"none": 0, "minor": 1, "major": 2, "critical": 3}


def max_severity(severities: Iterable[str]) -> Severity:
    """取最高严重级别，空序列返回 none"""
    return max(severities, key=SEVERITY_ORDER.__getitem__, default="none")


# ── Parser 输出 ──


class NumericClaim(BaseModel):
    """回复文本中的一条数值声明"""

    claim_type: ClaimType
    entity: EntityType
    value: int | float
    filter: str | None = None          # 限定词，如 connected / uptime / total
    start: int                         # 匹配起点（原始文本坐标）
    end: int                           # 匹配终点（不含）
    value_start: int                   # 数值本身的起点，修正时只替换这一段
    value_end: int
    raw_text: str                      # 原始匹配，如 "Connected devices: 8"
    context: str = ""                  # 所在行全文
    line_number: int = 0               # 从 0 开始
    pattern: str = ""                  # 命中的规则名

    @model_validator(mode="after")
    def _check_span(self) -> "NumericClaim":
        if not self.start < self.end:
            raise ValueError(f"非法 span: [{self.start}, {self.end})")
        if not self.start <= self.value_start < self.value_end <= self.end:
            raise ValueError("数值 span 必须落在声明 span 内")
        return self


class ExtractedList(BaseModel):
    """标题行之后的条目列表"""

    entity: EntityType
    items: list[str] = Field(default_factory=list)
    item_count: int = 0
    start: int                         # 标题行起点
    items_start: int                   # 标题行之后（条目区起点）
    end: int                           # 最后一个条目行的行尾
    header_text: str = ""
    status: str | None = None          # 标题中的连接状态：connected / disconnected / never_connected

    @model_validator(mode="after")
    def _check_count(self) -> "ExtractedList":
        if self.item_count != len(self.items):
            raise ValueError("item_count 必须等于 items 长度")
        if self.item_count > 0 and not self.start < self.end:
            raise ValueError("非空列表的 span 不能为空")
        return self


class ParseMetadata(BaseModel):
    total_lines: int
    total_chars: int
    has_numeric_claims: bool
    has_lists: bool


class ParsedResponse(BaseModel):
    """Parser 完整输出"""

    original_text: str
    claims: list[NumericClaim] = Field(default_factory=list)
    lists: list[ExtractedList] = Field(default_factory=list)
    metadata: ParseMetadata


class CountListMismatch(BaseModel):
    """正文声明的数量与实际列出的条目数不一致"""

    claim: NumericClaim
    related_list: ExtractedList
    claimed_count: int | float
    actual_count: int


# ── 工具结果（输入语料） ──


class ToolResult(BaseModel):
    """
    一次工具调用的返回记录。

    content 为工具返回的原始字符串（通常是 JSON）；is_error=True 时 content 是
    纯文本错误信息，永远不会被当作 JSON 解析。
    """

    tool_call_id: str
    tool_name: str
    content: str = ""
    is_error: bool = False
    timestamp: datetime | None = None


# ── Validator 输出 ──


class GroundTruth(BaseModel):
    """从工具结果中还原出的真实值（单条声明校验期间临时创建）"""

    source: str                        # 工具名
    tool_call_id: str | None = None
    path: str                          # 取值路径描述（人类可读，非可执行）
    raw_data: Any = None               # 标量 / 数组 / 对象
    extraction_method: str = ""


class ValidationResult(BaseModel):
    """单条声明的校验结论"""

    claim: NumericClaim
    is_valid: bool
    actual_value: int | float | None = None
    claimed_value: int | float
    error: float | None = None
    error_percent: float | None = None
    severity: Severity = "none"
    ground_truth: GroundTruth | None = None
    validation_method: str = ""

    @model_validator(mode="after")
    def _unverifiable_is_valid(self) -> "ValidationResult":
        # 无法核实的声明一律视为通过，不打标
        if self.actual_value is None:
            self.is_valid = True
            self.severity = "none"
        return self


# ── Corrector 输出 ──


class CorrectionAction(BaseModel):
    """作用于原始文本坐标的一次编辑"""

    type: CorrectionType
    start: int
    end: int
    original: str
    corrected: str
    reason: str
    severity: Severity
    related_claim: NumericClaim | None = None
    related_list: ExtractedList | None = None

    def overlaps(self, other: "CorrectionAction") -> bool:
        return self.start < other.end and other.start < self.end


class CorrectionMetadata(BaseModel):
    original_length: int
    corrected_length: int
    claims_validated: int
    claims_corrected: int
    lists_validated: int
    lists_corrected: int


class CorrectedResponse(BaseModel):
    """引擎最终输出"""

    text: str
    corrections_made: bool = False
    corrections: list[CorrectionAction] = Field(default_factory=list)  # 按应用顺序
    severity: Severity = "none"
    validation_results: list[ValidationResult] = Field(default_factory=list)
    metadata: CorrectionMetadata
    blocked: bool = False              # block_on_critical 且 severity=critical
    proposed_corrections: list[CorrectionAction] = Field(default_factory=list)  # auto_correct 关闭时


# ── 监控 / 上下文 ──


class ValidationStats(BaseModel):
    """单次回复校验的统计（写指标 + 日志）"""

    timestamp: datetime
    conversation_id: str | None = None
    claims_validated: int = 0
    errors_detected: int = 0
    errors_by_type: dict[str, int] = Field(default_factory=dict)
    errors_by_severity: dict[str, int] = Field(default_factory=dict)
    corrections_made: int = 0
    avg_error_percent: float = 0.0
    validation_duration_ms: float = 0.0


class ValidationContext(BaseModel):
    """一次回答会话的校验上下文"""

    conversation_id: str
    message_count: int = 0
    tool_results: list[ToolResult] = Field(default_factory=list)
    response_text: str


# ── 运行时配置 ──


@dataclass
class PriorityWeights:
    """各类声明的优先级权重，仅用于排序 / 报告，不影响判定"""

    device_count: int = 10
    uptime: int = 8
    percentage: int = 7
    stream_aggregation: int = 5
    other: int = 3


@dataclass
class ValidationConfig:
    """校验策略配置，每个引擎实例一份（也可按调用覆盖）"""

    count_tolerance: int = 0
    percentage_tolerance: float = 0.1
    strict_mode: bool = True           # 预留
    auto_correct: bool = True
    block_on_critical: bool = True
    priority_weights: PriorityWeights = field(default_factory=PriorityWeights)

    @classmethod
    def from_settings(cls) -> "ValidationConfig":
        """从全局 Settings 加载，确保运维可通过环境变量 / .env 覆盖"""
        s = get_settings()
        return cls(
            count_tolerance=s.VALIDATION_COUNT_TOLERANCE,
            percentage_tolerance=s.VALIDATION_PERCENTAGE_TOLERANCE,
            strict_mode=s.VALIDATION_STRICT_MODE,
            auto_correct=s.VALIDATION_AUTO_CORRECT,
            block_on_critical=s.VALIDATION_BLOCK_ON_CRITICAL,
            priority_weights=PriorityWeights(
                device_count=s.VALIDATION_WEIGHT_DEVICE_COUNT,
                uptime=s.VALIDATION_WEIGHT_UPTIME,
                percentage=s.VALIDATION_WEIGHT_PERCENTAGE,
                stream_aggregation=s.VALIDATION_WEIGHT_STREAM_AGGREGATION,
                other=s.VALIDATION_WEIGHT_OTHER,
            ),
        )

    def with_overrides(self, **overrides: Any) -> "ValidationConfig":
        """按调用覆盖部分字段，返回新实例"""
        return replace(self, **overrides)

    def priority_for(self, claim: NumericClaim) -> int:
        """声明所属类别的权重"""
        w = self.priority_weights
        if claim.claim_type == "count" and claim.entity == "device":
            return w.device_count
        if claim.filter == "uptime":
            return w.uptime
        if claim.claim_type == "percentage":
            return w.percentage
        if claim.claim_type in ("average", "sum"):
            return w.stream_aggregation
        return w.other
