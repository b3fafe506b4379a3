"""数值声明校验引擎：解析 / 核对 / 修正"""

from claimcheck.validator.engine import ResponseValidationEngine
from claimcheck.validator.math_validator import MathValidator
from claimcheck.validator.response_corrector import ResponseCorrector
from claimcheck.validator.response_parser import ResponseParser, resolve_overlaps
from claimcheck.validator.schemas import (
    CorrectedResponse,
    CorrectionAction,
    ToolResult,
    ValidationConfig,
    ValidationResult,
)

__all__ = [
    "ResponseValidationEngine",
    "MathValidator",
    "ResponseCorrector",
    "ResponseParser",
    "resolve_overlaps",
    "CorrectedResponse",
    "CorrectionAction",
    "ToolResult",
    "ValidationConfig",
    "ValidationResult",
]
