"""
Response Corrector：根据校验结果就地改写回复中出错的数值片段

修正分五类，按优先级生成（互不相交，每条失败结果只归入一类）：
  1. 设备数量 + 关联设备列表（最高优先级，列表按 Ground Truth 重新生成）
  2. 其他实体的数量
  3. 百分比（不含 uptime 限定）
  4. uptime 百分比（连同 % 后缀一起替换）
  5. 均值 / 求和

提交算法：
- 所有动作的 span 都是原始文本坐标；按优先级合并后先剔除与已保留动作重叠的动作
- 再按起点降序（从右往左）拼接原文片段。右侧的编辑永远不会影响左侧尚未应用的坐标
"""

from __future__ import annotations

import re
from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog

from claimcheck.validator.response_parser import CLAIM_LIST_WINDOW, ResponseParser, claim_matches_list
from claimcheck.validator.schemas import (
    CorrectedResponse,
    CorrectionAction,
    CorrectionMetadata,
    ExtractedList,
    NumericClaim,
    ParsedResponse,
    ToolResult,
    ValidationResult,
    max_severity,
)

log = structlog.get_logger()

_PERCENT_SUFFIX = re.compile(r"[ \t]*%")

# 修正类别，顺序即优先级
CORRECTION_CLASSES = ("device_count", "count", "percentage", "uptime", "aggregation")


def correction_class(claim: NumericClaim) -> str | None:
    """声明归入哪一类修正，duration / ratio 等暂无修正策略"""
    if claim.claim_type == "count":
        return "device_count" if claim.entity == "device" else "count"
    if claim.claim_type == "percentage":
        return "uptime" if claim.filter == "uptime" else "percentage"
    if claim.claim_type in ("average", "sum"):
        return "aggregation"
    return None


def apply_corrections(text: str, actions: list[CorrectionAction]) -> str:
    """
    把一组互不重叠的修正动作应用到原文。

    从右往左只读原文拼接片段，结果与动作的输入顺序无关。
    """
    pieces: list[str] = []
    cursor = len(text)
    for action in sorted(actions, key=lambda a: a.start, reverse=True):
        if action.end > cursor:
            raise ValueError(f"修正动作 span 重叠: [{action.start}, {action.end})")
        pieces.append(text[action.end:cursor])
        pieces.append(action.corrected)
        cursor = action.start
    pieces.append(text[:cursor])
    return "".join(reversed(pieces))


def _fmt(value: int | float) -> str:
    """日志 / 原因描述里的数字：整数值不带小数点"""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _format_count(value: int | float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"


def _format_timestamp(raw: Any) -> str:
    """ISO-8601 → "Mar 5, 2025"，无法解析时原样输出"""
    if not isinstance(raw, str):
        return str(raw)
    try:
        ts = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    return f"{ts:%b} {ts.day}, {ts.year}"


def format_device_line(index: int, device: Any) -> str:
    """设备列表的一行：序号. 名称 (类型) - Last connected: 日期"""
    if not isinstance(device, dict):
        device = {"name": str(device)} if device not in (None, "") else {}

    name = device.get("name") or device.get("devConnectwareId") or device.get("id") or f"Device {index}"
    device_type = device.get("dpDeviceType") or device.get("device_type") or ""
    last_connect = device.get("dpLastConnectTime") or device.get("last_connect") or ""

    line = f"{index}. {name}"
    if device_type:
        line += f" ({device_type})"
    if last_connect:
        line += f" - Last connected: {_format_timestamp(last_connect)}"
    return line


class ResponseCorrector:
    """回复修正器：确定性，给定相同输入产出相同结果"""

    def __init__(self, parser: ResponseParser | None = None) -> None:
        self._parser = parser or ResponseParser()

    def correct_response(
        self,
        parsed: ParsedResponse,
        validations: list[ValidationResult],
        tool_results: list[ToolResult],
        auto_correct: bool = True,
    ) -> CorrectedResponse:
        """
        生成并应用修正。

        auto_correct=False 时只生成不应用：返回原文，动作放在 proposed_corrections。
        """
        original = parsed.original_text
        failures = [v for v in validations if not v.is_valid]
        mismatches = self._parser.detect_count_list_mismatches(parsed)

        if not failures and not mismatches:
            return self._unchanged(parsed, validations)

        log.info(
            "开始修正回复",
            failure_count=len(failures),
            severities=[f.severity for f in failures],
            count_list_mismatches=len(mismatches),
            tool_results=len(tool_results),
        )

        actions = self.plan_corrections(parsed, validations)

        if not auto_correct:
            result = self._unchanged(parsed, validations)
            result.proposed_corrections = actions
            return result

        text = apply_corrections(original, actions)
        applied = sorted(actions, key=lambda a: a.start, reverse=True)

        if applied:
            log.info(
                "回复已修正",
                corrections=len(applied),
                types=[a.type for a in applied],
                severity=max_severity(a.severity for a in applied),
            )

        return CorrectedResponse(
            text=text,
            corrections_made=bool(applied),
            corrections=applied,
            severity=max_severity(a.severity for a in applied),
            validation_results=validations,
            metadata=CorrectionMetadata(
                original_length=len(original),
                corrected_length=len(text),
                claims_validated=len(validations),
                claims_corrected=sum(1 for a in applied if a.type in ("replace", "remove")),
                lists_validated=len(parsed.lists),
                lists_corrected=sum(1 for a in applied if a.type in ("regenerate", "truncate")),
            ),
        )

    def plan_corrections(
        self, parsed: ParsedResponse, validations: list[ValidationResult]
    ) -> list[CorrectionAction]:
        """按类别优先级生成修正动作，并剔除与更高优先级动作重叠的部分"""
        by_class: dict[str, list[ValidationResult]] = {name: [] for name in CORRECTION_CLASSES}
        for v in validations:
            if v.is_valid:
                continue
            cls = correction_class(v.claim)
            if cls is not None:
                by_class[cls].append(v)

        pooled: list[CorrectionAction | None] = []
        pooled += self._fix_device_counts(parsed, by_class["device_count"], validations)
        pooled += [self._fix_number(v, "count", _format_count) for v in by_class["count"]]
        pooled += [self._fix_number(v, "percentage", lambda x: f"{x:.1f}") for v in by_class["percentage"]]
        pooled += [
            self._fix_number(v, "uptime", lambda x: f"{x:.1f}", percent_suffix=True)
            for v in by_class["uptime"]
        ]
        pooled += [
            self._fix_number(v, v.claim.claim_type, lambda x: f"{x:.2f}")
            for v in by_class["aggregation"]
        ]

        kept: list[CorrectionAction] = []
        for action in pooled:
            if action is None:
                continue
            clash = next((k for k in kept if k.overlaps(action)), None)
            if clash is not None:
                log.warning(
                    "修正动作 span 重叠，已丢弃低优先级动作",
                    dropped=action.original,
                    kept=clash.original,
                )
                continue
            kept.append(action)
        return kept

    # ── 各类修正 ──

    def _fix_device_counts(
        self,
        parsed: ParsedResponse,
        failures: list[ValidationResult],
        validations: list[ValidationResult],
    ) -> list[CorrectionAction | None]:
        """设备数量替换 + 关联列表重建（列表与声明数量不符时也会重建）"""
        actions: list[CorrectionAction | None] = []
        regenerated: set[int] = set()

        for failure in failures:
            claim = failure.claim
            if failure.actual_value is None:
                continue
            actions.append(self._replace_numeral(
                failure,
                _format_count(failure.actual_value),
                f"Device count was {_fmt(claim.value)}, actual count is {_fmt(failure.actual_value)}",
            ))

            related = self._nearest_list(parsed.lists, claim)
            if related is not None and related.item_count != failure.actual_value:
                actions.append(self._regenerate_device_list(parsed, related, failure))
                regenerated.add(related.start)

        # 正文数字本身正确、但列出的条目数对不上
        by_span = {(v.claim.start, v.claim.end, v.claim.pattern): v for v in validations}
        for mismatch in self._parser.detect_count_list_mismatches(parsed):
            extracted = mismatch.related_list
            if extracted.entity != "device" or extracted.start in regenerated:
                continue
            claim = mismatch.claim
            validation = by_span.get((claim.start, claim.end, claim.pattern))
            if validation is None or validation.actual_value is None:
                log.debug("列表数量不一致但无 Ground Truth，保持原样", header=extracted.header_text)
                continue
            if extracted.item_count == validation.actual_value:
                continue
            actions.append(self._regenerate_device_list(parsed, extracted, validation))
            regenerated.add(extracted.start)

        return actions

    @staticmethod
    def _nearest_list(lists: list[ExtractedList], claim: NumericClaim) -> ExtractedList | None:
        candidates = [
            lst for lst in lists
            if lst.entity == "device"
            and claim_matches_list(claim, lst)
            and abs(lst.start - claim.start) < CLAIM_LIST_WINDOW
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda lst: abs(lst.start - claim.start))

    @staticmethod
    def _regenerate_device_list(
        parsed: ParsedResponse, extracted: ExtractedList, validation: ValidationResult
    ) -> CorrectionAction | None:
        """按 Ground Truth 原始数组重建列表，条目数严格等于实际值"""
        ground_truth = validation.ground_truth
        if ground_truth is None or not isinstance(ground_truth.raw_data, list):
            log.debug("Ground Truth 不是数组，无法重建列表", header=extracted.header_text)
            return None

        count = int(validation.actual_value)
        devices = list(ground_truth.raw_data[:count])
        devices += [None] * (count - len(devices))
        body = "\n".join(format_device_line(i, d) for i, d in enumerate(devices, start=1))

        return CorrectionAction(
            type="regenerate",
            start=extracted.items_start,
            end=extracted.end,
            original=parsed.original_text[extracted.items_start:extracted.end],
            corrected="\n" + body,
            reason=(
                f"Device list had {extracted.item_count} items, but actual count is {count}. "
                "Regenerated list from tool results."
            ),
            severity="critical",
            related_list=extracted,
            related_claim=validation.claim,
        )

    def _fix_number(
        self,
        failure: ValidationResult,
        label: str,
        formatter: Callable[[int | float], str],
        percent_suffix: bool = False,
    ) -> CorrectionAction | None:
        """替换数值；没有实际值时用占位符移除整条声明"""
        claim = failure.claim
        if failure.actual_value is None:
            return CorrectionAction(
                type="remove",
                start=claim.start,
                end=claim.end,
                original=claim.raw_text,
                corrected=f"[{label} unavailable]",
                reason=f"Could not verify {label} from tool results",
                severity=failure.severity,
                related_claim=claim,
            )

        unit = "%" if claim.claim_type == "percentage" else ""
        formatted = formatter(failure.actual_value)
        return self._replace_numeral(
            failure,
            formatted,
            f"{label.capitalize()} was {_fmt(claim.value)}{unit}, actual is {formatted}{unit}",
            percent_suffix=percent_suffix,
        )

    @staticmethod
    def _replace_numeral(
        failure: ValidationResult,
        formatted: str,
        reason: str,
        percent_suffix: bool = False,
    ) -> CorrectionAction | None:
        """只替换声明中的数值本身，其余文字保持不变"""
        claim = failure.claim
        raw = claim.raw_text
        rel_start = claim.value_start - claim.start
        rel_end = claim.value_end - claim.start

        if percent_suffix:
            m = _PERCENT_SUFFIX.match(raw, rel_end)
            if m:
                rel_end = m.end()
                formatted += "%"

        corrected = raw[:rel_start] + formatted + raw[rel_end:]
        if corrected == raw:
            # 格式化后与原文一致，无需改写
            return None

        return CorrectionAction(
            type="replace",
            start=claim.start,
            end=claim.end,
            original=raw,
            corrected=corrected,
            reason=reason,
            severity=failure.severity,
            related_claim=claim,
        )

    @staticmethod
    def _unchanged(parsed: ParsedResponse, validations: list[ValidationResult]) -> CorrectedResponse:
        length = len(parsed.original_text)
        return CorrectedResponse(
            text=parsed.original_text,
            corrections_made=False,
            corrections=[],
            severity="none",
            validation_results=validations,
            metadata=CorrectionMetadata(
                original_length=length,
                corrected_length=length,
                claims_validated=len(validations),
                claims_corrected=0,
                lists_validated=len(parsed.lists),
                lists_corrected=0,
            ),
        )
