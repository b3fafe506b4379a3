"""
Response Parser：从 LLM 最终回复中抽取数值声明与条目列表（确定性，零 LLM 成本）

原理：
1. 规则目录（CLAIM_PATTERNS）中的每条规则独立作用于「整段文本」，所有命中汇总后按起点排序
2. 识别「列表标题行」（如 "Connected devices:"），向后收集紧随其后的编号 / 项目符号条目
3. 为每个列表找到距离最近的同类计数声明，用于发现「正文说 8 台，实际列了 12 台」

注意：
- 规则允许重叠（通用 "N%" 与 "uptime: N%" 会同时命中同一段文字），Parser 不去重，
  由 resolve_overlaps() 在校验前按规则具体程度取舍
- 所有空白只匹配行内空白（[ \\t]），避免标题行吞掉下一行列表条目的序号
"""

from __future__ import annotations

import re
from bisect import bisect_right
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import structlog

from claimcheck.validator.schemas import (
    ClaimType,
    CountListMismatch,
    EntityType,
    ExtractedList,
    NumericClaim,
    ParsedResponse,
    ParseMetadata,
)

log = structlog.get_logger()

# 列表相邻条目之间允许的最大间隔（字符）
LIST_ITEM_GAP = 200
# 列表与其计数声明之间的最大距离（字符）
CLAIM_LIST_WINDOW = 500


def _int_value(m: re.Match) -> int:
    return int(m.group(1))


def _float_value(m: re.Match) -> int | float:
    raw = m.group(1).replace(",", "")
    return float(raw) if "." in raw else int(raw)


def _fixed(value: str) -> Callable[[re.Match], str]:
    return lambda m: value


@dataclass(frozen=True)
class ClaimPattern:
    """一条声明抽取规则，数值必须位于第 1 个捕获组"""

    name: str
    regex: re.Pattern
    claim_type: ClaimType
    entity: EntityType
    extract_value: Callable[[re.Match], int | float]
    extract_filter: Callable[[re.Match], str | None] | None = None
    specificity: int = 1  # 重叠取舍时越大越优先


def _rx(pattern: str) -> re.Pattern:
    return re.compile(pattern, re.IGNORECASE)


_NUM = r"(\d+(?:\.\d+)?)"

CLAIM_PATTERNS: tuple[ClaimPattern, ...] = (
    # "**Online (Connected):** 9 devices"
    ClaimPattern(
        "device_status_heading_online",
        _rx(r"\*{0,2}\b(?:online|connected|active)[ \t]*\([^)\n]*\)[ \t]*:\*{0,2}[ \t]*(\d+)[ \t]+devices?\b"),
        "count", "device", _int_value, _fixed("connected"), specificity=3,
    ),
    ClaimPattern(
        "device_status_heading_offline",
        _rx(r"\*{0,2}\b(?:offline|disconnected|inactive)[ \t]*\([^)\n]*\)[ \t]*:\*{0,2}[ \t]*(\d+)[ \t]+devices?\b"),
        "count", "device", _int_value, _fixed("disconnected"), specificity=3,
    ),
    # "Connected devices: 8"
    ClaimPattern(
        "device_label_connected",
        _rx(r"\b(?:connected|online|active)[ \t]+devices?:\*{0,2}[ \t]*(\d+)\b"),
        "count", "device", _int_value, _fixed("connected"), specificity=3,
    ),
    ClaimPattern(
        "device_label_disconnected",
        _rx(r"\b(?:disconnected|offline|inactive)[ \t]+devices?:\*{0,2}[ \t]*(\d+)\b"),
        "count", "device", _int_value, _fixed("disconnected"), specificity=3,
    ),
    # "8 connected devices"
    ClaimPattern(
        "device_inline_connected",
        _rx(r"\b(\d+)[ \t]+(?:connected|online|active)[ \t]+devices?\b"),
        "count", "device", _int_value, _fixed("connected"), specificity=3,
    ),
    ClaimPattern(
        "device_inline_disconnected",
        _rx(r"\b(\d+)[ \t]+(?:disconnected|offline|inactive)[ \t]+devices?\b"),
        "count", "device", _int_value, _fixed("disconnected"), specificity=3,
    ),
    # "Never Connected: 3 devices"
    ClaimPattern(
        "device_never_connected",
        _rx(r"\bnever[ \t]+connected[ \t]*:\*{0,2}[ \t]*(\d+)[ \t]+devices?\b"),
        "count", "device", _int_value, _fixed("never_connected"), specificity=3,
    ),
    # "Total devices: 72"
    ClaimPattern(
        "device_total",
        _rx(r"\*{0,2}\btotal[ \t]+devices?[ \t]*:\*{0,2}[ \t]*(\d+)\b"),
        "count", "device", _int_value, _fixed("total"), specificity=3,
    ),
    # 通用百分比
    ClaimPattern(
        "percentage",
        _rx(r"(?<![\w.])" + _NUM + r"[ \t]*%"),
        "percentage", "other", _float_value, specificity=1,
    ),
    # "Uptime: 98.5%" / "98.5% uptime"
    ClaimPattern(
        "uptime_label",
        _rx(r"\buptime:\*{0,2}[ \t]*" + _NUM + r"[ \t]*%"),
        "percentage", "device", _float_value, _fixed("uptime"), specificity=3,
    ),
    ClaimPattern(
        "uptime_suffix",
        _rx(r"(?<![\w.])" + _NUM + r"[ \t]*%[ \t]+uptime\b"),
        "percentage", "device", _float_value, _fixed("uptime"), specificity=3,
    ),
    ClaimPattern(
        "stream_count",
        _rx(r"\b(\d+)[ \t]+streams?\b"),
        "count", "stream", _int_value, specificity=2,
    ),
    ClaimPattern(
        "alert_count",
        _rx(r"\b(\d+)[ \t]+alerts?\b"),
        "count", "alert", _int_value, specificity=2,
    ),
    ClaimPattern(
        "average",
        _rx(r"\baverage:\*{0,2}[ \t]*" + _NUM),
        "average", "other", _float_value, specificity=2,
    ),
    # "Total: 1,234.5"
    ClaimPattern(
        "sum",
        _rx(r"\btotal:\*{0,2}[ \t]*(\d+(?:,\d{3})*(?:\.\d+)?)"),
        "sum", "other", _float_value, specificity=2,
    ),
)

_SPECIFICITY: dict[str, int] = {p.name: p.specificity for p in CLAIM_PATTERNS}

# 引出列表的标题行，如 "Currently Online Devices:" / "**Disconnected devices:**"
_LIST_HEADER = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]+)?\*{0,2}(?:currently[ \t]+)?"
    r"(?:online|connected|disconnected|offline|active|inactive|never[ \t]+connected)[ \t]+"
    r"(?:devices?|streams?|alerts?|groups?|jobs?)"
    r"[ \t]*:?\*{0,2}:?[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)

# 条目文本末尾的括号说明（设备类型等）不计入条目名
_NUMBERED_ITEM = re.compile(r"^[ \t]*\d+[.)][ \t]+(.+?)(?:[ \t]*\([^()]*\))?[ \t]*$")
_BULLET_ITEM = re.compile(r"^[ \t]*[-*•][ \t]+(.+?)(?:[ \t]*\([^()]*\))?[ \t]*$")

_HEADER_ENTITY_KEYWORDS: tuple[tuple[str, EntityType], ...] = (
    ("device", "device"),
    ("stream", "stream"),
    ("alert", "alert"),
    ("group", "group"),
    ("job", "job"),
    ("firmware", "firmware"),
)


def detect_entity_from_header(header_text: str) -> EntityType:
    """按关键字推断列表标题对应的实体类型"""
    lower = header_text.lower()
    for keyword, entity in _HEADER_ENTITY_KEYWORDS:
        if keyword in lower:
            return entity
    return "other"


# 先判否定形式，"disconnected" 里包含 "connected"
_HEADER_STATUS_KEYWORDS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"\bnever[ \t]+connected\b", re.IGNORECASE), "never_connected"),
    (re.compile(r"\b(?:disconnected|offline|inactive)\b", re.IGNORECASE), "disconnected"),
    (re.compile(r"\b(?:connected|online|active)\b", re.IGNORECASE), "connected"),
)


def detect_status_from_header(header_text: str) -> str | None:
    """标题中的连接状态，映射到声明 filter 的取值"""
    for keyword_re, status in _HEADER_STATUS_KEYWORDS:
        if keyword_re.search(header_text):
            return status
    return None


def claim_matches_list(claim: NumericClaim, extracted: ExtractedList) -> bool:
    """
    声明能否作为列表的计数依据：实体相同、计数类，且连接状态一致。

    带状态的列表只匹配同状态的声明（"Total devices" 不匹配 "Connected devices:" 列表）；
    声明没有限定词时不比较状态。
    """
    if claim.entity != extracted.entity or claim.claim_type != "count":
        return False
    if claim.filter is None or extracted.status is None:
        return True
    return claim.filter == extracted.status


def _iter_lines(text: str, pos: int) -> Iterator[tuple[int, str]]:
    """从 pos 开始逐行产出 (行起点, 行文本)，行文本不含换行符"""
    while pos <= len(text):
        nl = text.find("\n", pos)
        if nl == -1:
            yield pos, text[pos:]
            return
        yield pos, text[pos:nl]
        pos = nl + 1


def _collect_items(text: str, pos: int, item_re: re.Pattern) -> tuple[list[str], int]:
    """
    从 pos 开始收集连续的条目。

    空行跳过；缩进且不匹配的行视为上一条目的续行；其他行终止列表。
    与上一段内容间隔超过 LIST_ITEM_GAP 的条目同样终止列表。
    """
    items: list[str] = []
    end = pos
    for line_start, line in _iter_lines(text, pos):
        if not line.strip():
            continue
        m = item_re.match(line)
        if m:
            if line_start - end > LIST_ITEM_GAP:
                break
            items.append(m.group(1).strip())
            end = line_start + len(line)
        elif items and line[:1] in (" ", "\t"):
            end = line_start + len(line)
        else:
            break
    return items, end


def resolve_overlaps(claims: list[NumericClaim]) -> list[NumericClaim]:
    """
    去除 span 重叠的冗余声明，保留最具体的一条。

    取舍顺序：规则具体程度 → span 更长 → 起点更靠前。结果按起点排序。
    """
    ranked = sorted(
        claims,
        key=lambda c: (-_SPECIFICITY.get(c.pattern, 0), -(c.end - c.start), c.start),
    )
    kept: list[NumericClaim] = []
    for claim in ranked:
        if any(claim.start < k.end and k.start < claim.end for k in kept):
            continue
        kept.append(claim)
    dropped = len(claims) - len(kept)
    if dropped:
        log.debug("重叠声明已去重", dropped=dropped, kept=len(kept))
    return sorted(kept, key=lambda c: c.start)


class ResponseParser:
    """回复解析器：纯函数式，无跨调用状态"""

    def __init__(self, patterns: tuple[ClaimPattern, ...] = CLAIM_PATTERNS) -> None:
        self._patterns = patterns

    def parse(self, text: str) -> ParsedResponse:
        """解析回复，抽取数值声明与条目列表"""
        claims = self.extract_claims(text)
        lists = self.extract_lists(text)

        log.debug(
            "回复解析完成",
            claims_found=len(claims),
            lists_found=len(lists),
            claim_types=[c.claim_type for c in claims],
            list_types=[lst.entity for lst in lists],
        )

        return ParsedResponse(
            original_text=text,
            claims=claims,
            lists=lists,
            metadata=ParseMetadata(
                total_lines=text.count("\n") + 1,
                total_chars=len(text),
                has_numeric_claims=bool(claims),
                has_lists=bool(lists),
            ),
        )

    def extract_claims(self, text: str) -> list[NumericClaim]:
        """所有规则独立扫描全文，汇总后按起点排序（稳定排序，同起点保持规则顺序）"""
        line_starts = [0] + [i + 1 for i, ch in enumerate(text) if ch == "\n"]
        lines = text.split("\n")

        claims: list[NumericClaim] = []
        for pattern in self._patterns:
            for m in pattern.regex.finditer(text):
                line_number = bisect_right(line_starts, m.start()) - 1
                claims.append(NumericClaim(
                    claim_type=pattern.claim_type,
                    entity=pattern.entity,
                    value=pattern.extract_value(m),
                    filter=pattern.extract_filter(m) if pattern.extract_filter else None,
                    start=m.start(),
                    end=m.end(),
                    value_start=m.start(1),
                    value_end=m.end(1),
                    raw_text=m.group(0),
                    context=lines[line_number],
                    line_number=line_number,
                    pattern=pattern.name,
                ))

        claims.sort(key=lambda c: c.start)
        return claims

    def extract_lists(self, text: str) -> list[ExtractedList]:
        """识别标题行，取编号 / 项目符号两种风格中命中更多的那个（平局取编号）"""
        lists: list[ExtractedList] = []
        for header in _LIST_HEADER.finditer(text):
            numbered, numbered_end = _collect_items(text, header.end(), _NUMBERED_ITEM)
            bullets, bullets_end = _collect_items(text, header.end(), _BULLET_ITEM)
            items, end = (
                (numbered, numbered_end) if len(numbered) >= len(bullets) else (bullets, bullets_end)
            )
            if not items:
                continue

            header_text = header.group(0)
            lists.append(ExtractedList(
                entity=detect_entity_from_header(header_text),
                items=items,
                item_count=len(items),
                start=header.start(),
                items_start=header.end(),
                end=end,
                header_text=header_text.strip(),
                status=detect_status_from_header(header_text),
            ))
        return lists

    def find_related_claim(
        self, extracted: ExtractedList, claims: list[NumericClaim]
    ) -> NumericClaim | None:
        """列表附近（CLAIM_LIST_WINDOW 内）距离最近、实体与状态一致的计数声明"""
        candidates = [
            c for c in claims
            if claim_matches_list(c, extracted)
            and abs(c.start - extracted.start) < CLAIM_LIST_WINDOW
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda c: abs(c.start - extracted.start))

    def detect_count_list_mismatches(self, parsed: ParsedResponse) -> list[CountListMismatch]:
        """正文声明数量 ≠ 列表实际条目数"""
        mismatches: list[CountListMismatch] = []
        for extracted in parsed.lists:
            claim = self.find_related_claim(extracted, parsed.claims)
            if claim is not None and claim.value != extracted.item_count:
                mismatches.append(CountListMismatch(
                    claim=claim,
                    related_list=extracted,
                    claimed_count=claim.value,
                    actual_count=extracted.item_count,
                ))
        return mismatches
