"""
Ground-Truth 提取策略目录

每条策略声明：适用的工具名、适用的声明类型、优先级，以及一个提取函数
    extract(claim, tool_results, cache) -> GroundTruth | None

MathValidator 按「声明类型匹配 + 工具结果中存在适用工具」过滤，按优先级从高到低
逐个尝试，第一个返回非 None 的策略胜出。实时列表接口优先于缓存 / 报表类接口。

工具返回的分页列表统一形如 {"count": N, "list": [...]}。
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from claimcheck.validator.schemas import ClaimType, GroundTruth, NumericClaim, ToolResult

log = structlog.get_logger()


class ToolResultCache:
    """
    工具结果 JSON 解析缓存，按 tool_call_id 索引。

    由 MathValidator 实例持有，不在调用方的 ToolResult 对象上写任何状态。
    is_error 的记录内容是纯文本错误信息，永远不解析。
    """

    def __init__(self) -> None:
        self._parsed: dict[str, Any] = {}

    def parse(self, result: ToolResult) -> Any:
        """返回解析后的 JSON，不可解析时返回 None"""
        if result.is_error:
            return None
        if result.tool_call_id in self._parsed:
            return self._parsed[result.tool_call_id]

        try:
            data = json.loads(result.content)
        except (json.JSONDecodeError, TypeError) as e:
            # 非 error 记录却不是 JSON，属于意外格式
            log.error("工具结果 JSON 解析失败", tool=result.tool_name, error=str(e))
            data = None

        self._parsed[result.tool_call_id] = data
        return data

    def __len__(self) -> int:
        return len(self._parsed)


ExtractFn = Callable[[NumericClaim, list[ToolResult], ToolResultCache], GroundTruth | None]


@dataclass(frozen=True)
class GroundTruthStrategy:
    """一条 Ground-Truth 提取策略"""

    name: str
    applicable_tools: tuple[str, ...]
    applicable_claim_types: tuple[ClaimType, ...]
    priority: int  # 越大越优先
    extract: ExtractFn

    def applies_to(self, claim: NumericClaim, available_tools: set[str]) -> bool:
        return (
            claim.claim_type in self.applicable_claim_types
            and any(tool in available_tools for tool in self.applicable_tools)
        )


# ── 工具函数 ──


def _results_for(tool_results: list[ToolResult], tool_name: str) -> list[ToolResult]:
    return [r for r in tool_results if r.tool_name == tool_name]


def _latest_listing(
    results: list[ToolResult], cache: ToolResultCache
) -> tuple[ToolResult, list] | None:
    """最近一次可解析的分页列表结果"""
    for result in reversed(results):
        data = cache.parse(result)
        if isinstance(data, dict) and isinstance(data.get("list"), list):
            return result, data["list"]
    return None


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_float(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _find_relevant_device_result(
    results: list[ToolResult], status: str | None, cache: ToolResultCache
) -> ToolResult | None:
    """
    在多次 list_devices 调用中挑出与声明限定词最相关的一次。

    1. 最近一次查询条件里带 connection_status="<status>" 的
    2. 最近一次首条设备状态就是 <status> 的
    3. 兜底：最近一次可解析的
    """
    listings = [(r, cache.parse(r)) for r in reversed(results)]
    listings = [(r, d) for r, d in listings if isinstance(d, dict) and isinstance(d.get("list"), list)]
    if not listings:
        return None
    if not status or status == "total":
        return listings[0][0]

    for result, data in listings:
        query = data.get("query")
        if isinstance(query, str):
            q = query.lower()
            if f'connection_status="{status}"' in q or f"connection_status='{status}'" in q:
                return result

    for result, data in listings:
        first = data["list"][0] if data["list"] else None
        if isinstance(first, dict) and first.get("connection_status") == status:
            return result

    return listings[0][0]


# ── 策略实现 ──


def _device_count_from_list_devices(
    claim: NumericClaim, tool_results: list[ToolResult], cache: ToolResultCache
) -> GroundTruth | None:
    if claim.entity != "device":
        return None

    chosen = _find_relevant_device_result(_results_for(tool_results, "list_devices"), claim.filter, cache)
    if chosen is None:
        return None

    devices = cache.parse(chosen)["list"]
    if claim.filter and claim.filter != "total":
        devices = [
            d for d in devices
            if isinstance(d, dict) and d.get("connection_status") == claim.filter
        ]
        path = f'list.filter(connection_status="{claim.filter}").length'
        condition = f'connection_status="{claim.filter}"'
    else:
        path = "list.length"
        condition = "no filter"

    return GroundTruth(
        source="list_devices",
        tool_call_id=chosen.tool_call_id,
        path=path,
        raw_data=devices,
        extraction_method=f"Counted {len(devices)} devices with {condition} in list_devices result",
    )


_REPORT_CATEGORIES = ("connected", "disconnected", "never_connected")


def _device_count_from_connection_report(
    claim: NumericClaim, tool_results: list[ToolResult], cache: ToolResultCache
) -> GroundTruth | None:
    if claim.entity != "device":
        return None

    reports = _results_for(tool_results, "get_connection_report")
    if not reports:
        return None
    report = reports[-1]
    data = cache.parse(report)
    if not isinstance(data, dict):
        return None

    def category_count(key: str) -> int | float | None:
        entry = data.get(key)
        count = entry.get("count") if isinstance(entry, dict) else None
        return count if _is_number(count) else None

    if claim.filter in _REPORT_CATEGORIES:
        if category_count(claim.filter) is None:
            return None
        # 原样交给 Validator 按路径取值
        return GroundTruth(
            source="get_connection_report",
            tool_call_id=report.tool_call_id,
            path=f"{claim.filter}.count",
            raw_data=data,
            extraction_method=f"Extracted {claim.filter} count from connection report",
        )

    if claim.filter in (None, "total"):
        counts = [c for c in (category_count(k) for k in _REPORT_CATEGORIES) if c is not None]
        if not counts:
            return None
        return GroundTruth(
            source="get_connection_report",
            tool_call_id=report.tool_call_id,
            path=" + ".join(f"{k}.count" for k in _REPORT_CATEGORIES),
            raw_data=sum(counts),
            extraction_method="Summed all connection categories from connection report",
        )

    return None


def _uptime_from_availability_report(
    claim: NumericClaim, tool_results: list[ToolResult], cache: ToolResultCache
) -> GroundTruth | None:
    if claim.filter != "uptime":
        return None

    reports = _results_for(tool_results, "get_device_availability_report")
    if not reports:
        return None
    report = reports[-1]
    data = cache.parse(report)
    if not isinstance(data, dict):
        return None

    key = next((k for k in ("uptime_percent", "availability_percent") if _is_number(data.get(k))), None)
    if key is None:
        return None

    return GroundTruth(
        source="get_device_availability_report",
        tool_call_id=report.tool_call_id,
        path=key,
        raw_data=data,
        extraction_method="Extracted uptime percentage from availability report",
    )


def _stream_aggregation_from_rollups(
    claim: NumericClaim, tool_results: list[ToolResult], cache: ToolResultCache
) -> GroundTruth | None:
    # 通用的 "Average: N" / "Total: N" 也按数据流汇总核对
    if claim.entity not in ("stream", "other"):
        return None

    found = _latest_listing(_results_for(tool_results, "get_stream_rollups"), cache)
    if found is None:
        return None
    rollup, items = found
    if not items:
        return None

    fallback_key = "avg" if claim.claim_type == "average" else "sum"
    values: list[float] = []
    for item in items:
        value = None
        if isinstance(item, dict):
            value = _to_float(item.get("value"))
            if value is None:
                value = _to_float(item.get(fallback_key))
        values.append(value if value is not None else 0.0)

    total = sum(values)
    computed = total / len(values) if claim.claim_type == "average" else total

    return GroundTruth(
        source="get_stream_rollups",
        tool_call_id=rollup.tool_call_id,
        path=f"list[].{claim.claim_type}",
        raw_data=computed,
        extraction_method=f"Calculated {claim.claim_type} over {len(values)} stream rollups",
    )


def _listing_counter(tool_name: str, entity: str, label: str) -> ExtractFn:
    """非设备实体的列表计数策略"""

    def extract(
        claim: NumericClaim, tool_results: list[ToolResult], cache: ToolResultCache
    ) -> GroundTruth | None:
        if claim.entity != entity:
            return None
        found = _latest_listing(_results_for(tool_results, tool_name), cache)
        if found is None:
            return None
        result, items = found
        return GroundTruth(
            source=tool_name,
            tool_call_id=result.tool_call_id,
            path="list.length",
            raw_data=items,
            extraction_method=f"Counted {len(items)} {label} in {tool_name} result",
        )

    return extract


STRATEGIES: tuple[GroundTruthStrategy, ...] = (
    GroundTruthStrategy(
        name="device_count_from_list_devices",
        applicable_tools=("list_devices",),
        applicable_claim_types=("count",),
        priority=10,
        extract=_device_count_from_list_devices,
    ),
    GroundTruthStrategy(
        name="uptime_from_availability_report",
        applicable_tools=("get_device_availability_report",),
        applicable_claim_types=("percentage",),
        priority=10,
        extract=_uptime_from_availability_report,
    ),
    GroundTruthStrategy(
        name="device_count_from_connection_report",
        applicable_tools=("get_connection_report",),
        applicable_claim_types=("count",),
        priority=9,
        extract=_device_count_from_connection_report,
    ),
    GroundTruthStrategy(
        name="alert_count_from_list_alerts",
        applicable_tools=("list_alerts",),
        applicable_claim_types=("count",),
        priority=9,
        extract=_listing_counter("list_alerts", "alert", "alerts"),
    ),
    GroundTruthStrategy(
        name="stream_count_from_list_streams",
        applicable_tools=("list_streams",),
        applicable_claim_types=("count",),
        priority=9,
        extract=_listing_counter("list_streams", "stream", "streams"),
    ),
    GroundTruthStrategy(
        name="stream_aggregation_from_rollups",
        applicable_tools=("get_stream_rollups",),
        applicable_claim_types=("average", "sum"),
        priority=8,
        extract=_stream_aggregation_from_rollups,
    ),
)
