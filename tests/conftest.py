"""公共 fixture：工具结果构造器 + 配置缓存隔离"""

from __future__ import annotations

import itertools
import json
from typing import Any

import pytest

from claimcheck.config import get_settings
from claimcheck.validator.schemas import ToolResult


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """每个用例独立读取环境变量"""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_result():
    """构造 ToolResult，payload 为 dict/list 时自动序列化为 JSON"""
    ids = itertools.count(1)

    def _make(tool_name: str, payload: Any, is_error: bool = False, call_id: str | None = None) -> ToolResult:
        content = payload if isinstance(payload, str) else json.dumps(payload)
        return ToolResult(
            tool_call_id=call_id or f"toolu_{next(ids):03d}",
            tool_name=tool_name,
            content=content,
            is_error=is_error,
        )

    return _make


@pytest.fixture
def device_listing():
    """
    构造 list_devices 分页返回：前 connected 台在线，其后 disconnected 台离线。
    设备名依次为 gw-01, gw-02, ...
    """

    def _make(connected: int = 0, disconnected: int = 0, query: str | None = None) -> dict:
        devices = []
        for i in range(1, connected + disconnected + 1):
            devices.append({
                "name": f"gw-{i:02d}",
                "devConnectwareId": f"00000000-00000000-0000FFFF-{i:08X}",
                "dpDeviceType": "IX20",
                "dpLastConnectTime": "2025-03-05T10:00:00Z",
                "connection_status": "connected" if i <= connected else "disconnected",
            })
        payload: dict = {"count": len(devices), "list": devices}
        if query:
            payload["query"] = query
        return payload

    return _make
