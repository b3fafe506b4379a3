"""ResponseValidationEngine：端到端场景"""

from __future__ import annotations

import pytest

from claimcheck.validator import ResponseValidationEngine, ValidationConfig
from claimcheck.validator.schemas import ValidationContext


@pytest.fixture
def engine() -> ResponseValidationEngine:
    return ResponseValidationEngine(ValidationConfig())


def test_exact_match_leaves_text_unchanged(engine, make_result, device_listing):
    text = "Connected devices: 12"
    result = engine.process(text, [make_result("list_devices", device_listing(connected=12, disconnected=3))])

    assert result.text == text
    assert not result.corrections_made
    assert not result.blocked
    assert len(result.validation_results) == 1
    assert result.validation_results[0].is_valid


def test_wrong_device_count_corrected_and_flagged(engine, make_result, device_listing):
    result = engine.process(
        "Connected devices: 9",
        [make_result("list_devices", device_listing(connected=12))],
        conversation_id="conv-1",
    )

    assert result.text == "Connected devices: 12"
    assert result.corrections_made
    assert len(result.corrections) == 1
    assert result.corrections[0].type == "replace"
    assert result.severity == "critical"
    assert result.blocked


def test_blocked_flag_respects_config(make_result, device_listing):
    engine = ResponseValidationEngine(ValidationConfig(block_on_critical=False))
    result = engine.process("Connected devices: 9", [make_result("list_devices", device_listing(connected=12))])

    assert result.severity == "critical"
    assert not result.blocked


def test_uptime_normalised_to_one_decimal(make_result):
    engine = ResponseValidationEngine(ValidationConfig(percentage_tolerance=0.0))
    results = [make_result("get_device_availability_report", {"uptime_percent": 98.7})]

    result = engine.process("Uptime: 98.73%", results)

    assert result.text == "Uptime: 98.7%"
    # 通用百分比与 uptime 重叠，去重后只有一条校验结果
    assert len(result.validation_results) == 1
    assert len(result.corrections) == 1
    assert result.severity == "major"
    assert not result.blocked


def test_uptime_within_default_tolerance_untouched(engine, make_result):
    results = [make_result("get_device_availability_report", {"uptime_percent": 98.7})]
    result = engine.process("Uptime: 98.73%", results)
    assert result.text == "Uptime: 98.73%"
    assert not result.corrections_made


def test_device_list_regenerated_when_list_disagrees(engine, make_result, device_listing):
    """正文 8 台正确，但列出了 12 台：按 Ground Truth 重建列表"""
    text = (
        "You currently have 8 connected devices.\n"
        "\n"
        "Currently online devices:\n"
        + "\n".join(f"{i}. gw-{i:02d} (IX20)" for i in range(1, 13))
        + "\n\nLet me know if you need anything else."
    )
    result = engine.process(text, [make_result("list_devices", device_listing(connected=8, disconnected=4))])

    assert result.corrections_made
    assert [a.type for a in result.corrections] == ["regenerate"]
    assert "You currently have 8 connected devices." in result.text
    assert result.text.endswith("\n\nLet me know if you need anything else.")

    body = result.text.split("Currently online devices:\n", 1)[1].split("\n\n", 1)[0]
    lines = body.split("\n")
    assert len(lines) == 8
    assert lines[0] == "1. gw-01 (IX20) - Last connected: Mar 5, 2025"
    assert "gw-09" not in result.text


def test_unverifiable_claim_left_alone(engine, make_result, device_listing):
    text = "Total: 1,500 messages processed."
    result = engine.process(text, [make_result("list_devices", device_listing(connected=3))])

    assert result.text == text
    assert not result.corrections_made
    v = result.validation_results[0]
    assert v.is_valid
    assert v.actual_value is None


def test_multiple_corrections_in_one_response(engine, make_result, device_listing):
    text = "Connected devices: 9\nThere are 5 alerts open.\nAverage: 25\n"
    results = [
        make_result("list_devices", device_listing(connected=12)),
        make_result("list_alerts", {"count": 3, "list": [{"id": 1}, {"id": 2}, {"id": 3}]}),
        make_result("get_stream_rollups", {"count": 3, "list": [{"value": 10}, {"value": 20}, {"value": 30}]}),
    ]
    result = engine.process(text, results)

    assert result.text == "Connected devices: 12\nThere are 3 alerts open.\nAverage: 20.00\n"
    assert len(result.corrections) == 3
    # 从右往左应用
    assert [a.start for a in result.corrections] == sorted((a.start for a in result.corrections), reverse=True)
    assert result.severity == "critical"
    assert result.metadata.claims_corrected == 3


def test_auto_correct_off_reports_without_rewriting(make_result, device_listing):
    engine = ResponseValidationEngine(ValidationConfig(auto_correct=False))
    text = "Connected devices: 9"
    result = engine.process(text, [make_result("list_devices", device_listing(connected=12))])

    assert result.text == text
    assert not result.corrections_made
    assert len(result.proposed_corrections) == 1
    # 未改写的回复仍按校验结果标记
    assert result.blocked


def test_per_call_config_override(engine, make_result, device_listing):
    results = [make_result("list_devices", device_listing(connected=12))]
    loose = engine.config.with_overrides(count_tolerance=5)

    result = engine.process("Connected devices: 9", results, config=loose)

    assert result.text == "Connected devices: 9"
    assert engine.config.count_tolerance == 0


def test_unexpected_error_degrades_to_passthrough(engine, monkeypatch, make_result):
    def boom(text):
        raise RuntimeError("parser exploded")

    monkeypatch.setattr(engine.parser, "parse", boom)
    result = engine.process("Connected devices: 9", [make_result("list_devices", {"count": 0, "list": []})])

    assert result.text == "Connected devices: 9"
    assert not result.corrections_made
    assert result.validation_results == []
    assert not result.blocked


def test_validate_context(engine, make_result, device_listing):
    context = ValidationContext(
        conversation_id="conv-42",
        message_count=3,
        tool_results=[make_result("list_devices", device_listing(connected=2))],
        response_text="Connected devices: 5",
    )
    result = engine.validate_context(context)
    assert result.text == "Connected devices: 2"


def test_no_tool_results_at_all(engine):
    text = "Connected devices: 9 and uptime: 99%"
    result = engine.process(text, [])
    assert result.text == text
    assert all(v.is_valid for v in result.validation_results)


def test_correct_mixed_status_answer_left_untouched(engine, make_result, device_listing):
    """离线数量正确时不能拿它去重建在线设备列表"""
    text = "Connected devices: 2\nDisconnected devices: 1\n\nConnected devices:\n1. gw-01\n2. gw-02\n"
    result = engine.process(text, [make_result("list_devices", device_listing(connected=2, disconnected=1))])

    assert all(v.is_valid for v in result.validation_results)
    assert result.text == text
    assert result.corrections == []
    assert not result.blocked


def test_failing_claim_does_not_regenerate_list_of_other_status(engine, make_result, device_listing):
    text = (
        "Connected devices: 3\n"
        "Disconnected devices: 5\n"
        "\n"
        "Connected devices:\n"
        "1. gw-01\n"
        "2. gw-02\n"
        "3. gw-03\n"
    )
    result = engine.process(text, [make_result("list_devices", device_listing(connected=3, disconnected=2))])

    assert result.text == text.replace("Disconnected devices: 5", "Disconnected devices: 2")
    assert [a.type for a in result.corrections] == ["replace"]
    assert "gw-04" not in result.text


def test_valid_claim_with_critical_severity_is_not_blocked(make_result, device_listing):
    engine = ResponseValidationEngine(ValidationConfig(count_tolerance=1))
    text = "Connected devices: 13"
    result = engine.process(text, [make_result("list_devices", device_listing(connected=12))])

    assert result.validation_results[0].is_valid
    assert result.validation_results[0].severity == "critical"
    assert result.text == text
    assert not result.blocked
