from datetime import datetime, timedelta, timezone

import pytest

from antibot import check_page, detect, format_block_marker, is_within_cooldown, parse_blocked_at
from errors import AntiBotBlockedError

BLOCKED_AT = datetime(2025, 3, 1, 8, 0, 0, 123000, tzinfo=timezone.utc)


def test_detect_finds_block_page_keywords():
    assert detect("<html><body>您的IP地址最近有可疑的攻击行为</body></html>") == "您的IP地址最近有可疑的攻击行为"
    assert detect("<p>访问受限</p>") == "访问受限"
    assert detect("<p>本科招生通知</p>") is None
    assert detect(None) is None


def test_marker_format_round_trips_block_time():
    marker = format_block_marker("黑名单", "https://zs.example.edu/list.htm", BLOCKED_AT)

    assert marker == "AntiBotBlocked: keyword=黑名单 url=https://zs.example.edu/list.htm at 2025-03-01T08:00:00.123Z"
    assert parse_blocked_at(marker) == BLOCKED_AT


def test_check_page_raises_with_marker_message():
    with pytest.raises(AntiBotBlockedError) as excinfo:
        check_page("<div>可疑攻击</div>", "https://zs.example.edu/", now=BLOCKED_AT)

    assert excinfo.value.keyword == "可疑攻击"
    assert str(excinfo.value).startswith("AntiBotBlocked: keyword=可疑攻击")
    check_page("<div>正常页面</div>", "https://zs.example.edu/")


def test_cooldown_holds_for_six_hours():
    marker = format_block_marker("访问受限", "https://zs.example.edu/", BLOCKED_AT)

    assert is_within_cooldown(marker, now=BLOCKED_AT + timedelta(hours=5))
    assert not is_within_cooldown(marker, now=BLOCKED_AT + timedelta(hours=7))


def test_ordinary_errors_do_not_trigger_cooldown():
    assert not is_within_cooldown("HTTP 500 while fetching list", now=BLOCKED_AT)
    assert not is_within_cooldown(None, now=BLOCKED_AT)
    assert parse_blocked_at("AntiBotBlocked: keyword=x url=y at not-a-date") is None
