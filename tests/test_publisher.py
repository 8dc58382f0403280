from datetime import datetime, timezone

import pytest
from aiohttp import ClientError

from publisher import MAX_MESSAGE_BYTES, WebhookPublisher, build_markdown, dedupe_key_points, is_near_deadline

NOW = datetime(2025, 3, 5, 8, 0, tzinfo=timezone.utc)


def make_record(**overrides):
    record = {
        "school": "测试大学",
        "title": "2025年强基计划招生简章",
        "category": "招生",
        "publish_date": "2025-03-05",
        "deadline": None,
        "summary": "强基计划报名4月10日开始。",
        "key_points": ["报名时间4月10日至4月30日", "需上传中学阶段成绩"],
        "attachments": [{"name": "[简章]", "url": "https://zs.example.edu/files/a.pdf"}],
        "url": "https://zs.example.edu/info/1.htm",
    }
    record.update(overrides)
    return record


def test_markdown_contains_card_sections():
    text = build_markdown(make_record(), now=NOW)

    assert text.startswith("【测试大学】2025年强基计划招生简章")
    assert "- 报名时间4月10日至4月30日" in text
    assert '<a href="https://zs.example.edu/files/a.pdf">简章</a>' in text
    assert text.endswith("🔗 [查看原文](https://zs.example.edu/info/1.htm)")


def test_near_deadline_gets_alarm_prefix():
    assert is_near_deadline("2025-03-07", now=NOW)
    assert not is_near_deadline("2025-03-20", now=NOW)
    assert not is_near_deadline("2025-03-01", now=NOW)
    assert not is_near_deadline("尽快", now=NOW)

    text = build_markdown(make_record(deadline="2025-03-07"), now=NOW)
    assert text.startswith("⏰ 【测试大学】")
    assert "⏳ 截止：2025-03-07" in text


def test_key_points_repeating_summary_are_dropped():
    points = dedupe_key_points("报名4月10日开始", ["报名 4月10日开始", "", "材料一", "材料二", "材料三"])

    assert points == ["材料一", "材料二", "材料三"]


def test_oversized_message_is_truncated_to_byte_limit():
    record = make_record(
        summary="很长的摘要",
        key_points=[],
        attachments=[{"name": f"附件{n}" * 20, "url": f"https://zs.example.edu/files/{n}.pdf"} for n in range(80)],
    )

    text = build_markdown(record, now=NOW)

    assert len(text.encode("utf-8")) <= MAX_MESSAGE_BYTES
    assert "(内容过长已截断)" in text
    assert text.endswith("🔗 [查看原文](https://zs.example.edu/info/1.htm)")
    text.encode("utf-8").decode("utf-8")


class FakeResponse:
    def __init__(self, status, text):
        self.status = status
        self._text = text

    async def text(self):
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, status=200, text='{"errcode":0,"errmsg":"ok"}', error=None):
        self.status = status
        self.text = text
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json))
        if self.error:
            raise self.error
        return FakeResponse(self.status, self.text)


async def no_sleep(seconds):
    no_sleep.calls.append(seconds)


no_sleep.calls = []


@pytest.mark.asyncio
async def test_send_success_posts_markdown_payload():
    session = FakeSession()
    publisher = WebhookPublisher(session, webhook_url="https://hook.example/send?key=k", mode="prod")

    result = await publisher.send(make_record())

    assert result.ok
    url, payload = session.posts[0]
    assert url == "https://hook.example/send?key=k"
    assert payload["msgtype"] == "markdown"
    assert payload["markdown"]["content"].startswith("【测试大学】")


@pytest.mark.asyncio
@pytest.mark.parametrize("errcode,advice", [
    (93000, "Robot removed"),
    (45009, "Max 20/min"),
    (40058, "4096"),
])
async def test_send_reports_known_errcodes(errcode, advice):
    session = FakeSession(text=f'{{"errcode":{errcode},"errmsg":"failed"}}')
    publisher = WebhookPublisher(session, webhook_url="https://hook.example/send", mode="prod")

    result = await publisher.send(make_record())

    assert not result.ok
    assert f"errcode={errcode}" in result.reason
    assert advice in result.reason


@pytest.mark.asyncio
async def test_send_http_and_network_failures():
    publisher = WebhookPublisher(FakeSession(status=502, text="bad gateway"), webhook_url="https://hook.example/send", mode="prod")
    assert (await publisher.send(make_record())).reason == "HTTP 502"

    publisher = WebhookPublisher(FakeSession(error=ClientError("boom")), webhook_url="https://hook.example/send", mode="prod")
    result = await publisher.send(make_record())
    assert not result.ok
    assert result.reason.startswith("Network error")


@pytest.mark.asyncio
async def test_missing_webhook_is_reported_without_posting():
    session = FakeSession()
    publisher = WebhookPublisher(session, webhook_url="", mode="prod")

    result = await publisher.send(make_record())

    assert (result.ok, result.reason) == (False, "WEBHOOK_NOT_CONFIGURED")
    assert session.posts == []


@pytest.mark.asyncio
async def test_canary_mode_uses_canary_hook_spacing_and_error_log():
    no_sleep.calls.clear()
    session = FakeSession(text='{"errcode":45009,"errmsg":"freq"}')
    publisher = WebhookPublisher(
        session,
        webhook_url="https://hook.example/prod",
        mode="canary",
        canary_url="https://hook.example/canary",
        canary_delay=4.2,
        sleeper=no_sleep,
    )

    await publisher.send(make_record())

    assert session.posts[0][0] == "https://hook.example/canary"
    assert no_sleep.calls == [4.2]
    assert [e.code for e in publisher.errors] == [45009]
