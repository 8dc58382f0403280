import json

import pytest

from errors import ContentFilterError
from extractor import FALLBACK_REASON, ExtractionFailed, ExtractionOk, Extractor, filter_attachments, load_prompts

PROMPTS = {
    "system": "Return JSON only.",
    "extraction": "来源：${source_name}\n链接：${url}\n正文：${text}",
}
URL = "https://zs.example.edu/info/1.htm"


def scripted(*replies):
    """Completion stub returning (or raising) each reply in turn."""
    calls = []

    async def completion(messages, **kwargs):
        calls.append((messages, kwargs))
        reply = replies[min(len(calls), len(replies)) - 1]
        if isinstance(reply, Exception):
            raise reply
        return reply

    completion.calls = calls
    return completion


def test_prompt_file_has_extraction_template():
    prompts = load_prompts()

    assert "${text}" in prompts["extraction"]
    assert "${url}" in prompts["extraction"]
    assert prompts["system"]


def test_messages_fill_template_and_truncate_input():
    extractor = Extractor(prompts=PROMPTS, completion=scripted("{}"), input_limit=10)

    messages = extractor.build_messages("一二三四五六七八九十十一十二", URL, "测试大学")

    assert messages[0] == {"role": "system", "content": "Return JSON only."}
    assert "来源：测试大学" in messages[1]["content"]
    assert messages[1]["content"].endswith("正文：一二三四五六七八九十")


def test_filter_attachments_keeps_documents_and_trusted_links():
    trusted = [{"name": "报名表", "url": "https://zs.example.edu/download.jsp?id=3"}]
    model = [
        {"name": "简章", "url": "https://zs.example.edu/files/a.PDF?v=2#page=1"},
        {"name": "简章", "url": "https://zs.example.edu/files/a.PDF"},
        {"name": "首页", "url": "https://zs.example.edu/index.htm"},
        {"name": "无链接"},
        "garbage",
    ]

    result = filter_attachments(model + trusted, trusted)

    assert result == [
        {"name": "简章", "url": "https://zs.example.edu/files/a.PDF"},
        {"name": "报名表", "url": "https://zs.example.edu/download.jsp?id=3"},
    ]


def test_trusted_attachments_survive_when_model_drops_them():
    trusted = [{"name": "报名表", "url": "https://zs.example.edu/download.jsp?id=3"}]

    assert filter_attachments([], trusted) == trusted


@pytest.mark.asyncio
async def test_successful_extraction_normalizes_record():
    reply = json.dumps({
        "is_relevant": True,
        "title": "强基计划招生简章",
        "key_points": "not a list",
        "attachments": [{"name": "首页", "url": "https://zs.example.edu/"}],
        "url": "https://elsewhere.example/",
    }, ensure_ascii=False)
    completion = scripted(reply)
    extractor = Extractor(prompts=PROMPTS, completion=completion)

    outcome = await extractor.attempt_extraction("正文", URL, "测试大学", [{"name": "附件", "url": "https://zs.example.edu/f.doc"}])

    assert isinstance(outcome, ExtractionOk)
    assert outcome.record["url"] == URL
    assert outcome.record["key_points"] == []
    assert outcome.record["attachments"] == [{"name": "附件", "url": "https://zs.example.edu/f.doc"}]
    assert completion.calls[0][1]["response_format"] == {"type": "json_object"}
    assert completion.calls[0][1]["raise_errors"] is True


@pytest.mark.asyncio
async def test_bad_json_then_success_uses_second_attempt():
    completion = scripted("not json", '{"is_relevant": false}')
    extractor = Extractor(prompts=PROMPTS, completion=completion, max_attempts=2)

    record = await extractor.extract("正文", URL, "测试大学")

    assert record["is_relevant"] is False
    assert len(completion.calls) == 2


@pytest.mark.asyncio
async def test_exhausted_attempts_return_manual_review_record():
    completion = scripted(ContentFilterError("blocked"), "[1, 2]")
    extractor = Extractor(prompts=PROMPTS, completion=completion, max_attempts=2)

    first = await extractor.attempt_extraction("正文", URL, "测试大学")
    assert isinstance(first, ExtractionFailed)
    assert "ContentFilterError" in first.last_error

    record = await extractor.extract("正文", URL, "测试大学")

    assert record["is_relevant"] is False
    assert record["reason"] == FALLBACK_REASON
    assert record["site"] == "测试大学"
    assert record["url"] == URL
    assert record["confidence"] == 0
