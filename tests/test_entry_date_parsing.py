from datetime import datetime, timezone

import feedparser

from utils import parse_entry_timestamp


class DummyEntry(dict):
    """Dict that also exposes attributes like feedparser entries."""

    def __getattr__(self, item):
        try:
            return self[item]
        except KeyError as exc:
            raise AttributeError(item) from exc


def test_parse_date_without_weekday():
    entry = DummyEntry(
        pubDate="17 Nov 2025 00:00:00 +0000",
        id="https://example.edu/2025/11/17/post",
    )

    expected = int(datetime(2025, 11, 17, tzinfo=timezone.utc).timestamp())
    assert parse_entry_timestamp(entry) == expected


def test_parse_rfc822_date_with_weekday():
    entry = DummyEntry(pubDate="Sat, 15 Nov 2025 16:00:00 +0000")

    expected = int(datetime(2025, 11, 15, 16, 0, tzinfo=timezone.utc).timestamp())
    assert parse_entry_timestamp(entry) == expected


def test_parsed_struct_time_is_read_as_utc():
    entry = feedparser.FeedParserDict({
        "published_parsed": datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc).timetuple(),
    })

    expected = int(datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc).timestamp())
    assert parse_entry_timestamp(entry) == expected


def test_date_taken_from_entry_id_when_fields_missing():
    entry = DummyEntry(id="https://example.edu/news/2024/06/30/admissions")

    expected = int(datetime(2024, 6, 30, tzinfo=timezone.utc).timestamp())
    assert parse_entry_timestamp(entry) == expected


def test_entry_without_any_date_returns_none():
    entry = DummyEntry(title="No date here", id="urn:uuid:1234")

    assert parse_entry_timestamp(entry) is None
