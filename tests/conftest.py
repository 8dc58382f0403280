import json

import pytest
import pytest_asyncio

from models import DatabaseQueue
from publisher import DeliveryResult
from transport import FetchResult


@pytest_asyncio.fixture
async def db(tmp_path):
    """A DatabaseQueue over a fresh sqlite file."""
    queue = DatabaseQueue(str(tmp_path / "harvester.db"))
    await queue.start()
    yield queue
    await queue.stop()


class FakeTransport:
    """Serves canned pages by URL and records every fetch."""

    def __init__(self, pages=None):
        self.pages = pages if pages is not None else {}
        self.calls = []

    async def fetch(self, url, etag=None, last_modified=None, extra_headers=None):
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return FetchResult(None, 404, final_url=url)
        if isinstance(page, FetchResult):
            return page
        return FetchResult(page, 200, final_url=url)

    async def probe_attachment(self, url):
        return False


class FakePublisher:
    def __init__(self, ok=True, reason=None):
        self.ok = ok
        self.reason = reason
        self.sent = []

    async def send(self, record):
        self.sent.append(record)
        return DeliveryResult(self.ok, self.reason)


class FakeExtractor:
    """Marks every page relevant unless its text contains a configured marker."""

    def __init__(self, irrelevant_marker=None):
        self.irrelevant_marker = irrelevant_marker
        self.calls = []

    async def extract(self, text, url, source_label, trusted_attachments=None):
        self.calls.append(url)
        relevant = not (self.irrelevant_marker and self.irrelevant_marker in text)
        return {
            "is_relevant": relevant,
            "school": source_label,
            "category": "通知",
            "title": None,
            "publish_date": None,
            "summary": "测试摘要",
            "key_points": [],
            "attachments": list(trusted_attachments or []),
            "url": url,
            "confidence": 0.9,
        }


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def fake_publisher():
    return FakePublisher()


def crawl_json(**kwargs) -> str:
    return json.dumps(kwargs, ensure_ascii=False)
