import asyncio
from asyncio import Semaphore

import pytest

import transport
from errors import TransportError
from transport import (
    CurlTransport,
    HttpTransport,
    TransportState,
    build_curl_args,
    build_request_headers,
    make_transport,
    parse_curl_marker,
)
from source_config import CrawlConfig
from utils import DomainRateLimiter


def make_state(limit=3):
    return TransportState(limiter=DomainRateLimiter(0, 0), curl_gate=Semaphore(limit))


def test_request_headers_quote_etag_and_apply_overrides():
    headers = build_request_headers("abc123", "Wed, 05 Mar 2025 08:00:00 GMT", {"Referer": "https://zs.example.edu/"})

    assert headers["If-None-Match"] == '"abc123"'
    assert headers["If-Modified-Since"] == "Wed, 05 Mar 2025 08:00:00 GMT"
    assert headers["Referer"] == "https://zs.example.edu/"
    assert "User-Agent" in headers
    assert build_request_headers('W/"weak"')["If-None-Match"] == 'W/"weak"'


def test_curl_marker_parsing():
    assert parse_curl_marker("200 https://zs.example.edu/final.htm", "https://zs.example.edu/") == (200, "https://zs.example.edu/final.htm")
    assert parse_curl_marker("404", "https://zs.example.edu/x") == (404, "https://zs.example.edu/x")
    with pytest.raises(TransportError):
        parse_curl_marker("curl: (6) Could not resolve host", "https://zs.example.edu/")


def test_curl_args_put_url_last():
    args = build_curl_args("https://zs.example.edu/", "/tmp/out.html", {"User-Agent": "UA"}, 20, ["--tlsv1.2"])

    assert args[-1] == "https://zs.example.edu/"
    assert args[args.index("-o") + 1] == "/tmp/out.html"
    assert args[args.index("--max-time") + 1] == "20"
    assert "--tlsv1.2" in args
    assert "User-Agent: UA" in args


def test_make_transport_follows_crawl_config():
    state = make_state()
    assert isinstance(make_transport(CrawlConfig.from_dict({"transport": "curl"}), None, state), CurlTransport)
    assert type(make_transport(CrawlConfig(), None, state)) is HttpTransport


class FakeProc:
    active = 0
    peak = 0

    def __init__(self, stdout, returncode=0):
        self._stdout = stdout
        self.returncode = returncode

    async def communicate(self):
        FakeProc.active += 1
        FakeProc.peak = max(FakeProc.peak, FakeProc.active)
        await asyncio.sleep(0.02)
        FakeProc.active -= 1
        return self._stdout, b""

    def kill(self):
        pass

    async def wait(self):
        return self.returncode


def fake_curl(status=200, body="<html>ok</html>"):
    async def create_subprocess_exec(binary, *args, stdout=None, stderr=None):
        output = args[args.index("-o") + 1]
        with open(output, "w", encoding="utf-8") as f:
            f.write(body)
        return FakeProc(f"{status} {args[-1]}".encode())
    return create_subprocess_exec


@pytest.mark.asyncio
async def test_curl_concurrency_never_exceeds_gate(monkeypatch):
    FakeProc.active = FakeProc.peak = 0
    monkeypatch.setattr(transport, "create_subprocess_exec", fake_curl())
    state = make_state(limit=3)
    curl = CurlTransport(None, state, timeout=5)

    results = await asyncio.gather(*(curl.fetch(f"https://site{n}.example.edu/list.htm") for n in range(8)))

    assert FakeProc.peak == 3
    assert all(r.status_code == 200 and r.body == "<html>ok</html>" for r in results)
    assert results[0].etag is None and results[0].last_modified is None


@pytest.mark.asyncio
async def test_curl_sends_no_conditional_tokens(monkeypatch):
    seen = []
    run = fake_curl()

    async def recording(binary, *args, **kwargs):
        seen.append(args)
        return await run(binary, *args, **kwargs)

    monkeypatch.setattr(transport, "create_subprocess_exec", recording)
    curl = CurlTransport(None, make_state(), timeout=5)
    result = await curl.fetch(
        "https://zs.example.edu/", etag='"v1"', last_modified="Mon, 03 Mar 2025 08:00:00 GMT",
        extra_headers={"Referer": "https://zs.example.edu/"},
    )

    assert result.status_code == 200
    flat = " ".join(seen[0])
    assert "If-None-Match" not in flat
    assert "If-Modified-Since" not in flat
    assert "Referer: https://zs.example.edu/" in flat


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [304, 302])
async def test_curl_non_success_statuses_carry_no_body(monkeypatch, status):
    monkeypatch.setattr(transport, "create_subprocess_exec", fake_curl(status=status, body="<html>stale</html>"))
    result = await CurlTransport(None, make_state(), timeout=5).fetch("https://zs.example.edu/")
    assert (result.body, result.status_code) == (None, status)


@pytest.mark.asyncio
async def test_curl_error_statuses_and_failures(monkeypatch):
    monkeypatch.setattr(transport, "create_subprocess_exec", fake_curl(status=403, body="denied"))
    curl = CurlTransport(None, make_state(), timeout=5)
    result = await curl.fetch("https://zs.example.edu/")
    assert (result.body, result.status_code) == (None, 403)

    async def missing_binary(*args, **kwargs):
        raise FileNotFoundError("curl")

    monkeypatch.setattr(transport, "create_subprocess_exec", missing_binary)
    result = await curl.fetch("https://zs.example.edu/")
    assert (result.body, result.status_code) == (None, 0)


class FakeResponse:
    def __init__(self, status, body=b"", headers=None, url="https://zs.example.edu/"):
        self.status = status
        self._body = body
        self.headers = headers or {}
        self.url = url
        self.charset = "utf-8"

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return self.response


@pytest.mark.asyncio
async def test_http_fetch_returns_tokens_and_not_modified():
    ok = FakeResponse(200, "通知公告".encode("utf-8"), {"ETag": '"v1"', "Last-Modified": "Wed, 05 Mar 2025 08:00:00 GMT"})
    session = FakeSession(ok)
    result = await HttpTransport(session, make_state()).fetch("https://zs.example.edu/")

    assert result.body == "通知公告"
    assert result.etag == '"v1"'
    assert result.last_modified == "Wed, 05 Mar 2025 08:00:00 GMT"

    session = FakeSession(FakeResponse(304))
    result = await HttpTransport(session, make_state()).fetch("https://zs.example.edu/", etag='"v1"')
    assert (result.body, result.status_code) == (None, 304)
    assert session.requests[0][1]["headers"]["If-None-Match"] == '"v1"'
