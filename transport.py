#!/usr/bin/env python3
"""
Page fetching for the harvester.

Two transports share one contract, ``fetch(url, etag, last_modified,
extra_headers) -> FetchResult``:

- HttpTransport issues requests through an aiohttp ClientSession.
- CurlTransport shells out to curl for sites that reject non-browser TLS
  fingerprints, bounded by a small FIFO semaphore.

Neither raises on network failure: problems are reported as ``body=None`` with
the HTTP status, or status 0 when no response was received. Request pacing
and the curl gate live on an injected TransportState.
"""

from asyncio import Semaphore, TimeoutError, wait_for, create_subprocess_exec
from asyncio.subprocess import PIPE
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from os import close, path, unlink
from tempfile import mkstemp
from time import monotonic
from typing import Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import UnicodeDammit

from config import config, get_logger
from errors import TransportError
from telemetry import trace_span
from utils import DomainRateLimiter

logger = get_logger("transport")

HTTP_NOT_MODIFIED = 304

BROWSER_ACCEPT = (
    "text/html,application/xhtml+xml,application/xml;q=0.9,"
    "image/avif,image/webp,image/apng,*/*;q=0.8"
)

ATTACHMENT_CONTENT_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument",
    "application/vnd.ms-excel",
    "application/zip",
    "application/x-zip-compressed",
    "application/x-rar-compressed",
)


@dataclass
class FetchResult:
    body: Optional[str]
    status_code: int
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    final_url: Optional[str] = None


@dataclass
class TransportState:
    """Mutable state shared by every transport in a process: pacing and the curl gate."""

    limiter: DomainRateLimiter
    curl_gate: Semaphore

    @classmethod
    def from_config(cls) -> "TransportState":
        return cls(
            limiter=DomainRateLimiter(config.PACING_MIN_SECONDS, config.PACING_MAX_SECONDS),
            curl_gate=Semaphore(config.CURL_MAX_CONCURRENCY),
        )


_default_state: Optional[TransportState] = None


def default_transport_state() -> TransportState:
    """The process-wide transport state used by the real entrypoints."""
    global _default_state
    if _default_state is None:
        _default_state = TransportState.from_config()
    return _default_state


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def build_request_headers(
    etag: Optional[str] = None,
    last_modified: Optional[str] = None,
    extra_headers: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Browser-like default headers, per-source overrides, then conditional tokens."""
    headers = {
        "User-Agent": config.USER_AGENT,
        "Accept": BROWSER_ACCEPT,
        "Accept-Language": config.ACCEPT_LANGUAGE,
    }
    headers.update(extra_headers or {})
    if etag:
        # Quote unquoted ETags; weak validators are sent as-is
        if not (etag.startswith('"') or etag.startswith('W/"')):
            etag = f'"{etag}"'
        headers["If-None-Match"] = etag
    if last_modified:
        normalized = normalize_http_date(last_modified)
        if normalized:
            headers["If-Modified-Since"] = normalized
        else:
            logger.warning(f"Invalid Last-Modified value, not sending header: {last_modified}")
    return headers


def decode_body(raw: bytes, declared_charset: Optional[str] = None) -> str:
    """Decode a response body, honoring the HTTP charset and then in-document hints."""
    hints = [declared_charset] if declared_charset else []
    dammit = UnicodeDammit(raw, hints, is_html=True)
    if dammit.unicode_markup is None:
        return raw.decode("utf-8", errors="replace")
    return dammit.unicode_markup


def looks_like_attachment(content_type: str, disposition: str) -> bool:
    content_type = (content_type or "").lower()
    disposition = (disposition or "").lower()
    if any(t in content_type for t in ATTACHMENT_CONTENT_TYPES):
        return True
    return "attachment" in disposition or "filename=" in disposition


class HttpTransport:
    """Fetches pages with aiohttp; the session is owned by the caller."""

    name = "http"

    def __init__(self, session: ClientSession, state: TransportState, timeout: Optional[int] = None):
        self.session = session
        self.state = state
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)

    @trace_span(
        "transport.fetch",
        tracer_name="transport",
        attr_from_args=lambda self, url, *a, **kw: {"http.url": url, "transport.name": self.name},
    )
    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> FetchResult:
        headers = build_request_headers(etag, last_modified, extra_headers)
        await self.state.limiter.acquire(url)
        try:
            async with self.session.get(
                url,
                headers=headers,
                timeout=self.timeout,
                max_redirects=config.MAX_REDIRECTS,
            ) as response:
                final_url = str(response.url)
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Not modified: {url}")
                    return FetchResult(None, HTTP_NOT_MODIFIED, final_url=final_url)
                if not 200 <= response.status < 300:
                    logger.error(f"Fetch failed for {url}: HTTP {response.status}")
                    return FetchResult(None, response.status, final_url=final_url)
                raw = await response.read()
                return FetchResult(
                    body=decode_body(raw, response.charset),
                    status_code=response.status,
                    etag=response.headers.get("ETag"),
                    last_modified=response.headers.get("Last-Modified"),
                    final_url=final_url,
                )
        except TimeoutError:
            logger.warning(f"Timeout fetching {url} (timeout={self.timeout.total}s)")
            return FetchResult(None, 0)
        except ClientError as e:
            logger.error(f"Network error for {url}: {e.__class__.__name__} {e}")
            return FetchResult(None, 0)

    async def probe_attachment(self, url: str) -> bool:
        """HEAD the URL and report whether it serves a downloadable document."""
        await self.state.limiter.acquire(url)
        try:
            async with self.session.head(
                url,
                headers={"User-Agent": config.USER_AGENT},
                timeout=self.timeout,
                allow_redirects=True,
            ) as response:
                if not 200 <= response.status < 300:
                    return False
                return looks_like_attachment(
                    response.headers.get("Content-Type", ""),
                    response.headers.get("Content-Disposition", ""),
                )
        except (TimeoutError, ClientError, ValueError) as e:
            logger.debug(f"Attachment probe failed for {url}: {e}")
            return False


def build_curl_args(
    url: str,
    output_path: str,
    headers: Dict[str, str],
    timeout: int,
    extra_args: Optional[List[str]] = None,
) -> List[str]:
    """curl argv (without the binary): fixed flags, source args, headers, then the URL."""
    args = [
        "-sS",
        "-L",
        "--compressed",
        "-o", output_path,
        "-w", "%{http_code} %{url_effective}",
        "--max-time", str(timeout),
    ]
    args.extend(extra_args or [])
    for key, value in headers.items():
        args.extend(["-H", f"{key}: {value}"])
    args.append(url)
    return args


def parse_curl_marker(stdout: str, url: str):
    """Split curl's ``-w`` output into (status, final_url)."""
    status_text, _, final_url = stdout.strip().partition(" ")
    try:
        status = int(status_text)
    except ValueError as e:
        raise TransportError(f"Unexpected curl output: {stdout.strip()[:200]!r}") from e
    return status, final_url.strip() or url


class CurlTransport(HttpTransport):
    """Fetches pages by running curl as a subprocess.

    Attachment probes still go through the aiohttp session. Response
    ETag/Last-Modified are not captured, so no conditional tokens are sent.
    """

    name = "curl"

    def __init__(
        self,
        session: ClientSession,
        state: TransportState,
        curl_args: Optional[List[str]] = None,
        timeout: Optional[int] = None,
        binary: Optional[str] = None,
    ):
        super().__init__(session, state)
        self.curl_args = list(curl_args or [])
        self.curl_timeout = timeout or config.CURL_TIMEOUT
        self.binary = binary or config.CURL_BINARY

    @trace_span(
        "transport.fetch",
        tracer_name="transport",
        attr_from_args=lambda self, url, *a, **kw: {"http.url": url, "transport.name": self.name},
    )
    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> FetchResult:
        headers = build_request_headers(None, None, extra_headers)
        await self.state.limiter.acquire(url)
        started = monotonic()
        try:
            async with self.state.curl_gate:
                status, final_url, raw = await self._run_curl(url, headers)
        except TransportError as e:
            logger.error(f"CurlFetchFailed: {e} url={url} ms={int((monotonic() - started) * 1000)}")
            return FetchResult(None, 0)

        logger.info(f"transport=curl url={url} status={status} ms={int((monotonic() - started) * 1000)}")
        if not 200 <= status < 300:
            logger.error(f"Curl fetch failed for {url}: {status}")
            return FetchResult(None, status, final_url=final_url)
        return FetchResult(decode_body(raw), status, final_url=final_url)

    async def _run_curl(self, url: str, headers: Dict[str, str]):
        fd, tmp_path = mkstemp(prefix="curl_fetch_", suffix=".html")
        close(fd)
        try:
            args = build_curl_args(url, tmp_path, headers, self.curl_timeout, self.curl_args)
            try:
                proc = await create_subprocess_exec(self.binary, *args, stdout=PIPE, stderr=PIPE)
            except OSError as e:
                raise TransportError(f"could not start {self.binary}: {e}") from e

            try:
                stdout, stderr = await wait_for(proc.communicate(), timeout=self.curl_timeout + 1)
            except TimeoutError as e:
                proc.kill()
                await proc.wait()
                raise TransportError(f"curl killed after {self.curl_timeout + 1}s") from e

            if proc.returncode != 0:
                detail = (stderr or b"").decode("utf-8", errors="replace").strip()
                raise TransportError(f"curl exited with code {proc.returncode}: {detail}")

            status, final_url = parse_curl_marker((stdout or b"").decode("utf-8", errors="replace"), url)
            with open(tmp_path, "rb") as f:
                raw = f.read()
            return status, final_url, raw
        finally:
            if path.exists(tmp_path):
                unlink(tmp_path)


def make_transport(crawl_config, session: ClientSession, state: TransportState) -> HttpTransport:
    """Pick the transport a source's crawl config asks for."""
    if crawl_config is not None and crawl_config.transport == "curl":
        return CurlTransport(session, state, curl_args=crawl_config.curl_args)
    return HttpTransport(session, state)
