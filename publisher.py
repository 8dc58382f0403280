#!/usr/bin/env python3
"""
Delivery of extraction records to the chat webhook.

`build_markdown` renders one record as a compact markdown card and
`WebhookPublisher.send` posts it. Canary mode routes to a separate webhook
and spaces sends out to stay under the webhook's per-minute quota.
"""

import json
import re
from asyncio import TimeoutError, sleep
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("publisher")

MAX_MESSAGE_BYTES = 3500
SUMMARY_MAX_CHARS = 80
MAX_KEY_POINTS = 3
NEAR_DEADLINE_DAYS = 3

ERRCODE_ADVICE = {
    93000: "Invalid webhook URL / Robot removed from group",
    45009: "API frequency out of limit (Max 20/min)",
    40058: "Content exceeds max length (4096)",
}


def _parse_iso_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def is_near_deadline(deadline: Optional[str], now: Optional[datetime] = None) -> bool:
    """Deadline between now and three days out."""
    day = _parse_iso_date(deadline)
    if day is None:
        return False
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    due = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    diff_days = (due - now).total_seconds() / 86400
    return 0 <= diff_days <= NEAR_DEADLINE_DAYS


def normalize_summary(summary: Optional[str]) -> Optional[str]:
    if not summary:
        return None
    text = summary.strip()
    return text[:SUMMARY_MAX_CHARS] if text else None


def dedupe_key_points(summary: Optional[str], key_points: Optional[List[str]]) -> List[str]:
    """Up to three key points, dropping any already said in the summary."""
    squashed_summary = re.sub(r"\s+", "", summary or "")
    result: List[str] = []
    for raw in key_points or []:
        point = str(raw or "").strip()
        if not point:
            continue
        if squashed_summary and re.sub(r"\s+", "", point) in squashed_summary:
            continue
        result.append(point)
        if len(result) >= MAX_KEY_POINTS:
            break
    return result


def build_markdown(record: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Render an extraction record as a webhook markdown message of at most 3500 bytes."""
    lines: List[str] = []
    label = record.get("school") or record.get("site") or "资讯"
    alert = "⏰ " if is_near_deadline(record.get("deadline"), now) else ""
    lines.append(f"{alert}【{label}】{record.get('title') or ''}")
    lines.append(f"📅 {record.get('publish_date') or '日期未知'}  🏷️ {record.get('category') or '通知'}")
    if record.get("deadline"):
        lines.append(f"⏳ 截止：{record['deadline']}")

    summary = normalize_summary(record.get("summary"))
    if summary:
        lines.append(f"\n{summary}")
    for point in dedupe_key_points(summary, record.get("key_points")):
        lines.append(f"- {point}")

    attachments = record.get("attachments") or []
    if attachments:
        lines.append("\n📎 附件：")
        for att in attachments:
            name = re.sub(r"[\[\]]", "", str(att.get("name") or ""))
            url = att.get("url") or ""
            if url.startswith("http"):
                lines.append(f'- <a href="{url}">{name}</a>')
            else:
                lines.append(f"- {name}")

    link = str(record.get("canonical_url") or record.get("url") or "").strip()
    if link.startswith("http"):
        lines.append(f"\n🔗 [查看原文]({link})")
    else:
        logger.warning(f"No usable link for '{record.get('title')}': {link!r}")

    markdown = "\n".join(lines)
    encoded = markdown.encode("utf-8")
    if len(encoded) <= MAX_MESSAGE_BYTES:
        return markdown

    footer = f"\n\n(内容过长已截断) \n🔗 [查看原文]({link})"
    available = MAX_MESSAGE_BYTES - len(footer.encode("utf-8"))
    logger.warning(f"Markdown truncated bytes={len(encoded)}->{MAX_MESSAGE_BYTES} title={record.get('title')}")
    # errors="ignore" drops a multi-byte character cut at the boundary
    body = encoded[:max(available, 0)].decode("utf-8", errors="ignore")
    return f"{body}{footer}"


@dataclass
class DeliveryResult:
    ok: bool
    reason: Optional[str] = None


@dataclass
class DeliveryError:
    code: int
    message: str
    advice: str


class WebhookPublisher:
    """Posts markdown cards to the configured chat webhook."""

    def __init__(
        self,
        session: ClientSession,
        webhook_url: Optional[str] = None,
        mode: Optional[str] = None,
        canary_url: Optional[str] = None,
        canary_delay: Optional[float] = None,
        sleeper=sleep,
    ):
        self.session = session
        self.mode = (mode or config.PUSH_MODE).lower()
        if self.canary:
            self.webhook_url = canary_url if canary_url is not None else config.WEBHOOK_CANARY_URL
        else:
            self.webhook_url = webhook_url if webhook_url is not None else config.WEBHOOK_URL
        self.canary_delay = config.CANARY_SEND_DELAY if canary_delay is None else canary_delay
        self._sleep = sleeper
        self.timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        self.errors: List[DeliveryError] = []

    @property
    def canary(self) -> bool:
        return self.mode == "canary"

    def _record_error(self, code: int, message: str, advice: str) -> None:
        if self.canary:
            self.errors.append(DeliveryError(code, message, advice))

    @trace_span(
        "publisher.send",
        tracer_name="publisher",
        attr_from_args=lambda self, record: {"push.mode": self.mode, "item.url": record.get("url")},
    )
    async def send(self, record: Dict[str, Any]) -> DeliveryResult:
        if not self.webhook_url:
            logger.warning(f"Webhook missing, SKIP sending (mode={self.mode})")
            return DeliveryResult(False, "WEBHOOK_NOT_CONFIGURED")

        if self.canary and self.canary_delay > 0:
            logger.info(f"Canary send sleep={self.canary_delay}s")
            await self._sleep(self.canary_delay)

        payload = {"msgtype": "markdown", "markdown": {"content": build_markdown(record)}}
        try:
            async with self.session.post(self.webhook_url, json=payload, timeout=self.timeout) as response:
                text = await response.text()
                if not 200 <= response.status < 300:
                    logger.error(f"Push failed: HTTP {response.status} {text[:200]}")
                    self._record_error(response.status, text, "HTTP Error")
                    return DeliveryResult(False, f"HTTP {response.status}")
                try:
                    body = json.loads(text) if text else {}
                except ValueError:
                    body = {}
                errcode = body.get("errcode", -1) if isinstance(body, dict) else -1
                if errcode != 0:
                    errmsg = body.get("errmsg", text[:200]) if isinstance(body, dict) else text[:200]
                    advice = ERRCODE_ADVICE.get(errcode, "Check webhook documentation")
                    logger.error(f"Webhook ERROR: errcode={errcode} errmsg={errmsg}")
                    logger.error(f"Webhook ADVICE: {advice}")
                    self._record_error(errcode, str(errmsg), advice)
                    return DeliveryResult(False, f"errcode={errcode} {advice}")
        except (ClientError, TimeoutError) as e:
            logger.error(f"Push network error: {e}")
            self._record_error(-1, str(e), "Network Error")
            return DeliveryResult(False, f"Network error: {e}")

        logger.info(f"Push success for {record.get('title')} (errcode=0)")
        return DeliveryResult(True)
