#!/usr/bin/env python3
"""
Anti-bot wall detection and cooldown bookkeeping.

When a page carries one of the known block-page phrases the source is
abandoned for the run and a marker is stored as its last error. Later runs
parse the marker back and skip the source until the cooldown has elapsed.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from config import get_logger
from errors import AntiBotBlockedError

logger = get_logger("antibot")

ANTI_BOT_KEYWORDS = (
    "您的IP地址最近有可疑的攻击行为",
    "黑名单",
    "可疑攻击",
    "访问受限",
)

MARKER_PREFIX = "AntiBotBlocked:"
COOLDOWN = timedelta(hours=6)


def detect(html: Optional[str]) -> Optional[str]:
    """Return the first block-page keyword found in the HTML, if any."""
    if not html:
        return None
    for keyword in ANTI_BOT_KEYWORDS:
        if keyword in html:
            return keyword
    return None


def format_block_marker(keyword: str, url: str, at: datetime) -> str:
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    stamp = at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"{MARKER_PREFIX} keyword={keyword} url={url} at {stamp}"


def check_page(html: Optional[str], url: str, now: Optional[datetime] = None) -> None:
    """Raise AntiBotBlockedError when the page is a block page."""
    keyword = detect(html)
    if keyword is None:
        return
    at = now or datetime.now(timezone.utc)
    marker = format_block_marker(keyword, url, at)
    logger.warning(f"🚫 Anti-bot page detected at {url} (keyword={keyword})")
    raise AntiBotBlockedError(keyword, url, at, marker)


def parse_blocked_at(message: Optional[str]) -> Optional[datetime]:
    """Recover the block time from a stored marker; None for anything else."""
    if not message or MARKER_PREFIX not in message:
        return None
    idx = message.rfind(" at ")
    if idx == -1:
        return None
    stamp = message[idx + 4:].strip()
    if stamp.endswith("Z"):
        stamp = stamp[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(stamp)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_within_cooldown(
    message: Optional[str],
    now: Optional[datetime] = None,
    cooldown: timedelta = COOLDOWN,
) -> bool:
    blocked_at = parse_blocked_at(message)
    if blocked_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return now - blocked_at < cooldown
