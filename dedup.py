#!/usr/bin/env python3
"""
Duplicate detection and item persistence.

An item is keyed by (source, canonical URL). Its fingerprint covers the
title, the publication date and the first 500 characters of the body, so a
page whose text changes is re-processed while an identical re-fetch is not.
"""

import json
from datetime import date, datetime, timezone
from hashlib import md5
from time import time
from typing import Any, Dict, Optional

from config import config, get_logger

logger = get_logger("dedup")

FINGERPRINT_BODY_CHARS = 500
SECONDS_PER_DAY = 86400


def date_to_timestamp(value: Optional[date]) -> Optional[int]:
    """Midnight UTC of a calendar date as a Unix timestamp."""
    if value is None:
        return None
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp())


def timestamp_to_iso_date(ts: Optional[int]) -> str:
    if ts is None:
        return ""
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).date().isoformat()


def compute_fingerprint(title: Optional[str], published_at: Optional[int], body: Optional[str]) -> str:
    content = f"{title or ''}{timestamp_to_iso_date(published_at)}{(body or '')[:FINGERPRINT_BODY_CHARS]}"
    return md5(content.encode("utf-8")).hexdigest()


async def find_unchanged(db, source_id: int, canonical_url: str, fingerprint: str) -> Optional[Dict[str, Any]]:
    """The stored item for this key when it already carries this fingerprint."""
    existing = await db.execute("get_item_by_key", source_id=source_id, canonical_url=canonical_url)
    if existing and existing.get("hash") == fingerprint:
        return existing
    return None


async def is_unchanged(db, source_id: int, canonical_url: str, fingerprint: str) -> bool:
    return await find_unchanged(db, source_id, canonical_url, fingerprint) is not None


async def upsert_item(
    db,
    source_id: int,
    url: str,
    title: str,
    body: str,
    published_at: Optional[int],
    digest: Dict[str, Any],
    status: str = "PENDING",
    skip_reason: Optional[str] = None,
    fingerprint: Optional[str] = None,
    force: bool = False,
) -> Optional[Dict[str, Any]]:
    """Create or update the item for (source_id, url).

    Returns None without writing when the stored fingerprint matches, unless
    ``force`` is set. ``pushed_at`` is never modified here.
    """
    fingerprint = fingerprint or compute_fingerprint(title, published_at, body)
    existing = await db.execute("get_item_by_key", source_id=source_id, canonical_url=url)
    if existing and existing.get("hash") == fingerprint and not force:
        return None

    fields = {
        "url": url,
        "canonical_url": url,
        "title": title,
        "raw_text": body,
        "published_at": published_at,
        "hash": fingerprint,
        "status": status,
        "skip_reason": skip_reason,
        "digest": json.dumps(digest, ensure_ascii=False),
    }
    if existing:
        logger.debug(f"Updating item {existing['id']} for {url}")
        return await db.execute("update_item", item_id=existing["id"], **fields)
    return await db.execute("create_item", source_id=source_id, **fields)


def is_too_old(
    published_at: Optional[int],
    max_age_days: Optional[int] = None,
    now: Optional[float] = None,
) -> bool:
    """Items without a date are never too old."""
    if published_at is None:
        return False
    days = max_age_days if max_age_days is not None else config.MAX_PUSH_AGE_DAYS
    cutoff = (now if now is not None else time()) - days * SECONDS_PER_DAY
    return published_at < cutoff
