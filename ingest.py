#!/usr/bin/env python3
"""
Ingest runner: one pass over every active source.

For each source, highest priority first:

    cooldown gate -> fetch list/feed -> anti-bot check -> parse
      -> per item: quality rules -> fetch detail -> anti-bot check
         -> pre-dedup -> extraction -> upsert -> age policy -> push governor

Sources are processed sequentially and any exception escaping one source is
recorded on that source and counted, after which the run moves on.
"""

import json
from asyncio import get_running_loop
from datetime import datetime, timezone
from time import time
from typing import Any, Callable, Dict, List, Optional

import feedparser
from aiohttp import ClientSession

from antibot import check_page, is_within_cooldown
from config import config, get_logger
from dedup import compute_fingerprint, date_to_timestamp, find_unchanged, is_too_old, timestamp_to_iso_date, upsert_item
from extractor import Extractor
from governor import AUDIT_ACTION, PushGovernor, PushLimits, RunBudget, TaskCounters
from models import DatabaseQueue
from page_parser import MIN_CONTENT_CHARS, enrich_attachments, looks_like_navigation, parse_detail, parse_list
from publisher import WebhookPublisher
from source_config import CrawlConfig, load_crawl_config, seed_sources
from telemetry import init_telemetry, set_span_attributes, trace_span
from transport import FetchResult, default_transport_state, make_transport, normalize_http_date
from utils import clean_html_to_markdown, format_duration, parse_entry_timestamp

logger = get_logger("ingest")

STAT_KEYS = (
    "fetched",
    "upserted",
    "dedup_skipped",
    "pushed",
    "skipped_by_limit",
    "audits_written",
    "errors",
    "skipped_too_old",
    "skipped_by_quality",
)

RSS_ENTRY_LIMIT = 20
RETRY_WITH_HEADERS_STATUSES = (403, 412)
NO_TITLE = "No Title"


def new_stats() -> Dict[str, int]:
    return {key: 0 for key in STAT_KEYS}


def _merge_stats(total: Dict[str, int], part: Dict[str, int]) -> None:
    for key in STAT_KEYS:
        total[key] += part.get(key, 0)


def _placeholder_digest(title: str, published_at: Optional[int], url: str, source_name: str, body: str = "") -> Dict[str, Any]:
    """Digest stored for pages that never reach extraction."""
    return {
        "title": title,
        "body_text": body,
        "publish_date": timestamp_to_iso_date(published_at) or None,
        "is_relevant": False,
        "confidence": 0,
        "url": url,
        "source_name": source_name,
        "tags": [],
        "attachments": [],
    }


def _same_page(a: str, b: str) -> bool:
    return a == b or a.rstrip("/") == b.rstrip("/")


class IngestRunner:
    """Runs one ingest pass; every collaborator is injected."""

    def __init__(
        self,
        db,
        transport_factory: Callable[[CrawlConfig], Any],
        extractor: Extractor,
        publisher,
        limits: PushLimits,
        clock: Callable[[], float] = time,
    ):
        self.db = db
        self.transport_factory = transport_factory
        self.extractor = extractor
        self.publisher = publisher
        self.limits = limits
        self.clock = clock
        self._last_failure: Optional[str] = None

    async def run(
        self,
        dry_run: bool = False,
        source_name: Optional[str] = None,
        respect_intervals: bool = False,
    ) -> Dict[str, Any]:
        sources = await self.db.execute("list_active_sources", name=source_name)
        results: List[Dict[str, Any]] = []
        totals = new_stats()
        governor = PushGovernor(self.db, self.publisher, self.limits, RunBudget(self.limits.max_push_per_run), clock=self.clock)
        started = self.clock()

        logger.info(f"🚀 Starting ingest over {len(sources)} sources (dry_run={dry_run}, source={source_name or 'all'})")
        for source in sources:
            if respect_intervals and not self._is_due(source):
                logger.debug(f"Source {source['name']} not due yet, skipping")
                continue
            stats = new_stats()
            await self._run_source(source, results, stats, dry_run, governor)
            _merge_stats(totals, stats)

        logger.info(
            f"📊 Ingest summary: fetched {totals['fetched']} / upserted {totals['upserted']} / "
            f"dedup_skipped {totals['dedup_skipped']} / audits_written {totals['audits_written']} / "
            f"pushed {totals['pushed']} / skipped_by_limit {totals['skipped_by_limit']} / "
            f"skipped_too_old {totals['skipped_too_old']} / skipped_by_quality {totals['skipped_by_quality']} / "
            f"errors {totals['errors']} in {format_duration(self.clock() - started)}"
        )
        set_span_attributes(totals, prefix="ingest.")
        return {"results": results, "stats": totals}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    def _is_due(self, source: Dict[str, Any]) -> bool:
        last = source.get("last_fetched_at")
        if not last:
            return True
        return int(last) + int(source.get("fetch_interval_minutes") or 0) * 60 <= self.clock()

    @trace_span(
        "ingest.source",
        tracer_name="ingest",
        attr_from_args=lambda self, source, results, stats, dry_run, governor: {
            "source.name": source.get("name"),
            "source.kind": source.get("kind"),
            "run.dry": dry_run,
        },
    )
    async def _run_source(self, source, results, stats, dry_run: bool, governor: PushGovernor) -> None:
        name = source["name"]
        if is_within_cooldown(source.get("last_error"), now=self._now()):
            logger.warning(f"🧊 Source {name} is under anti-bot cooldown, skipping fetch")
            stats["errors"] += 1
            await self.db.execute("update_source_run", source_id=source["id"], run_stats=json.dumps(stats), outcome="stats_only", now=int(self.clock()))
            return

        self._last_failure = None
        try:
            crawl_config = load_crawl_config(source)
            transport = self.transport_factory(crawl_config)
            task = TaskCounters()
            if source.get("kind") == "RSS":
                await self._process_rss(source, crawl_config, transport, task, results, stats, dry_run, governor)
            else:
                await self._process_html(source, crawl_config, transport, task, results, stats, dry_run, governor)
        except Exception as e:
            # Anything escaping a source is recorded and the run continues
            logger.error(f"❌ Failed to ingest source {name}: {e}")
            stats["errors"] += 1
            await self.db.execute(
                "update_source_run",
                source_id=source["id"],
                run_stats=json.dumps(stats),
                outcome="error",
                last_error=str(e),
                now=int(self.clock()),
            )
            return

        if dry_run:
            outcome = "stats_only"
        elif self._last_failure and not stats["fetched"]:
            # Nothing came through, so the poll is not counted as done
            outcome = "error"
        else:
            outcome = "success"
        await self.db.execute(
            "update_source_run",
            source_id=source["id"],
            run_stats=json.dumps(stats),
            outcome=outcome,
            last_error=self._last_failure,
            now=int(self.clock()),
        )
        if self._last_failure:
            logger.warning(f"⚠️ {name}: {stats} (last failure: {self._last_failure})")
        else:
            logger.info(f"✅ {name}: {stats}")

    def _fetch_failed(self, stats, kind: str, url: str, result: FetchResult) -> None:
        stats["errors"] += 1
        self._last_failure = f"{kind} fetch failed: HTTP {result.status_code} {url}"
        logger.error(self._last_failure)

    async def _fetch(self, transport, url: str, crawl_config: CrawlConfig, etag=None, last_modified=None) -> FetchResult:
        """Fetch once, then retry with the source's headers on 403/412."""
        result = await transport.fetch(url, etag, last_modified)
        if result.status_code in RETRY_WITH_HEADERS_STATUSES and crawl_config.headers:
            logger.info(f"{url} returned {result.status_code}, retrying with configured headers")
            result = await transport.fetch(url, etag, last_modified, crawl_config.headers)
        return result

    async def _store_tokens(self, source: Dict[str, Any], result: FetchResult) -> None:
        last_modified = normalize_http_date(result.last_modified)
        if result.etag or last_modified:
            await self.db.execute(
                "update_source_headers",
                source_id=source["id"],
                etag=result.etag,
                last_modified=last_modified,
            )

    async def _process_rss(self, source, crawl_config, transport, task, results, stats, dry_run, governor) -> None:
        name = source["name"]
        result = await self._fetch(transport, source["url"], crawl_config, source.get("etag"), source.get("last_modified"))
        if result.status_code == 304:
            logger.info(f"Source {name} (feed) not modified")
            return
        if result.body is None:
            self._fetch_failed(stats, "Feed", source["url"], result)
            return
        if not dry_run:
            await self._store_tokens(source, result)

        feed = await get_running_loop().run_in_executor(None, feedparser.parse, result.body)
        if feed.bozo and not feed.entries:
            raise ValueError(f"Unparseable feed: {feed.get('bozo_exception')}")

        for entry in feed.entries[:RSS_ENTRY_LIMIT]:
            link = entry.get("link")
            if not link:
                continue
            stats["fetched"] += 1

            raw_content = ""
            if entry.get("content"):
                raw_content = entry.content[0].get("value", "")
            raw_content = raw_content or entry.get("summary") or entry.get("description") or entry.get("title") or ""
            content = clean_html_to_markdown(raw_content, base_url=link)
            published_at = parse_entry_timestamp(entry)
            title = entry.get("title") or NO_TITLE

            fingerprint = compute_fingerprint(title, published_at, content)
            stored = await find_unchanged(self.db, source["id"], link, fingerprint)
            if stored is not None:
                await self._handle_unchanged(source, stored, task, stats, dry_run, governor)
                continue

            record = await self.extractor.extract(content, link, name, [])
            final_title = entry.get("title") or record.get("title") or NO_TITLE
            saved = await upsert_item(
                self.db, source["id"], link, final_title, content, published_at, record,
                "PENDING" if record.get("is_relevant") else "SKIPPED",
                None if record.get("is_relevant") else "AI_NOT_RELEVANT",
                fingerprint=fingerprint,
            )
            await self._after_upsert(source, saved, record, task, results, stats, dry_run, governor)

    async def _process_html(self, source, crawl_config, transport, task, results, stats, dry_run, governor) -> None:
        name = source["name"]
        list_urls = crawl_config.list_urls or [source["url"]]

        for list_url in list_urls:
            primary = list_url == source["url"]
            etag = source.get("etag") if primary else None
            last_modified = source.get("last_modified") if primary else None
            listing = await self._fetch(transport, list_url, crawl_config, etag, last_modified)

            if listing.status_code == 304:
                logger.info(f"Source {name} (list {list_url}) not modified")
                continue
            check_page(listing.body, list_url, now=self._now())
            if listing.status_code != 200 or not listing.body:
                self._fetch_failed(stats, "List", list_url, listing)
                continue

            if primary and not dry_run:
                await self._store_tokens(source, listing)

            items = parse_list(listing.body, list_url, crawl_config)
            logger.info(f"🔗 {name}: {len(items)} candidate links on {list_url}")
            for item in items:
                await self._process_html_item(source, crawl_config, transport, list_urls, item, task, results, stats, dry_run, governor)

    async def _process_html_item(self, source, crawl_config, transport, list_urls, item, task, results, stats, dry_run, governor) -> None:
        name = source["name"]
        link = item.url
        stats["fetched"] += 1
        item_ts = date_to_timestamp(item.date)

        title = item.title or ""
        if any(keyword in title for keyword in crawl_config.title_blocklist):
            logger.info(f"[QualitySkip] source={name} reason=NON_ANNOUNCEMENT_TITLE title={title} url={link}")
            stats["skipped_by_quality"] += 1
            await upsert_item(
                self.db, source["id"], link, title, "", item_ts,
                _placeholder_digest(title, item_ts, link, name), "SKIPPED", "NON_ANNOUNCEMENT_TITLE",
            )
            return

        if any(_same_page(u, link) for u in list_urls):
            list_title = item.title or "列表页"
            await upsert_item(
                self.db, source["id"], link, list_title, "", item_ts,
                _placeholder_digest(list_title, item_ts, link, name), "SKIPPED", "LIST_PAGE_NOT_DETAIL",
                force=True,
            )
            stats["dedup_skipped"] += 1
            logger.info(f"Skipped list page as detail for {link}")
            return

        detail = await self._fetch(transport, link, crawl_config)
        check_page(detail.body, link, now=self._now())
        if detail.status_code != 200 or not detail.body:
            self._fetch_failed(stats, "Detail", link, detail)
            return

        parsed = parse_detail(detail.body, link, crawl_config.selectors)
        body = parsed.content
        pre_title = parsed.title or item.title or NO_TITLE
        published_at = date_to_timestamp(parsed.date or item.date)

        if looks_like_navigation(body):
            logger.info(f"Skipping {link}: content looks like navigation")
            await upsert_item(
                self.db, source["id"], link, pre_title, body, published_at,
                _placeholder_digest(pre_title, published_at, link, name, body), "SKIPPED", "DETAIL_PARSE_FAILED",
            )
            stats["dedup_skipped"] += 1
            return

        if len(body) < MIN_CONTENT_CHARS:
            logger.info(f"Skipping {link}: content too short ({len(body)} chars)")
            await upsert_item(
                self.db, source["id"], link, pre_title, body, published_at,
                _placeholder_digest(pre_title, published_at, link, name, body), "SKIPPED", "CONTENT_TOO_SHORT",
            )
            stats["skipped_by_quality"] += 1
            return

        fingerprint = compute_fingerprint(pre_title, published_at, body)
        stored = await find_unchanged(self.db, source["id"], link, fingerprint)
        if stored is not None:
            await self._handle_unchanged(source, stored, task, stats, dry_run, governor)
            return

        attachments = await enrich_attachments(detail.body, link, parsed.attachments, transport.probe_attachment)
        record = await self.extractor.extract(body, link, name, [a.to_dict() for a in attachments])

        if crawl_config.force_source_url_in_digest:
            logger.info(f"Forcing digest url to source url {source['url']} for {link}")
            record["url"] = source["url"]
        else:
            record["url"] = link
        if not record.get("publish_date"):
            fallback_date = item.date or parsed.date
            if fallback_date:
                record["publish_date"] = fallback_date.isoformat()
        if not record.get("title"):
            record["title"] = item.title or parsed.title or None

        final_title = record.get("title") or parsed.title or item.title or NO_TITLE
        relevant = bool(record.get("is_relevant"))
        saved = await upsert_item(
            self.db, source["id"], link, final_title, body, published_at, record,
            "PENDING" if relevant else "SKIPPED",
            None if relevant else "AI_NOT_RELEVANT",
            fingerprint=fingerprint,
        )
        await self._after_upsert(source, saved, record, task, results, stats, dry_run, governor)

    async def _after_upsert(self, source, saved, record, task: TaskCounters, results, stats, dry_run: bool, governor: PushGovernor) -> None:
        """Age policy, bookkeeping and the push decision for a freshly written item."""
        if saved is None:
            stats["dedup_skipped"] += 1
            return

        if is_too_old(saved.get("published_at"), self.limits.max_age_days, now=self.clock()):
            stats["skipped_too_old"] += 1
            await self.db.execute("mark_item_skipped", item_id=saved["id"], skip_reason="TOO_OLD_TO_PUSH")
            return

        task.new_count += 1
        results.append(saved)
        stats["upserted"] += 1

        if saved.get("status") != "PENDING":
            return
        if dry_run:
            stats["skipped_by_limit"] += 1
            return

        await self._push(source, saved, record, task, stats, governor)

    async def _push(self, source, item, record, task: TaskCounters, stats, governor: PushGovernor) -> None:
        delivery_record = dict(record)
        delivery_record["canonical_url"] = item.get("canonical_url")
        outcome = await governor.decide(source, item, delivery_record, task)
        stats["audits_written"] += 1
        if outcome.decision == "PUSH":
            stats["pushed"] += 1
        elif outcome.decision == "QUEUE_ONLY":
            stats["skipped_by_limit"] += 1

    async def _delivery_failed(self, item: Dict[str, Any]) -> bool:
        """True for a pending item whose latest push attempt was a failed delivery."""
        if item.get("status") != "PENDING" or item.get("pushed_at"):
            return False
        last = await self.db.execute("get_last_audit", item_id=item["id"], action=AUDIT_ACTION)
        return bool(last) and last["result"] == "ERROR"

    async def _handle_unchanged(self, source, stored, task: TaskCounters, stats, dry_run: bool, governor: PushGovernor) -> None:
        """An identical re-fetch is a dedup skip, unless its last delivery failed.

        Such items go back to the governor with their stored digest, without
        being extracted again. Items queued by a push limit stay queued.
        """
        if not await self._delivery_failed(stored):
            stats["dedup_skipped"] += 1
            logger.debug(f"Skipped duplicate for {stored['canonical_url']}")
            return

        if is_too_old(stored.get("published_at"), self.limits.max_age_days, now=self.clock()):
            stats["skipped_too_old"] += 1
            await self.db.execute("mark_item_skipped", item_id=stored["id"], skip_reason="TOO_OLD_TO_PUSH")
            return
        if dry_run:
            stats["skipped_by_limit"] += 1
            return

        logger.info(f"🔁 Retrying delivery of item {stored['id']} from {source['name']}")
        await self._push(source, stored, json.loads(stored.get("digest") or "{}"), task, stats, governor)


def _transport_factory(session: ClientSession):
    state = default_transport_state()

    def factory(crawl_config: CrawlConfig):
        return make_transport(crawl_config, session, state)

    return factory


@trace_span(
    "ingest.all",
    tracer_name="ingest",
    attr_from_args=lambda dry_run=False, source_name=None, respect_intervals=False: {
        "run.dry": dry_run,
        "run.source": source_name or "",
    },
)
async def ingest_all(
    dry_run: bool = False,
    source_name: Optional[str] = None,
    respect_intervals: bool = False,
) -> Dict[str, Any]:
    """Run one ingest pass with the production wiring."""
    init_telemetry("announcement-harvester")
    logger.debug(f"Configuration: {config.get_config_summary()}")
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        if config.SOURCES:
            await seed_sources(db)
        async with ClientSession() as session:
            runner = IngestRunner(
                db=db,
                transport_factory=_transport_factory(session),
                extractor=Extractor(),
                publisher=WebhookPublisher(session),
                limits=PushLimits.from_config(),
            )
            return await runner.run(dry_run=dry_run, source_name=source_name, respect_intervals=respect_intervals)
    finally:
        await db.stop()
