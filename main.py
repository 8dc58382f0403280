#!/usr/bin/env python3
"""
Harvester command line.

    python main.py run [--dry-run] [--source NAME]   one ingest pass
    python main.py scheduled                         run at the times in sources.yaml
    python main.py status                            database counters and failing sources
    python main.py schedule-status                   next scheduled run
    python main.py sources                           seed/refresh sources from sources.yaml
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from antibot import is_within_cooldown
from config import config, get_logger
from ingest import ingest_all
from models import DatabaseQueue
from scheduler import HarvestScheduler
from source_config import seed_sources

logger = get_logger("main")


async def collect_status(db_path: Optional[str] = None) -> Dict[str, Any]:
    db = DatabaseQueue(db_path or config.DATABASE_PATH)
    await db.start()
    try:
        counts = await db.execute("get_status_counts")
    finally:
        await db.stop()
    now = datetime.now(timezone.utc)
    for entry in counts["sources_with_errors"]:
        entry["cooldown"] = is_within_cooldown(entry["last_error"], now=now)
    counts["timestamp"] = now.isoformat()
    return counts


def print_status(status: Dict[str, Any]) -> None:
    print("\n📊 Harvester Status")
    print(f"⏰ {status['timestamp']}")
    print(f"\n🏫 Sources: {status['sources']} ({status['active_sources']} active)")
    print("📰 Items:")
    for name, count in sorted(status["items_by_status"].items()):
        print(f"   {name}: {count}")
    print(f"📤 Pushed: {status['pushed_items']}")
    if status["audits_by_result"]:
        print("🧾 Audits:")
        for result, count in sorted(status["audits_by_result"].items()):
            print(f"   {result}: {count}")
    if status["sources_with_errors"]:
        print("\n⚠️ Sources with errors:")
        for entry in status["sources_with_errors"]:
            marker = "🧊 cooldown" if entry["cooldown"] else "❌"
            print(f"   {marker} {entry['name']}: {entry['last_error'][:120]}")


def print_run_result(outcome: Dict[str, Any]) -> None:
    stats = outcome["stats"]
    print("\n📊 Ingest result")
    for key, value in stats.items():
        print(f"   {key}: {value}")


async def refresh_sources() -> int:
    config.reload_sources()
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        count = await seed_sources(db)
        for source in await db.execute("list_sources"):
            state = "✅" if source["is_active"] else "⏸️"
            print(f"{state} [{source['priority']}] {source['name']} ({source['kind']}) {source['url']}")
        return count
    finally:
        await db.stop()


async def run_scheduled_mode() -> None:
    scheduler = HarvestScheduler()
    if not scheduler.get_schedule_status()["schedule_active"]:
        logger.error("❌ No schedule configured in sources.yaml")
        logger.info("💡 Example:\n   schedule:\n     timezone: Asia/Shanghai\n     times: [\"08:00\", \"17:30\"]")
        return
    scheduler.print_schedule_status()
    await scheduler.run_scheduled(ingest_all)


def main():
    parser = argparse.ArgumentParser(description='Announcement harvester')
    parser.add_argument('mode', choices=['run', 'scheduled', 'status', 'schedule-status', 'sources'],
                        help='Operation mode')
    parser.add_argument('--dry-run', action='store_true',
                        help='Fetch, extract and store, but never push or write push audits')
    parser.add_argument('--source', type=str, default=None,
                        help='Only process the source with this name')
    args = parser.parse_args()

    try:
        if args.mode == 'run':
            outcome = asyncio.run(ingest_all(dry_run=args.dry_run, source_name=args.source))
            print_run_result(outcome)
            sys.exit(1 if outcome["stats"]["errors"] and not outcome["stats"]["fetched"] else 0)

        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())

        elif args.mode == 'status':
            print_status(asyncio.run(collect_status()))

        elif args.mode == 'schedule-status':
            HarvestScheduler().print_schedule_status()

        elif args.mode == 'sources':
            count = asyncio.run(refresh_sources())
            logger.info(f"✅ {count} sources registered from {config.SOURCES_CONFIG_PATH}")

    except KeyboardInterrupt:
        logger.info("👋 Harvester shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
