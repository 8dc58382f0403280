#!/usr/bin/env python3
"""
Harvest scheduler.

Runs the ingest pass at the daily times listed under ``schedule:`` in
sources.yaml. Two layouts are accepted:

    schedule:
      - time: "08:00"
      - time: "17:30"

    schedule:
      timezone: Asia/Shanghai
      times: ["08:00", "17:30"]

Scheduled runs respect each source's fetch interval, so a source with a long
interval is only fetched when it is due.
"""

import asyncio
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("scheduler")

ERROR_BACKOFF_SECONDS = 60


class ScheduleEntry:
    """A single daily run time."""

    def __init__(self, time_str: str):
        self.time_str = str(time_str).strip().strip('"\'')
        self.time = self._parse_time(self.time_str)

    @staticmethod
    def _parse_time(time_str: str) -> time:
        parts = time_str.split(':')
        if len(parts) != 2:
            raise ValueError(f"Invalid time format '{time_str}': expected HH:MM")
        try:
            hour, minute = int(parts[0]), int(parts[1])
        except ValueError:
            raise ValueError(f"Invalid time format '{time_str}': hour and minute must be numbers")
        if not 0 <= hour <= 23:
            raise ValueError(f"Invalid time format '{time_str}': hour must be 0-23")
        if not 0 <= minute <= 59:
            raise ValueError(f"Invalid time format '{time_str}': minute must be 0-59")
        return time(hour=hour, minute=minute)

    def next_occurrence(self, from_time: Optional[datetime] = None, tz=None) -> datetime:
        """Next occurrence after ``from_time`` as a UTC datetime.

        The wall-clock time is interpreted in ``tz`` (UTC when omitted).
        """
        tz = tz or timezone.utc
        from_time = from_time or datetime.now(timezone.utc)
        ref_local = from_time.astimezone(tz)
        candidate = datetime.combine(ref_local.date(), self.time, tzinfo=tz)
        if candidate <= ref_local:
            candidate += timedelta(days=1)
        return candidate.astimezone(timezone.utc)

    def __repr__(self) -> str:
        return f"ScheduleEntry({self.time_str})"


def _zone(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


class HarvestScheduler:
    def __init__(self, config_path: Optional[str] = None, sleeper=asyncio.sleep):
        self.config_path = config_path or config.SOURCES_CONFIG_PATH
        self.schedule_entries: List[ScheduleEntry] = []
        self._sleep = sleeper
        self.schedule_timezone_name = config.SCHEDULER_TIMEZONE or "UTC"
        self.schedule_timezone = _zone(self.schedule_timezone_name)
        if self.schedule_timezone is None:
            logger.warning(f"Invalid timezone '{self.schedule_timezone_name}', falling back to UTC")
            self.schedule_timezone_name = "UTC"
            self.schedule_timezone = timezone.utc
        self._load_schedule()

    def _load_schedule(self) -> None:
        path = Path(self.config_path)
        if not path.exists():
            logger.warning(f"Config file not found: {self.config_path}")
            return
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error loading schedule from {self.config_path}: {e}")
            return

        raw = data.get('schedule') if isinstance(data, dict) else None
        if isinstance(raw, dict):
            tz_name = raw.get('timezone') or raw.get('tz')
            if tz_name:
                zone = _zone(str(tz_name))
                if zone is None:
                    logger.error(f"Invalid schedule timezone '{tz_name}', keeping '{self.schedule_timezone_name}'")
                else:
                    self.schedule_timezone, self.schedule_timezone_name = zone, str(tz_name)
            raw = raw.get('times') or []
        if not isinstance(raw, list):
            logger.error("Schedule must be a list of times, ignoring it")
            raw = []

        entries = []
        for item in raw:
            value = item.get('time') if isinstance(item, dict) else item
            if value is None:
                logger.warning(f"Invalid schedule entry format: {item}")
                continue
            try:
                entries.append(ScheduleEntry(value))
            except ValueError as e:
                logger.error(f"Failed to parse schedule entry {item}: {e}")
        self.schedule_entries = entries
        if entries:
            times = ", ".join(e.time_str for e in entries)
            logger.info(f"Scheduled times ({self.schedule_timezone_name}): {times}")

    def reload_schedule(self) -> None:
        logger.info("Reloading schedule configuration")
        self._load_schedule()

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        if not self.schedule_entries:
            return None
        from_time = from_time or datetime.now(timezone.utc)
        return min(e.next_occurrence(from_time, self.schedule_timezone) for e in self.schedule_entries)

    def get_schedule_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = (next_run - now).total_seconds() if next_run else None
        return {
            'current_time': now.isoformat(),
            'schedule_times': [e.time_str for e in self.schedule_entries],
            'schedule_timezone': self.schedule_timezone_name,
            'schedule_active': bool(self.schedule_entries),
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': seconds_until,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
        }

    def print_schedule_status(self) -> None:
        status = self.get_schedule_status()
        print("\n🕐 Scheduler Status")
        print(f"⏰ Current time: {status['current_time']}")
        print(f"🌍 Timezone: {status['schedule_timezone']}")
        if not status['schedule_active']:
            print("❌ No schedule configured")
            return
        print(f"🎯 Scheduled times: {', '.join(status['schedule_times'])}")
        print(f"⏭️ Next run: {status['next_run_time']}")
        print(f"⏳ Time until next run: {status['minutes_until_next_run']:.1f} minutes")

    @trace_span(
        "scheduler.run",
        tracer_name="scheduler",
        attr_from_args=lambda self, runner_fn, next_time: {"scheduled.at": next_time.isoformat()},
    )
    async def _run_once(self, runner_fn: Callable[..., Awaitable[Dict[str, Any]]], next_time: datetime) -> None:
        started = datetime.now(timezone.utc)
        outcome = await runner_fn(respect_intervals=True)
        duration = (datetime.now(timezone.utc) - started).total_seconds()
        stats = (outcome or {}).get('stats', {})
        logger.info(f"✅ Scheduled run finished in {duration:.1f}s: {stats}")

    async def run_scheduled(self, runner_fn: Callable[..., Awaitable[Dict[str, Any]]], max_runs: Optional[int] = None) -> None:
        """Sleep until each scheduled time and call ``runner_fn(respect_intervals=True)``.

        A failing run is logged and the loop carries on. ``max_runs`` bounds
        the number of scheduled runs.
        """
        if not self.schedule_entries:
            logger.error("No schedule configured, cannot run in scheduled mode")
            return

        logger.info(f"🚀 Starting scheduler with {len(self.schedule_entries)} daily times")
        if config.SCHEDULER_RUN_IMMEDIATELY:
            logger.info("🎬 Running ingest immediately on startup")
            try:
                await runner_fn(respect_intervals=True)
            except Exception as e:
                logger.error(f"💥 Startup run failed: {e}")

        runs = 0
        while max_runs is None or runs < max_runs:
            try:
                next_time = self.get_next_run_time()
                wait = max(1.0, (next_time - datetime.now(timezone.utc)).total_seconds() + 1)
                logger.info(f"😴 Sleeping {wait / 60:.1f} minutes until {next_time.isoformat()} ({self.schedule_timezone_name})")
                await self._sleep(wait)
                runs += 1
                logger.info("⏰ Starting scheduled ingest run")
                await self._run_once(runner_fn, next_time)
            except asyncio.CancelledError:
                logger.info("📶 Scheduler cancelled, shutting down")
                raise
            except Exception as e:
                logger.error(f"💥 Error in scheduled run: {e}")
                await self._sleep(ERROR_BACKOFF_SECONDS)
