#!/usr/bin/env python3
"""
Push rate limiting.

Every push candidate runs through a fixed cascade and the first matching
rule wins. Each decision is written to audit_logs, which is also what the
per-source sliding window counts.

    1. already delivered          -> SKIP_ALREADY_PUSHED
    2. source produced a big batch -> DOWNGRADED_BIG_BATCH
    3. per-run per-source cap      -> SKIP_PER_TASK_LIMIT
    4. per-source sliding window   -> SKIP_PER_SOURCE_WINDOW
    5. run-wide cap                -> SKIP_GLOBAL_RUN_CAP
    6. send                        -> PUSHED | ERROR
"""

from dataclasses import dataclass
from time import time
from typing import Any, Callable, Dict, Optional

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("governor")

AUDIT_ACTION = "PUSH_WEBHOOK"
REVIEWER = "system"

PUSH = "PUSH"
QUEUE_ONLY = "QUEUE_ONLY"
SKIP = "SKIP"


@dataclass
class PushLimits:
    per_task_max: int = 10
    window_minutes: int = 10
    window_max: int = 10
    big_batch_threshold: int = 50
    max_push_per_run: int = 10
    max_age_days: int = 30

    @classmethod
    def from_config(cls) -> "PushLimits":
        return cls(
            per_task_max=config.PUSH_PER_TASK_MAX,
            window_minutes=config.PUSH_PER_SOURCE_WINDOW_MINUTES,
            window_max=config.PUSH_PER_SOURCE_WINDOW_MAX,
            big_batch_threshold=config.PUSH_BIG_BATCH_THRESHOLD,
            max_push_per_run=config.MAX_PUSH_PER_RUN,
            max_age_days=config.MAX_PUSH_AGE_DAYS,
        )


@dataclass
class RunBudget:
    """Run-wide push counter shared by every source in one ingest pass."""

    limit: int
    pushed: int = 0

    @property
    def exhausted(self) -> bool:
        return self.pushed >= self.limit


@dataclass
class TaskCounters:
    """Per-source counters for the current run."""

    new_count: int = 0
    pushed_so_far: int = 0


@dataclass
class PushOutcome:
    decision: str
    result: str
    reason: Optional[str] = None


class PushGovernor:
    def __init__(self, db, publisher, limits: PushLimits, budget: RunBudget, clock: Callable[[], float] = time):
        self.db = db
        self.publisher = publisher
        self.limits = limits
        self.budget = budget
        self.clock = clock

    async def _audit(self, item_id: int, result: str, reason: Optional[str] = None) -> None:
        await self.db.execute(
            "insert_audit_log",
            item_id=item_id,
            action=AUDIT_ACTION,
            result=result,
            reason=reason,
            reviewer=REVIEWER,
            created_at=int(self.clock()),
        )

    async def _queue_only(self, item_id: int, result: str, reason: Optional[str] = None) -> PushOutcome:
        await self._audit(item_id, result, reason)
        return PushOutcome(QUEUE_ONLY, result, reason)

    @trace_span(
        "governor.decide",
        tracer_name="governor",
        attr_from_args=lambda self, source, item, record, task: {
            "source.name": source.get("name"),
            "item.id": item.get("id"),
            "task.new_count": task.new_count,
            "task.pushed_so_far": task.pushed_so_far,
        },
    )
    async def decide(self, source: Dict[str, Any], item: Dict[str, Any], record: Dict[str, Any], task: TaskCounters) -> PushOutcome:
        """Apply the cascade to one item and deliver it when every limit allows."""
        item_id = item["id"]
        name = source.get("name")
        limits = self.limits

        if item.get("pushed_at"):
            logger.info(f"Skip push for already pushed item {item_id}")
            return await self._queue_only(item_id, "SKIP_ALREADY_PUSHED", "ALREADY_PUSHED")

        if task.new_count > limits.big_batch_threshold:
            logger.warning(
                f"⚠️ {name}: {task.new_count} new items this run exceeds {limits.big_batch_threshold}, "
                f"downgrading to review only (site structure or rules may have changed)"
            )
            return await self._queue_only(item_id, "DOWNGRADED_BIG_BATCH")

        if task.pushed_so_far >= limits.per_task_max:
            logger.info(f"{name}: per-run push cap of {limits.per_task_max} reached, queueing item {item_id}")
            return await self._queue_only(item_id, "SKIP_PER_TASK_LIMIT")

        since = int(self.clock()) - limits.window_minutes * 60
        recent = await self.db.execute(
            "count_source_audits_since",
            source_id=source["id"],
            action=AUDIT_ACTION,
            since=since,
            result="PUSHED",
        )
        if recent >= limits.window_max:
            logger.info(
                f"{name}: {recent} pushes in the last {limits.window_minutes} minutes "
                f"(limit {limits.window_max}), queueing item {item_id}"
            )
            return await self._queue_only(item_id, "SKIP_PER_SOURCE_WINDOW")

        if self.budget.exhausted:
            logger.warning(f"Global push limit ({self.budget.limit}) reached, queueing item {item_id}")
            return await self._queue_only(item_id, "SKIP_GLOBAL_RUN_CAP")

        delivery = await self.publisher.send(record)
        if not delivery.ok:
            logger.warning(f"Push failed for item {item_id}, pushed_at left unset: {delivery.reason}")
            await self._audit(item_id, "ERROR", delivery.reason or "WEBHOOK_API_FAIL")
            return PushOutcome(SKIP, "ERROR", delivery.reason)

        await self._audit(item_id, "PUSHED")
        await self.db.execute("mark_item_pushed", item_id=item_id, pushed_at=int(self.clock()))
        task.pushed_so_far += 1
        self.budget.pushed += 1
        logger.info(f"📤 Pushed item {item_id} from {name}")
        return PushOutcome(PUSH, "PUSHED")
