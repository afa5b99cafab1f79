# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbsnap Scheduler - Fires each enabled policy at its configured cadence.

Cadence expressions:
- "hourly", "daily", "weekly" (fixed intervals)
- "@hourly", "@daily", "@midnight", "@weekly" (calendar aligned)
- "every <n> <seconds|minutes|hours|days|weeks>"
- 5-field cron expressions ("0 2 * * *"), evaluated in UTC

Anything else falls back to the configured default interval with a
ScheduleParseWarning. Startup is never aborted by a bad expression.

Each firing hands off to its own asyncio task and returns immediately, so
a slow backup never delays another policy's timer.
"""

import asyncio
import re
import warnings
from datetime import datetime, timedelta, UTC
from typing import Awaitable, Callable, Dict, List, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from dbsnap.config import BackupPolicy
from dbsnap.errors import explain_unparseable_schedule
from dbsnap.exceptions import ScheduleParseWarning

logger = structlog.get_logger()

OnDue = Callable[[str], Awaitable[None]]

_INTERVALS = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
}

_CRON_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
}

_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 60 * 60,
    "day": 24 * 60 * 60,
    "week": 7 * 24 * 60 * 60,
}

_EVERY = re.compile(r"^every\s+(\d+)\s+(second|minute|hour|day|week)s?$")

# Cron counts weekdays from Sunday (0 and 7); APScheduler counts from Monday,
# so ranges and steps are expanded to explicit day names
_DOW_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _cron_day_number(token: str) -> int:
    if token in _DOW_NAMES:
        return _DOW_NAMES.index(token)
    number = int(token)
    if not 0 <= number <= 7:
        raise ValueError(f"Day of week out of range: {token}")
    return number


def _cron_days(part: str) -> List[int]:
    base, has_step, step_text = part.partition("/")
    step = int(step_text) if has_step else 1
    if step < 1:
        raise ValueError(f"Invalid day of week step: {part}")

    if base == "*":
        start, end = 0, 6
    elif "-" in base:
        low, high = base.split("-", 1)
        start, end = _cron_day_number(low), _cron_day_number(high)
        if end < start:
            # Wraps past Saturday, e.g. 5-1 is fri through mon
            end += 7
    else:
        start = _cron_day_number(base)
        end = 6 if has_step else start

    return [day % 7 for day in range(start, end + 1, step)]


def _cron_day_of_week(field: str) -> str:
    days: Set[int] = set()
    for part in field.split(","):
        days.update(_cron_days(part))
    if len(days) == 7:
        return "*"
    return ",".join(_DOW_NAMES[day] for day in sorted(days))


def _cron_trigger(expression: str) -> CronTrigger:
    minute, hour, day, month, day_of_week = expression.split()
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_cron_day_of_week(day_of_week),
        timezone=UTC,
    )


def parse_cadence(schedule: str, default_interval_seconds: int = 24 * 60 * 60) -> BaseTrigger:
    """
    Map a cadence expression to an APScheduler trigger.

    Never raises: unparseable expressions issue ScheduleParseWarning and
    fall back to ``default_interval_seconds``.
    """
    expression = " ".join(str(schedule).strip().lower().split())

    if expression in _INTERVALS:
        return IntervalTrigger(seconds=_INTERVALS[expression], timezone=UTC)

    expression = _CRON_ALIASES.get(expression, expression)

    match = _EVERY.match(expression)
    if match and int(match.group(1)) > 0:
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        return IntervalTrigger(seconds=seconds, timezone=UTC)

    if len(expression.split()) == 5:
        try:
            return _cron_trigger(expression)
        except ValueError:
            pass

    message = explain_unparseable_schedule(schedule, default_interval_seconds)
    warnings.warn(message, ScheduleParseWarning, stacklevel=2)
    logger.warning(
        "schedule_parse_fallback",
        schedule=schedule,
        fallback_seconds=default_interval_seconds,
    )
    return IntervalTrigger(seconds=default_interval_seconds, timezone=UTC)


def next_fire_time(
    schedule: str,
    from_time: datetime,
    default_interval_seconds: int = 24 * 60 * 60,
) -> datetime:
    """
    Next time a cadence fires strictly after ``from_time``.

    Interval cadences fire one interval after ``from_time``; cron cadences
    fire at the next matching calendar time.
    """
    if from_time.tzinfo is None:
        from_time = from_time.replace(tzinfo=UTC)

    trigger = parse_cadence(schedule, default_interval_seconds)
    if isinstance(trigger, IntervalTrigger):
        return from_time + trigger.interval

    return trigger.get_next_fire_time(None, from_time + timedelta(microseconds=1))


def _job_id(policy_id: str) -> str:
    return f"backup:{policy_id}"


class BackupScheduler:
    """
    One APScheduler job per enabled policy.

    ``on_due(policy_id)`` is awaited in a fresh task for every firing.
    Jobs added before ``start()`` are held by APScheduler until it starts.
    """

    def __init__(self, on_due: OnDue, default_interval_seconds: int = 24 * 60 * 60):
        self._on_due = on_due
        self.default_interval_seconds = default_interval_seconds
        self._scheduler = AsyncIOScheduler(timezone=UTC)
        self._triggers: Dict[str, BaseTrigger] = {}
        self._tasks: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("scheduler_started", policies=sorted(self._triggers))

    def shutdown(self) -> None:
        """Stop firing. In-flight runs are left to finish."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("scheduler_stopped")

    async def dispatch(self, policy_id: str) -> asyncio.Task:
        """Hand a firing off to an independent task and return immediately."""
        task = asyncio.create_task(self._on_due(policy_id), name=_job_id(policy_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_policy(self, policy: BackupPolicy) -> bool:
        """
        Begin firing a policy at its cadence.

        Returns:
            False if the policy is disabled and was not scheduled
        """
        if not policy.enabled:
            self.stop_policy(policy.id)
            return False

        trigger = parse_cadence(policy.schedule, self.default_interval_seconds)
        self._scheduler.add_job(
            self.dispatch,
            trigger=trigger,
            args=[policy.id],
            id=_job_id(policy.id),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        self._triggers[policy.id] = trigger

        logger.info(
            "policy_scheduled",
            policy_id=policy.id,
            schedule=policy.schedule,
            trigger=str(trigger),
        )
        return True

    def stop_policy(self, policy_id: str) -> bool:
        """
        Cancel a policy's future firings. In-flight runs are not aborted.

        Returns:
            True if the policy had been scheduled
        """
        if self._triggers.pop(policy_id, None) is None:
            return False

        if self._scheduler.get_job(_job_id(policy_id)) is not None:
            self._scheduler.remove_job(_job_id(policy_id))

        logger.info("policy_unscheduled", policy_id=policy_id)
        return True

    def reschedule(self, policy: BackupPolicy) -> bool:
        self.stop_policy(policy.id)
        return self.start_policy(policy)

    def is_scheduled(self, policy_id: str) -> bool:
        return policy_id in self._triggers

    def scheduled_policies(self) -> list:
        return sorted(self._triggers)

    def next_run_time(self, now: datetime | None = None) -> datetime | None:
        """Earliest upcoming firing across all scheduled policies."""
        now = now or datetime.now(UTC)
        upcoming = []
        for trigger in self._triggers.values():
            fire_time = trigger.get_next_fire_time(None, now)
            if fire_time is not None:
                upcoming.append(fire_time)
        return min(upcoming) if upcoming else None
