"""
Scheduled maintenance.

Triggers (all times UTC):
- daily_cleanup: daily 02:00, fails orphaned jobs and purges old ones
- period_reset: daily 03:00, rolls accounts whose billing period elapsed
  into a new one and sends the closed period's summary
- threshold_scan: Sundays 10:00, sends a usage alert at >= 75% and an
  overage notice above 100%, each at most once per period

Every run takes a lease on its trigger, and every account it touches takes a
lease on that account. A lease that is already held means the work is
skipped, never queued, so overlapping runs (another process, a manual run, a
slow previous run) cannot reset or notify twice.
"""
import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from consensus_ai.core.cache import get_redis_client
from consensus_ai.core.config import SchedulerSettings
from consensus_ai.core.logging import get_logger
from consensus_ai.core.metrics import record_scheduler_run
from consensus_ai.models.domain import Account, utcnow
from consensus_ai.services.ledger import UsageLedger
from consensus_ai.services.notifications import (
    OVERAGE_NOTICE,
    PERIOD_SUMMARY,
    USAGE_ALERT,
    Notifier,
)
from consensus_ai.services.registry import JobRegistry
from consensus_ai.services.store import Store

logger = get_logger(__name__)


@dataclass(frozen=True)
class CalendarSchedule:
    """Fires at hour:minute UTC, every day or on one weekday (Monday=0)."""

    hour: int
    minute: int = 0
    weekday: Optional[int] = None

    def next_after(self, moment: datetime) -> datetime:
        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        if self.weekday is not None:
            candidate += timedelta(days=(self.weekday - candidate.weekday()) % 7)
        return candidate

    def describe(self) -> str:
        at = f"{self.hour:02d}:{self.minute:02d} UTC"
        if self.weekday is None:
            return f"daily {at}"
        day = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")[self.weekday]
        return f"weekly {day} {at}"


DAILY_CLEANUP = "daily_cleanup"
PERIOD_RESET = "period_reset"
THRESHOLD_SCAN = "threshold_scan"

SCHEDULES: Dict[str, CalendarSchedule] = {
    DAILY_CLEANUP: CalendarSchedule(hour=2),
    PERIOD_RESET: CalendarSchedule(hour=3),
    THRESHOLD_SCAN: CalendarSchedule(hour=10, weekday=6),
}


# ----------------------------------------------------------------------
# Leases
# ----------------------------------------------------------------------


class LeaseManager(ABC):
    @abstractmethod
    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Take the lease; returns an owner token, or None if it is held."""

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lease if ``token`` still owns it."""

    @asynccontextmanager
    async def hold(self, key: str, ttl_seconds: int) -> AsyncIterator[bool]:
        """Yields True while the lease is held, False if someone else holds it."""
        token = await self.acquire(key, ttl_seconds)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release(key, token)


class InMemoryLeaseManager(LeaseManager):
    """Leases for a single process."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}

    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        now = self._clock()
        held = self._leases.get(key)
        if held is not None and held[1] > now:
            return None
        token = uuid.uuid4().hex
        self._leases[key] = (token, now + ttl_seconds)
        return token

    async def release(self, key: str, token: str) -> bool:
        held = self._leases.get(key)
        if held is None or held[0] != token:
            return False
        del self._leases[key]
        return True


# Delete only if the caller still owns the lease
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisLeaseManager(LeaseManager):
    """
    Leases shared between processes through Redis (SET NX PX).

    Falls back to in-process leases while Redis is not connected or failing.
    """

    def __init__(
        self,
        redis_client_provider: Callable[[], Optional[Redis]] = get_redis_client,
        prefix: str = "consensus:lease:",
        fallback: Optional[LeaseManager] = None,
    ):
        self._redis_client_provider = redis_client_provider
        self.prefix = prefix
        self.fallback = fallback or InMemoryLeaseManager()

    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        client = self._redis_client_provider()
        if client is not None:
            token = uuid.uuid4().hex
            try:
                acquired = await client.set(self.prefix + key, token, nx=True, px=int(ttl_seconds * 1000))
            except (RedisError, OSError) as e:
                logger.warning(
                    "lease_redis_unavailable",
                    key=key,
                    operation="acquire",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                return token if acquired else None
        return await self.fallback.acquire(key, ttl_seconds)

    async def release(self, key: str, token: str) -> bool:
        client = self._redis_client_provider()
        if client is not None:
            try:
                if await client.eval(_RELEASE_SCRIPT, 1, self.prefix + key, token):
                    return True
            except (RedisError, OSError) as e:
                logger.warning(
                    "lease_redis_unavailable",
                    key=key,
                    operation="release",
                    error=str(e),
                    error_type=type(e).__name__,
                )
        # The lease may have been taken in-process while Redis was failing
        return await self.fallback.release(key, token)


# ----------------------------------------------------------------------
# Scheduler
# ----------------------------------------------------------------------


class Scheduler:
    def __init__(
        self,
        registry: JobRegistry,
        ledger: UsageLedger,
        notifier: Notifier,
        store: Store,
        leases: Optional[LeaseManager] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.ledger = ledger
        self.notifier = notifier
        self.store = store
        self.leases = leases or InMemoryLeaseManager()
        self.settings = settings or SchedulerSettings()
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._next_run: Dict[str, datetime] = {}
        self._last_run: Dict[str, Dict[str, Any]] = {}
        self._handlers = {
            DAILY_CLEANUP: self._daily_cleanup,
            PERIOD_RESET: self._period_reset,
            THRESHOLD_SCAN: self._threshold_scan,
        }

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self, trigger: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one trigger now.

        Returns a run report with status "completed", "skipped" (lease held)
        or "failed".

        Raises:
            KeyError: unknown trigger
        """
        handler = self._handlers[trigger]
        now = now or self._clock()
        started = time.monotonic()

        async with self.leases.hold(f"trigger:{trigger}", self.settings.lease_ttl_seconds) as acquired:
            if not acquired:
                logger.info("scheduler_trigger_skipped", trigger=trigger, reason="lease_held")
                record_scheduler_run(trigger, "skipped")
                report = {"trigger": trigger, "status": "skipped", "result": None}
                self._last_run[trigger] = {**report, "at": now.isoformat()}
                return report

            logger.info("scheduler_trigger_started", trigger=trigger)
            try:
                result = await handler(now)
            except Exception as exc:
                logger.error(
                    "scheduler_trigger_failed",
                    trigger=trigger,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                record_scheduler_run(trigger, "failed")
                report = {"trigger": trigger, "status": "failed", "result": {"error": str(exc)}}
                self._last_run[trigger] = {**report, "at": now.isoformat()}
                return report

        duration = time.monotonic() - started
        record_scheduler_run(trigger, "completed")
        logger.info(
            "scheduler_trigger_completed",
            trigger=trigger,
            duration_seconds=round(duration, 3),
            **result,
        )
        report = {"trigger": trigger, "status": "completed", "result": result}
        self._last_run[trigger] = {**report, "at": now.isoformat()}
        return report

    async def _daily_cleanup(self, now: datetime) -> Dict[str, int]:
        return await self.registry.reconcile_stale(now)

    async def _period_reset(self, now: datetime) -> Dict[str, int]:
        reset = skipped = failed = 0
        for account in await self.store.list_accounts(active_only=True):
            async with self.leases.hold(f"account:{account.id}", self.settings.lease_ttl_seconds) as acquired:
                if not acquired:
                    skipped += 1
                    continue
                try:
                    closed = await self.ledger.reset_period(account.id, now)
                    if closed is None:
                        continue
                    reset += 1
                    await self.notifier.notify(self._recipient(account), PERIOD_SUMMARY, closed)
                except Exception as exc:
                    failed += 1
                    logger.error(
                        "usage_period_reset_failed",
                        account_id=account.id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        return {"reset": reset, "skipped": skipped, "failed": failed}

    async def _threshold_scan(self, now: datetime) -> Dict[str, int]:
        alerts = overages = skipped = failed = 0
        for account in await self.store.list_accounts(active_only=True):
            async with self.leases.hold(f"account:{account.id}", self.settings.lease_ttl_seconds) as acquired:
                if not acquired:
                    skipped += 1
                    continue
                try:
                    stats = await self.ledger.usage_stats(account.id)
                    if not stats["limit"]:
                        continue
                    ratio = stats["used"] / stats["limit"]
                    recipient = self._recipient(account)

                    if ratio >= self.settings.alert_threshold and await self.ledger.mark_threshold(account.id, "alert"):
                        await self.notifier.notify(recipient, USAGE_ALERT, stats)
                        alerts += 1
                    if ratio > self.settings.overage_threshold and await self.ledger.mark_threshold(account.id, "overage"):
                        await self.notifier.notify(recipient, OVERAGE_NOTICE, stats)
                        overages += 1
                except Exception as exc:
                    failed += 1
                    logger.error(
                        "usage_threshold_scan_failed",
                        account_id=account.id,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
        return {"alerts": alerts, "overages": overages, "skipped": skipped, "failed": failed}

    @staticmethod
    def _recipient(account: Account) -> str:
        return account.email or account.id

    def status(self) -> Dict[str, Any]:
        now = self._clock()
        return {
            "enabled": self.settings.enabled,
            "running": self.running,
            "triggers": {
                name: {
                    "schedule": schedule.describe(),
                    "nextRun": self._next_run.get(name, schedule.next_after(now)).isoformat(),
                    "lastRun": self._last_run.get(name),
                }
                for name, schedule in SCHEDULES.items()
            },
        }

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self.settings.enabled:
            logger.info("scheduler_disabled")
            return
        if self.running:
            return
        now = self._clock()
        self._next_run = {name: schedule.next_after(now) for name, schedule in SCHEDULES.items()}
        self._task = asyncio.create_task(self._loop(), name="consensus-scheduler")
        logger.info(
            "scheduler_started",
            next_runs={name: due.isoformat() for name, due in self._next_run.items()},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(
                    "scheduler_tick_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def tick(self, now: Optional[datetime] = None) -> None:
        """Run every trigger that is due and schedule its next occurrence."""
        now = now or self._clock()
        for name, schedule in SCHEDULES.items():
            due = self._next_run.get(name)
            if due is None:
                self._next_run[name] = schedule.next_after(now)
                continue
            if due <= now:
                self._next_run[name] = schedule.next_after(now)
                await self.run(name, now)
