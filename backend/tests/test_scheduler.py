"""
Tests for scheduled maintenance: calendar, leases, period reset and threshold alerts.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from consensus_ai.core.config import SchedulerSettings
from consensus_ai.services.ledger import UsageLedger
from consensus_ai.services.notifications import OVERAGE_NOTICE, PERIOD_SUMMARY, USAGE_ALERT
from consensus_ai.services.scheduler import (
    CalendarSchedule,
    InMemoryLeaseManager,
    RedisLeaseManager,
    SCHEDULES,
    Scheduler,
)
from consensus_ai.services.tiers import TierCatalog

START = datetime(2024, 3, 10, 9, 30, tzinfo=timezone.utc)


class SlowResetLedger(UsageLedger):
    """Yields inside reset_period so overlapping runs really overlap."""

    async def reset_period(self, account_id, now=None):
        await asyncio.sleep(0.01)
        return await super().reset_period(account_id, now)


def make_scheduler(store, ledger, leases=None, registry=None):
    notifier = MagicMock()
    notifier.notify = AsyncMock()
    scheduler = Scheduler(
        registry or MagicMock(),
        ledger,
        notifier,
        store,
        leases=leases or InMemoryLeaseManager(),
        settings=SchedulerSettings(enabled=False),
        clock=lambda: START,
    )
    return scheduler, notifier


def test_calendar_daily():
    schedule = CalendarSchedule(hour=2)
    assert schedule.next_after(datetime(2024, 3, 10, 1, 0, tzinfo=timezone.utc)) == datetime(2024, 3, 10, 2, 0, tzinfo=timezone.utc)
    assert schedule.next_after(datetime(2024, 3, 10, 2, 0, tzinfo=timezone.utc)) == datetime(2024, 3, 11, 2, 0, tzinfo=timezone.utc)


def test_calendar_weekly_sunday():
    schedule = SCHEDULES["threshold_scan"]
    # 2024-03-10 is a Sunday
    assert schedule.next_after(datetime(2024, 3, 6, 12, 0, tzinfo=timezone.utc)) == datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)
    assert schedule.next_after(datetime(2024, 3, 10, 11, 0, tzinfo=timezone.utc)) == datetime(2024, 3, 17, 10, 0, tzinfo=timezone.utc)
    assert schedule.describe() == "weekly Sun 10:00 UTC"


@pytest.mark.asyncio
async def test_in_memory_lease_single_holder():
    clock = MagicMock(return_value=100.0)
    leases = InMemoryLeaseManager(clock=clock)

    token = await leases.acquire("trigger:period_reset", 60)
    assert token is not None
    assert await leases.acquire("trigger:period_reset", 60) is None
    assert await leases.release("trigger:period_reset", "not-the-owner") is False

    clock.return_value = 161.0
    assert await leases.acquire("trigger:period_reset", 60) is not None


@pytest.mark.asyncio
async def test_redis_lease_uses_set_nx_and_owner_checked_release():
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.eval = AsyncMock(return_value=1)
    leases = RedisLeaseManager(redis_client_provider=lambda: client)

    token = await leases.acquire("account:acct-1", 600)
    assert token is not None
    _, kwargs = client.set.call_args
    assert client.set.call_args[0][0] == "consensus:lease:account:acct-1"
    assert kwargs == {"nx": True, "px": 600000}

    assert await leases.release("account:acct-1", token) is True
    assert client.eval.call_args[0][1:] == (1, "consensus:lease:account:acct-1", token)

    client.set.return_value = None
    assert await leases.acquire("account:acct-1", 600) is None


@pytest.mark.asyncio
async def test_redis_lease_falls_back_without_redis():
    leases = RedisLeaseManager(redis_client_provider=lambda: None)
    token = await leases.acquire("trigger:daily_cleanup", 60)
    assert token is not None
    assert await leases.acquire("trigger:daily_cleanup", 60) is None
    assert await leases.release("trigger:daily_cleanup", token) is True


@pytest.mark.asyncio
async def test_redis_lease_falls_back_when_redis_errors():
    client = MagicMock()
    client.set = AsyncMock(side_effect=RedisConnectionError("redis down"))
    client.eval = AsyncMock(side_effect=RedisConnectionError("redis down"))
    leases = RedisLeaseManager(redis_client_provider=lambda: client)

    token = await leases.acquire("trigger:period_reset", 60)
    assert token is not None
    assert await leases.acquire("trigger:period_reset", 60) is None
    assert await leases.release("trigger:period_reset", token) is True


@pytest.mark.asyncio
async def test_period_reset_runs_while_redis_errors(store, ledger):
    account = await ledger.ensure_account("acct-1")
    client = MagicMock()
    client.set = AsyncMock(side_effect=OSError("connection reset"))
    client.eval = AsyncMock(side_effect=OSError("connection reset"))
    scheduler, notifier = make_scheduler(store, ledger, RedisLeaseManager(redis_client_provider=lambda: client))

    report = await scheduler.run("period_reset", account.period_end + timedelta(hours=3))

    assert report["status"] == "completed"
    assert report["result"]["reset"] == 1
    notifier.notify.assert_awaited_once()


@pytest.mark.asyncio
async def test_loop_keeps_running_after_failed_tick(store, ledger):
    scheduler = Scheduler(
        MagicMock(),
        ledger,
        MagicMock(),
        store,
        settings=SchedulerSettings(enabled=True, poll_interval_seconds=0.01),
        clock=lambda: START,
    )
    ticks = []

    async def tick(now=None):
        ticks.append(now)
        if len(ticks) == 1:
            raise RuntimeError("boom")

    scheduler.tick = tick

    scheduler.start()
    await asyncio.sleep(0.05)

    assert scheduler.running
    assert len(ticks) >= 2
    await scheduler.stop()


@pytest.mark.asyncio
async def test_concurrent_period_reset_runs_once(store):
    """Two overlapping reset runs: one resets and notifies, the other skips."""
    ledger = SlowResetLedger(store, TierCatalog(), clock=lambda: START)
    account = await ledger.ensure_account("acct-1", email="owner@example.com")
    await ledger.consume("acct-1", 4000, report=True)
    leases = InMemoryLeaseManager()
    first, notifier = make_scheduler(store, ledger, leases)
    second, _ = make_scheduler(store, ledger, leases)
    second.notifier = notifier

    after_end = account.period_end + timedelta(hours=3)
    reports = await asyncio.gather(first.run("period_reset", after_end), second.run("period_reset", after_end))

    assert sorted(report["status"] for report in reports) == ["completed", "skipped"]
    notifier.notify.assert_awaited_once()
    recipient, template_id, stats = notifier.notify.call_args[0]
    assert recipient == "owner@example.com"
    assert template_id == PERIOD_SUMMARY
    assert stats["used"] == 4000
    assert (await ledger.usage_stats("acct-1"))["used"] == 0


@pytest.mark.asyncio
async def test_period_reset_is_idempotent_across_runs(store, ledger):
    account = await ledger.ensure_account("acct-1")
    scheduler, notifier = make_scheduler(store, ledger)

    after_end = account.period_end + timedelta(hours=3)
    first = await scheduler.run("period_reset", after_end)
    second = await scheduler.run("period_reset", after_end)

    assert first["result"]["reset"] == 1
    assert second["result"]["reset"] == 0
    assert notifier.notify.await_count == 1


@pytest.mark.asyncio
async def test_account_lease_held_skips_account(store, ledger):
    account = await ledger.ensure_account("acct-1")
    leases = InMemoryLeaseManager()
    scheduler, notifier = make_scheduler(store, ledger, leases)
    await leases.acquire("account:acct-1", 600)

    report = await scheduler.run("period_reset", account.period_end + timedelta(hours=3))

    assert report["result"] == {"reset": 0, "skipped": 1, "failed": 0}
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_threshold_scan_alerts_once_per_period(store, ledger):
    await ledger.ensure_account("light", tier="starter")
    await ledger.ensure_account("heavy", tier="starter")
    await ledger.ensure_account("over", tier="starter")
    await ledger.consume("light", 10000)
    await ledger.consume("heavy", 40000)
    await ledger.consume("over", 51000)
    scheduler, notifier = make_scheduler(store, ledger)

    report = await scheduler.run("threshold_scan")
    sent = sorted((call.args[0], call.args[1]) for call in notifier.notify.call_args_list)

    assert report["result"]["alerts"] == 2
    assert report["result"]["overages"] == 1
    assert sent == [("heavy", USAGE_ALERT), ("over", OVERAGE_NOTICE), ("over", USAGE_ALERT)]

    notifier.notify.reset_mock()
    await scheduler.run("threshold_scan")
    notifier.notify.assert_not_awaited()


@pytest.mark.asyncio
async def test_daily_cleanup_delegates_to_registry(store, ledger):
    registry = MagicMock()
    registry.reconcile_stale = AsyncMock(return_value={"orphaned": 2, "purged": 5})
    scheduler, _ = make_scheduler(store, ledger, registry=registry)

    report = await scheduler.run("daily_cleanup", START)

    assert report == {"trigger": "daily_cleanup", "status": "completed", "result": {"orphaned": 2, "purged": 5}}
    registry.reconcile_stale.assert_awaited_once_with(START)


@pytest.mark.asyncio
async def test_trigger_failure_is_reported(store, ledger):
    registry = MagicMock()
    registry.reconcile_stale = AsyncMock(side_effect=RuntimeError("store down"))
    scheduler, _ = make_scheduler(store, ledger, registry=registry)

    report = await scheduler.run("daily_cleanup")

    assert report["status"] == "failed"
    assert scheduler.status()["triggers"]["daily_cleanup"]["lastRun"]["status"] == "failed"


@pytest.mark.asyncio
async def test_unknown_trigger(store, ledger):
    scheduler, _ = make_scheduler(store, ledger)
    with pytest.raises(KeyError):
        await scheduler.run("compact_everything")


@pytest.mark.asyncio
async def test_tick_runs_due_triggers(store, ledger):
    registry = MagicMock()
    registry.reconcile_stale = AsyncMock(return_value={"orphaned": 0, "purged": 0})
    scheduler, _ = make_scheduler(store, ledger, registry=registry)

    await scheduler.tick(START)  # schedules first occurrences
    registry.reconcile_stale.assert_not_awaited()

    await scheduler.tick(START + timedelta(days=1))
    registry.reconcile_stale.assert_awaited_once()
