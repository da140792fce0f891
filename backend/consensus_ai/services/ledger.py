"""
Usage ledger and admission control.

The ledger owns every write to an account's usage: job consumption, period
rollover and alert flags all run under one asyncio lock per account, and are
persisted by compare-and-set on the usage record version. A LedgerConflict
(another process won the race) is retried here and never reaches callers.

Admission policy for an estimate E against remaining allowance A:
- admit when A >= E
- otherwise admit with bounded overage when the shortfall E - A is at most
  ``overage_tolerance`` x E and E is at most ``max_overage_ratio`` x A
- otherwise raise AdmissionDenied(required=E, available=A, overage=E - A)
"""
import asyncio
import calendar
import weakref
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from consensus_ai.core.config import LedgerSettings
from consensus_ai.core.errors import AccountNotFound, AdmissionDenied, LedgerConflict
from consensus_ai.core.logging import get_logger
from consensus_ai.core.metrics import (
    record_admission_decision,
    record_ledger_conflict,
    record_tokens_consumed,
)
from consensus_ai.models.domain import (
    Account,
    BillingType,
    SubscriptionTier,
    UsageRecord,
    utcnow,
)
from consensus_ai.services.store import Store
from consensus_ai.services.tiers import TierCatalog

logger = get_logger(__name__)


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by whole calendar months, clamping the day to the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class Availability:
    required: int
    available: int
    allowance: int
    consumed: int

    @property
    def sufficient(self) -> bool:
        return self.available >= self.required

    @property
    def overage(self) -> int:
        return max(0, self.required - self.available)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "required": self.required,
            "available": self.available,
            "sufficient": self.sufficient,
            "overage": self.overage,
        }


class UsageLedger:
    def __init__(
        self,
        store: Store,
        tiers: TierCatalog,
        settings: Optional[LedgerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.tiers = tiers
        self.settings = settings or LedgerSettings()
        self._clock = clock
        # Entries disappear once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, account_id: str) -> asyncio.Lock:
        """Mutation lock for one account; different accounts never contend."""
        lock = self._locks.get(account_id)
        if lock is None:
            lock = self._locks[account_id] = asyncio.Lock()
        return lock

    async def ensure_account(
        self,
        account_id: str,
        tier: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Account:
        """
        Return the account, provisioning it on first sight.

        The tier supplied by upstream auth is authoritative and overwrites
        the stored one when they differ.
        """
        if tier is not None and self.tiers.get(tier) is None:
            raise KeyError(f"unknown subscription tier: {tier}")

        async with self.lock_for(account_id):
            account = await self.store.get_account(account_id)
            if account is None:
                start = self._clock().replace(hour=0, minute=0, second=0, microsecond=0)
                account = Account(
                    id=account_id,
                    tier=tier or self.settings.default_tier,
                    email=email,
                    period_start=start,
                    period_end=add_months(start, 1),
                )
                await self.store.save_account(account)
                logger.info("account_provisioned", account_id=account_id, tier=account.tier)
            elif (tier and tier != account.tier) or (email and email != account.email):
                account = account.model_copy(update={
                    "tier": tier or account.tier,
                    "email": email or account.email,
                })
                await self.store.save_account(account)
                logger.info("account_updated", account_id=account_id, tier=account.tier)
            return account

    async def get_account(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        return account

    def tier_for(self, account: Account) -> SubscriptionTier:
        return self.tiers.require(account.tier)

    async def check_availability(self, account_id: str, estimate: int) -> Availability:
        account = await self.get_account(account_id)
        tier = self.tier_for(account)
        record = await self.store.get_or_create_usage(account.id, account.period_key)
        return Availability(
            required=estimate,
            available=max(0, tier.included_tokens - record.tokens_consumed),
            allowance=tier.included_tokens,
            consumed=record.tokens_consumed,
        )

    async def consume(self, account_id: str, tokens: int, report: bool = False) -> UsageRecord:
        """
        Add ``tokens`` (and optionally one report) to the current period.

        Serialized per account in-process; cross-process races are resolved
        by retrying the compare-and-set.
        """
        if tokens < 0:
            raise ValueError("tokens must be non-negative")

        async with self.lock_for(account_id):
            account = await self.get_account(account_id)
            tier = self.tier_for(account)

            for attempt in range(1, self.settings.conflict_retries + 1):
                record = await self.store.get_or_create_usage(account.id, account.period_key)
                if tokens == 0 and not report:
                    return record
                consumed = record.tokens_consumed + tokens
                overage_tokens = max(0, consumed - tier.included_tokens)
                updated = record.model_copy(update={
                    "tokens_consumed": consumed,
                    "reports_generated": record.reports_generated + (1 if report else 0),
                    "overage_tokens": overage_tokens,
                    "overage_cost": round(overage_tokens * tier.overage_rate, 4),
                })
                try:
                    stored = await self.store.update_usage(updated, expected_version=record.version)
                except LedgerConflict:
                    record_ledger_conflict()
                    logger.info(
                        "ledger_conflict_retry",
                        account_id=account_id,
                        period_key=record.period_key,
                        attempt=attempt,
                    )
                    await asyncio.sleep(0.01 * attempt)
                    continue

                record_tokens_consumed(tier.name, tokens)
                logger.info(
                    "usage_consumed",
                    account_id=account_id,
                    period_key=stored.period_key,
                    tokens=tokens,
                    report=report,
                    tokens_consumed=stored.tokens_consumed,
                    overage_tokens=stored.overage_tokens,
                )
                return stored

        logger.error(
            "ledger_conflict_retries_exhausted",
            account_id=account_id,
            tokens=tokens,
            retries=self.settings.conflict_retries,
        )
        raise LedgerConflict(account_id, account.period_key)

    async def usage_stats(self, account_id: str) -> Dict[str, Any]:
        account = await self.get_account(account_id)
        record = await self.store.get_or_create_usage(account.id, account.period_key)
        return self._stats(account, record)

    def _stats(self, account: Account, record: UsageRecord) -> Dict[str, Any]:
        tier = self.tier_for(account)
        used = record.tokens_consumed
        limit = tier.included_tokens
        overage_tokens = max(0, used - limit)
        overage_cost = round(overage_tokens * tier.overage_rate, 4)
        if tier.billing_type == BillingType.PAY_PER_USE:
            base_charge = tier.price * record.reports_generated
        else:
            base_charge = tier.price
        return {
            "accountId": account.id,
            "tier": tier.name,
            "billingType": tier.billing_type.value,
            "used": used,
            "limit": limit,
            "remaining": max(0, limit - used),
            "usagePercentage": round(used / limit * 100, 2) if limit else 0.0,
            "overageTokens": overage_tokens,
            "overageCost": overage_cost,
            "notionalCharge": round(base_charge + overage_cost, 2),
            "reportsGenerated": record.reports_generated,
            "includedReports": tier.included_reports,
            "periodKey": record.period_key,
            "periodStart": account.period_start.isoformat(),
            "periodEnd": account.period_end.isoformat(),
        }

    async def reset_period(self, account_id: str, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        """
        Roll the account into its current billing period.

        Idempotent: an account whose period has not elapsed is left alone and
        None is returned. Otherwise the closed period's stats are returned and
        the new period starts from a fresh usage record.
        """
        now = now or self._clock()
        async with self.lock_for(account_id):
            account = await self.get_account(account_id)
            if account.period_end > now:
                return None

            closed = await self.store.get_or_create_usage(account.id, account.period_key)
            closed_stats = self._stats(account, closed)

            start, end = account.period_start, account.period_end
            while end <= now:
                start, end = end, add_months(end, 1)

            account = account.model_copy(update={
                "period_start": start,
                "period_end": end,
                "alert_period": None,
                "overage_period": None,
            })
            await self.store.save_account(account)
            await self.store.get_or_create_usage(account.id, account.period_key)

            logger.info(
                "usage_period_reset",
                account_id=account_id,
                closed_period=closed.period_key,
                new_period=account.period_key,
                closed_tokens=closed.tokens_consumed,
            )
            return closed_stats

    async def mark_threshold(self, account_id: str, kind: str) -> bool:
        """
        Record that an ``alert`` or ``overage`` notice went out this period.

        Returns False when it was already recorded, so each fires at most
        once per period.
        """
        field = {"alert": "alert_period", "overage": "overage_period"}[kind]
        async with self.lock_for(account_id):
            account = await self.get_account(account_id)
            if getattr(account, field) == account.period_key:
                return False
            await self.store.save_account(account.model_copy(update={field: account.period_key}))
            return True


class AdmissionController:
    """Decides whether a job may start given its estimate and the account's remaining allowance."""

    def __init__(self, ledger: UsageLedger, settings: Optional[LedgerSettings] = None):
        self.ledger = ledger
        self.settings = settings or ledger.settings

    def decide(self, availability: Availability) -> str:
        if availability.sufficient:
            return "admitted"
        estimate = availability.required
        within_tolerance = availability.overage <= self.settings.overage_tolerance * estimate
        within_ratio = estimate <= self.settings.max_overage_ratio * availability.available
        if within_tolerance and within_ratio:
            return "admitted_overage"
        return "denied"

    async def admit(self, account_id: str, estimate: int) -> Availability:
        """
        Raises:
            AdmissionDenied: if the estimate cannot be covered
        """
        availability = await self.ledger.check_availability(account_id, estimate)
        decision = self.decide(availability)
        record_admission_decision(decision)

        if decision == "denied":
            logger.info(
                "admission_denied",
                account_id=account_id,
                required=estimate,
                available=availability.available,
                overage=availability.overage,
            )
            raise AdmissionDenied(
                required=estimate,
                available=availability.available,
                overage=availability.overage,
            )

        logger.info(
            "admission_granted",
            account_id=account_id,
            required=estimate,
            available=availability.available,
            overage=availability.overage,
            decision=decision,
        )
        return availability
