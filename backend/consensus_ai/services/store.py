"""
Document store for accounts, usage records, jobs and artifacts.

Two implementations share one async interface:
- InMemoryStore: process-local, used by default and in tests
- SupabaseStore: tables ``accounts``, ``usage_records``, ``consensus_jobs``
  and ``consensus_artifacts``

Usage records are updated by compare-and-set on ``version``; a lost race
raises LedgerConflict and the ledger retries. Artifacts are insert-once.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple

from supabase import Client, create_client

from consensus_ai.core.errors import DuplicateArtifact, LedgerConflict
from consensus_ai.core.logging import get_logger
from consensus_ai.models.domain import (
    Account,
    ConsensusArtifact,
    Job,
    JobPhase,
    UsageRecord,
    utcnow,
)

logger = get_logger(__name__)


class Store(ABC):
    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def save_account(self, account: Account) -> None: ...

    @abstractmethod
    async def list_accounts(self, active_only: bool = True) -> List[Account]: ...

    @abstractmethod
    async def get_usage(self, account_id: str, period_key: str) -> Optional[UsageRecord]: ...

    @abstractmethod
    async def get_or_create_usage(self, account_id: str, period_key: str) -> UsageRecord: ...

    @abstractmethod
    async def update_usage(self, record: UsageRecord, expected_version: int) -> UsageRecord:
        """Write ``record`` only if the stored version still equals ``expected_version``."""

    @abstractmethod
    async def save_job(self, job: Job) -> None: ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def list_jobs(self, phases: Optional[Iterable[JobPhase]] = None) -> List[Job]: ...

    @abstractmethod
    async def delete_job(self, job_id: str) -> None: ...

    @abstractmethod
    async def save_artifact(self, artifact: ConsensusArtifact) -> None:
        """Persist the artifact; raises DuplicateArtifact if the job already has one."""

    @abstractmethod
    async def get_artifact(self, job_id: str) -> Optional[ConsensusArtifact]: ...

    async def close(self) -> None:
        return None


class InMemoryStore(Store):
    """Process-local store. Every read and write copies, so callers never share state."""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}
        self._usage: Dict[Tuple[str, str], UsageRecord] = {}
        self._jobs: Dict[str, Job] = {}
        self._artifacts: Dict[str, ConsensusArtifact] = {}

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def save_account(self, account: Account) -> None:
        self._accounts[account.id] = account.model_copy(deep=True)

    async def list_accounts(self, active_only: bool = True) -> List[Account]:
        return [
            account.model_copy(deep=True)
            for account in self._accounts.values()
            if account.active or not active_only
        ]

    async def get_usage(self, account_id: str, period_key: str) -> Optional[UsageRecord]:
        record = self._usage.get((account_id, period_key))
        return record.model_copy() if record else None

    async def get_or_create_usage(self, account_id: str, period_key: str) -> UsageRecord:
        key = (account_id, period_key)
        if key not in self._usage:
            self._usage[key] = UsageRecord(account_id=account_id, period_key=period_key)
        return self._usage[key].model_copy()

    async def update_usage(self, record: UsageRecord, expected_version: int) -> UsageRecord:
        key = (record.account_id, record.period_key)
        current = self._usage.get(key)
        if current is None or current.version != expected_version:
            raise LedgerConflict(record.account_id, record.period_key)
        stored = record.model_copy(update={"version": expected_version + 1, "updated_at": utcnow()})
        self._usage[key] = stored
        return stored.model_copy()

    async def save_job(self, job: Job) -> None:
        self._jobs[job.id] = job.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, phases: Optional[Iterable[JobPhase]] = None) -> List[Job]:
        wanted = set(phases) if phases is not None else None
        return [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if wanted is None or job.phase in wanted
        ]

    async def delete_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._artifacts.pop(job_id, None)

    async def save_artifact(self, artifact: ConsensusArtifact) -> None:
        if artifact.job_id in self._artifacts:
            raise DuplicateArtifact(artifact.job_id)
        self._artifacts[artifact.job_id] = artifact

    async def get_artifact(self, job_id: str) -> Optional[ConsensusArtifact]:
        return self._artifacts.get(job_id)


class SupabaseStore(Store):
    """
    Supabase-backed store.

    The supabase client is synchronous; calls run in a worker thread so the
    event loop is never blocked.
    """

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_credentials(cls, url: str, key: str) -> "SupabaseStore":
        logger.info("supabase_client_creating", url_prefix=url[:30])
        return cls(create_client(url, key))

    async def _run(self, query):
        return await asyncio.to_thread(query.execute)

    async def get_account(self, account_id: str) -> Optional[Account]:
        response = await self._run(
            self.client.table("accounts").select("*").eq("id", account_id).limit(1)
        )
        return Account.model_validate(response.data[0]) if response.data else None

    async def save_account(self, account: Account) -> None:
        await self._run(self.client.table("accounts").upsert(account.model_dump(mode="json")))

    async def list_accounts(self, active_only: bool = True) -> List[Account]:
        query = self.client.table("accounts").select("*")
        if active_only:
            query = query.eq("active", True)
        response = await self._run(query)
        return [Account.model_validate(row) for row in response.data or []]

    async def get_usage(self, account_id: str, period_key: str) -> Optional[UsageRecord]:
        response = await self._run(
            self.client.table("usage_records")
            .select("*")
            .eq("account_id", account_id)
            .eq("period_key", period_key)
            .limit(1)
        )
        return UsageRecord.model_validate(response.data[0]) if response.data else None

    async def get_or_create_usage(self, account_id: str, period_key: str) -> UsageRecord:
        fresh = UsageRecord(account_id=account_id, period_key=period_key)
        await self._run(
            self.client.table("usage_records").upsert(
                fresh.model_dump(mode="json"),
                on_conflict="account_id,period_key",
                ignore_duplicates=True,
            )
        )
        record = await self.get_usage(account_id, period_key)
        return record or fresh

    async def update_usage(self, record: UsageRecord, expected_version: int) -> UsageRecord:
        stored = record.model_copy(update={"version": expected_version + 1, "updated_at": utcnow()})
        response = await self._run(
            self.client.table("usage_records")
            .update(stored.model_dump(mode="json"))
            .eq("account_id", record.account_id)
            .eq("period_key", record.period_key)
            .eq("version", expected_version)
        )
        if not response.data:
            raise LedgerConflict(record.account_id, record.period_key)
        return stored

    def _job_row(self, job: Job) -> dict:
        return {
            "id": job.id,
            "account_id": job.account_id,
            "phase": job.phase.value,
            "status": job.status.value,
            "payload": job.model_dump(mode="json"),
            "updated_at": job.updated_at.isoformat(),
        }

    async def save_job(self, job: Job) -> None:
        await self._run(self.client.table("consensus_jobs").upsert(self._job_row(job)))

    async def get_job(self, job_id: str) -> Optional[Job]:
        response = await self._run(
            self.client.table("consensus_jobs").select("payload").eq("id", job_id).limit(1)
        )
        return Job.model_validate(response.data[0]["payload"]) if response.data else None

    async def list_jobs(self, phases: Optional[Iterable[JobPhase]] = None) -> List[Job]:
        query = self.client.table("consensus_jobs").select("payload")
        if phases is not None:
            query = query.in_("phase", [phase.value for phase in phases])
        response = await self._run(query)
        return [Job.model_validate(row["payload"]) for row in response.data or []]

    async def delete_job(self, job_id: str) -> None:
        await self._run(self.client.table("consensus_artifacts").delete().eq("job_id", job_id))
        await self._run(self.client.table("consensus_jobs").delete().eq("id", job_id))

    async def save_artifact(self, artifact: ConsensusArtifact) -> None:
        await self._run(
            self.client.table("consensus_artifacts").upsert(
                {
                    "id": artifact.id,
                    "job_id": artifact.job_id,
                    "account_id": artifact.account_id,
                    "payload": artifact.model_dump(mode="json"),
                    "created_at": artifact.created_at.isoformat(),
                },
                on_conflict="job_id",
                ignore_duplicates=True,
            )
        )
        existing = await self.get_artifact(artifact.job_id)
        if existing is None or existing.id != artifact.id:
            raise DuplicateArtifact(artifact.job_id)

    async def get_artifact(self, job_id: str) -> Optional[ConsensusArtifact]:
        response = await self._run(
            self.client.table("consensus_artifacts").select("payload").eq("job_id", job_id).limit(1)
        )
        return ConsensusArtifact.model_validate(response.data[0]["payload"]) if response.data else None
