"""
Job registry: submission, status polling, result retrieval and cancellation.

Live jobs are held in memory and shared with the orchestrator task running
them, so a status poll sees every phase transition and progress step as
soon as it happens. The store keeps the durable copy.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from consensus_ai.core.config import SchedulerSettings
from consensus_ai.core.errors import JobNotCompleted, JobNotFound, ValidationError
from consensus_ai.core.logging import get_logger
from consensus_ai.models.domain import (
    RUNNING_PHASES,
    ConsensusArtifact,
    ConsensusInput,
    ConsensusOptions,
    Job,
    JobPhase,
    utcnow,
)
from consensus_ai.services.consensus.orchestrator import ConsensusOrchestrator
from consensus_ai.services.estimator import estimate_breakdown, estimate_tokens
from consensus_ai.services.ledger import AdmissionController, UsageLedger
from consensus_ai.services.store import Store

logger = get_logger(__name__)


def _coerce_input(payload: Any) -> ConsensusInput:
    if isinstance(payload, ConsensusInput):
        return ConsensusInput(topic=payload.topic, sources=list(payload.sources))
    try:
        return ConsensusInput.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(first.get("msg", "invalid input"), field=field or None) from exc


def _coerce_options(payload: Any) -> ConsensusOptions:
    if payload is None:
        return ConsensusOptions()
    if isinstance(payload, ConsensusOptions):
        return payload
    try:
        return ConsensusOptions.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in ("options", *first.get("loc", ())))
        raise ValidationError(first.get("msg", "invalid options"), field=field) from exc


class JobRegistry:
    def __init__(
        self,
        store: Store,
        ledger: UsageLedger,
        admission: AdmissionController,
        orchestrator: ConsensusOrchestrator,
        settings: Optional[SchedulerSettings] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.admission = admission
        self.orchestrator = orchestrator
        self.settings = settings or SchedulerSettings()
        self._jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def _estimate(self, consensus_input: ConsensusInput, options: ConsensusOptions) -> int:
        return estimate_tokens(
            consensus_input.topic,
            consensus_input.sources,
            options.depth,
            max(1, self.orchestrator.provider_count),
        )

    async def estimate(self, account_id: str, payload: Any, options: Any = None) -> Dict[str, Any]:
        """Estimate cost and check it against the account's remaining allowance."""
        consensus_input = _coerce_input(payload)
        opts = _coerce_options(options)
        estimated = self._estimate(consensus_input, opts)
        availability = await self.ledger.check_availability(account_id, estimated)
        breakdown = estimate_breakdown(
            consensus_input.topic,
            consensus_input.sources,
            opts.depth,
            max(1, self.orchestrator.provider_count),
        )
        return {
            "estimatedTokens": estimated,
            "available": availability.available,
            "sufficient": availability.sufficient,
            "overage": availability.overage,
            "admissible": self.admission.decide(availability) != "denied",
            "breakdown": breakdown,
        }

    async def submit(self, account_id: str, payload: Any, options: Any = None) -> Job:
        """
        Validate, estimate, admit and start a job.

        Raises:
            ValidationError: input rejected (never charged)
            AdmissionDenied: quota insufficient (never charged)
        """
        consensus_input = _coerce_input(payload)
        opts = _coerce_options(options)
        estimated = self._estimate(consensus_input, opts)

        await self.admission.admit(account_id, estimated)

        job = Job(
            account_id=account_id,
            input=consensus_input,
            options=opts,
            estimated_tokens=estimated,
        )
        self._jobs[job.id] = job
        await self.store.save_job(job)

        task = asyncio.create_task(self.orchestrator.run(job), name=f"consensus-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job.id, None))

        logger.info(
            "consensus_job_submitted",
            job_id=job.id,
            account_id=account_id,
            estimated_tokens=estimated,
            sources=len(consensus_input.sources),
            depth=opts.depth.value,
        )
        return job

    async def get_job(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        job = await self.get_job(job_id)
        status: Dict[str, Any] = {
            "jobId": job.id,
            "status": job.status.value,
            "phase": job.phase.value,
            "progress": job.progress,
            "estimatedTokens": job.estimated_tokens,
            "actualTokens": job.actual_tokens,
            "phases": {
                result.phase.value: {
                    "succeeded": len(result.successes),
                    "failed": len(result.outputs) - len(result.successes),
                    "tokens": result.tokens_used,
                    "durationSeconds": job.phase_timings.get(result.phase.value),
                }
                for result in job.phase_results
            },
            "createdAt": job.created_at.isoformat(),
            "updatedAt": job.updated_at.isoformat(),
            "completedAt": job.completed_at.isoformat() if job.completed_at else None,
            "error": None,
        }
        if job.error is not None:
            status["error"] = {
                "message": job.error.message,
                "code": job.error.code,
                "phase": job.error.phase,
            }
        return status

    async def get_result(self, job_id: str) -> ConsensusArtifact:
        """
        Raises:
            JobNotFound: unknown job
            JobNotCompleted: job is still running or failed
        """
        job = await self.get_job(job_id)
        if job.phase != JobPhase.COMPLETED:
            failure = None
            if job.error is not None:
                failure = {"code": job.error.code, "phase": job.error.phase}
            raise JobNotCompleted(job.id, job.status.value, job.phase.value, failure)
        artifact = await self.store.get_artifact(job.id)
        if artifact is None:
            raise JobNotFound(job_id)
        return artifact

    async def cancel(self, job_id: str) -> Job:
        """
        Fail a job immediately. In-flight provider calls drain in the
        background; tokens they spend are still charged.
        """
        job = await self.get_job(job_id)
        if job.is_terminal:
            return job
        job.fail(code="cancelled", phase=job.phase.value)
        await self.store.save_job(job)
        logger.info("consensus_job_cancel_requested", job_id=job.id, account_id=job.account_id)
        return job

    async def reconcile_stale(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Daily cleanup.

        - Non-terminal jobs with no live task in this process and no update
          for ``stale_job_minutes`` are marked failed ("orphaned").
        - Terminal jobs older than ``job_retention_hours`` are purged.
        """
        now = now or utcnow()
        stale_before = now - timedelta(minutes=self.settings.stale_job_minutes)
        purge_before = now - timedelta(hours=self.settings.job_retention_hours)
        orphaned = purged = 0

        for job in await self.store.list_jobs((JobPhase.PENDING, *RUNNING_PHASES)):
            if job.id in self._tasks or job.updated_at > stale_before:
                continue
            live = self._jobs.get(job.id, job)
            if live.is_terminal:
                continue
            live.fail(code="orphaned", phase=live.phase.value)
            await self.store.save_job(live)
            orphaned += 1
            logger.warning("consensus_job_orphaned", job_id=live.id, account_id=live.account_id)

        for job in await self.store.list_jobs((JobPhase.COMPLETED, JobPhase.FAILED)):
            finished = job.completed_at or job.updated_at
            if finished < purge_before:
                await self.store.delete_job(job.id)
                self._jobs.pop(job.id, None)
                purged += 1

        for job_id in [job_id for job_id, job in self._jobs.items() if job.is_terminal and job_id not in self._tasks]:
            if self._jobs[job_id].updated_at < purge_before:
                self._jobs.pop(job_id, None)

        logger.info("consensus_jobs_reconciled", orphaned=orphaned, purged=purged)
        return {"orphaned": orphaned, "purged": purged}

    async def wait(self, job_id: str) -> None:
        """Wait for a job's background task to finish (used by tests and shutdown)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Give running jobs ``timeout`` seconds to finish, then interrupt them."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info("consensus_registry_draining", jobs=len(tasks))
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("consensus_registry_drained", finished=len(done), interrupted=len(pending))
