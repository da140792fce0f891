"""
Three-phase consensus pipeline.

Responsibilities:
- Phase 1 (drafting): the same prompt goes to every drafting provider at
  once; the phase waits for every call to settle and needs a quorum of
  successful drafts to continue.
- Phase 2 (peer review): each surviving draft is reviewed by the next
  surviving provider in fixed round-robin order, never by its author. One
  review is enough to continue; each missing review lowers confidence.
- Phase 3 (arbitration): the arbiter turns drafts and reviews into the final
  report, with exactly one retry.
- Completion: actual tokens are the sum of every PhaseResult, the artifact
  is persisted once and the ledger is charged.
- Failure: terminal, no artifact, tokens already spent are still charged.

Provider failures are absorbed here and recorded in the PhaseResult; only
quorum and arbitration failures end a job. Every provider call runs under a
process-wide semaphore and a hard stall guard slightly above the adapter's
own timeout.
"""
import asyncio
import time
from typing import Dict, List, Optional, Sequence

from consensus_ai.core.config import OrchestratorSettings
from consensus_ai.core.errors import ArbitrationFailure, JobFailure, QuorumFailure
from consensus_ai.core.logging import get_logger, set_account_id, set_job_id
from consensus_ai.core.metrics import (
    consensus_jobs_in_flight,
    record_job_outcome,
    record_phase_duration,
    record_provider_call,
)
from consensus_ai.core.tracing import start_span
from consensus_ai.models.domain import (
    ConsensusArtifact,
    Job,
    JobPhase,
    PhaseResult,
    ProviderOutput,
    utcnow,
)
from consensus_ai.services.consensus.prompts import (
    analyst_labels,
    build_arbitration_prompt,
    build_draft_prompt,
    build_review_prompt,
)
from consensus_ai.services.estimator import DEPTH_PROFILES
from consensus_ai.services.ledger import UsageLedger
from consensus_ai.services.providers import ProviderFailure, ProviderRegistry, Timeout
from consensus_ai.services.store import Store

logger = get_logger(__name__)

MIN_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95
CONFIDENCE_PER_PROVIDER = 0.15
MISSING_REVIEW_PENALTY = 0.05

# (start, end) progress for each running phase
PROGRESS_RANGES = {
    JobPhase.PHASE1: (10, 40),
    JobPhase.PHASE2: (40, 70),
    JobPhase.PHASE3: (70, 95),
}


def compute_confidence(successful_drafts: int, missing_reviews: int = 0) -> float:
    """
    Breadth-based confidence: min(0.95, 0.5 + 0.15 x drafts), less 0.05 per
    missing review, bounded to [0.5, 0.95].
    """
    base = min(MAX_CONFIDENCE, MIN_CONFIDENCE + CONFIDENCE_PER_PROVIDER * successful_drafts)
    penalized = base - MISSING_REVIEW_PENALTY * missing_reviews
    return round(max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, penalized)), 2)


def assign_reviewers(authors: Sequence[str], pool: Sequence[str]) -> Dict[str, Optional[str]]:
    """
    Map each draft author to its reviewer.

    With two or more surviving authors the reviewer is the next author in
    order (wrapping around). Otherwise the next provider after the author in
    ``pool`` is used; None means no reviewer other than the author exists.
    """
    if len(authors) >= 2:
        return {author: authors[(index + 1) % len(authors)] for index, author in enumerate(authors)}

    assignment: Dict[str, Optional[str]] = {}
    for author in authors:
        reviewer = None
        if author in pool:
            start = list(pool).index(author)
            for offset in range(1, len(pool)):
                candidate = pool[(start + offset) % len(pool)]
                if candidate != author:
                    reviewer = candidate
                    break
        else:
            reviewer = next((candidate for candidate in pool if candidate != author), None)
        assignment[author] = reviewer
    return assignment


class JobCancelled(Exception):
    """The job was failed externally (cancellation) while a phase was running."""


class PhaseProgress:
    """Moves job progress through a phase's range as its calls settle."""

    def __init__(self, job: Job, phase: JobPhase, expected_calls: int):
        self.job = job
        self.low, self.high = PROGRESS_RANGES[phase]
        self.expected_calls = max(1, expected_calls)
        self.settled = 0

    def settle(self) -> None:
        self.settled = min(self.expected_calls, self.settled + 1)
        span = self.high - self.low
        self.job.set_progress(self.low + span * self.settled // self.expected_calls)


class ConsensusOrchestrator:
    def __init__(
        self,
        providers: ProviderRegistry,
        store: Store,
        ledger: UsageLedger,
        drafters: Sequence[str],
        arbiter: str,
        settings: Optional[OrchestratorSettings] = None,
    ):
        self.providers = providers
        self.store = store
        self.ledger = ledger
        self.drafters = list(drafters)
        self.arbiter = arbiter
        self.settings = settings or OrchestratorSettings()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_calls)

        if len(self.drafters) < self.settings.quorum:
            logger.warning(
                "consensus_quorum_unreachable",
                drafters=self.drafters,
                quorum=self.settings.quorum,
            )

    @property
    def provider_count(self) -> int:
        return len(self.drafters)

    async def run(self, job: Job) -> Job:
        """Drive ``job`` from pending to a terminal phase. Never raises for pipeline failures."""
        set_job_id(job.id)
        set_account_id(job.account_id)
        consensus_jobs_in_flight.inc()
        logger.info(
            "consensus_job_started",
            drafters=self.drafters,
            arbiter=self.arbiter,
            estimated_tokens=job.estimated_tokens,
            depth=job.options.depth.value,
        )

        try:
            with start_span("consensus.job", job_id=job.id, account_id=job.account_id):
                drafts = await self._run_phase1(job)
                reviews = await self._run_phase2(job, drafts)
                final = await self._run_phase3(job, drafts, reviews)
                await self._complete(job, drafts, reviews, final)
        except JobFailure as exc:
            await self._fail(job, exc.code, exc.phase, exc.details())
        except JobCancelled:
            await self._charge_spent(job)
            record_job_outcome("failed", "cancelled")
            logger.info("consensus_job_cancelled", tokens_spent=job.tokens_spent())
        except asyncio.CancelledError:
            await self._fail(job, "interrupted", job.phase.value, {})
            raise
        except Exception as exc:
            logger.error(
                "consensus_job_crashed",
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            await self._fail(job, "internal_error", job.phase.value, {"error_type": type(exc).__name__})
        finally:
            consensus_jobs_in_flight.dec()
            set_job_id(None)

        return job

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_phase1(self, job: Job) -> List[ProviderOutput]:
        await self._enter_phase(job, JobPhase.PHASE1)
        profile = DEPTH_PROFILES[job.options.depth]
        prompt = build_draft_prompt(job.input.topic, job.input.sources, job.options.depth)

        result = PhaseResult(phase=JobPhase.PHASE1)
        job.phase_results.append(result)
        progress = PhaseProgress(job, JobPhase.PHASE1, len(self.drafters))
        with start_span("consensus.phase", phase="phase1", job_id=job.id):
            calls = [
                self._call(JobPhase.PHASE1, provider_id, prompt, "draft", profile.draft_tokens, progress)
                for provider_id in self.drafters
            ]
            result.outputs.extend(await asyncio.gather(*calls))
        await self._settle_phase(job, result)

        drafts = result.successes
        if len(drafts) < self.settings.quorum:
            raise QuorumFailure(
                phase="phase1",
                required=self.settings.quorum,
                succeeded=len(drafts),
                reasons={o.provider_id: o.error_code for o in result.outputs if not o.success},
            )
        return drafts

    async def _run_phase2(self, job: Job, drafts: List[ProviderOutput]) -> List[ProviderOutput]:
        await self._enter_phase(job, JobPhase.PHASE2)
        profile = DEPTH_PROFILES[job.options.depth]
        labels = analyst_labels(self.drafters)
        authors = [draft.provider_id for draft in drafts]
        reviewers = assign_reviewers(authors, self.drafters)

        result = PhaseResult(phase=JobPhase.PHASE2)
        job.phase_results.append(result)
        assigned = [draft for draft in drafts if reviewers[draft.provider_id] is not None]
        progress = PhaseProgress(job, JobPhase.PHASE2, len(assigned))
        with start_span("consensus.phase", phase="phase2", job_id=job.id):
            calls = []
            for draft in assigned:
                reviewer = reviewers[draft.provider_id]
                prompt = build_review_prompt(
                    job.input.topic,
                    job.input.sources,
                    draft.text or "",
                    labels[draft.provider_id],
                    job.options.depth,
                )
                calls.append(self._call(
                    JobPhase.PHASE2, reviewer, prompt, "review", profile.review_tokens, progress,
                    target=draft.provider_id,
                ))
            result.outputs.extend(await asyncio.gather(*calls))
        await self._settle_phase(job, result)

        reviews = result.successes
        if not reviews:
            raise QuorumFailure(
                phase="phase2",
                required=1,
                succeeded=0,
                reasons={o.provider_id: o.error_code for o in result.outputs if not o.success},
            )
        return reviews

    async def _run_phase3(
        self,
        job: Job,
        drafts: List[ProviderOutput],
        reviews: List[ProviderOutput],
    ) -> ProviderOutput:
        await self._enter_phase(job, JobPhase.PHASE3)
        profile = DEPTH_PROFILES[job.options.depth]
        labels = analyst_labels(self.drafters)
        prompt = build_arbitration_prompt(
            job.input.topic,
            job.input.sources,
            drafts=[{"label": labels[d.provider_id], "text": d.text or ""} for d in drafts],
            reviews=[
                {
                    "reviewer": labels.get(r.provider_id, r.provider_id),
                    "target": labels[r.target_provider_id],
                    "text": r.text or "",
                }
                for r in reviews
            ],
            depth=job.options.depth,
        )

        result = PhaseResult(phase=JobPhase.PHASE3)
        job.phase_results.append(result)
        attempts = 1 + self.settings.arbiter_retries
        progress = PhaseProgress(job, JobPhase.PHASE3, attempts)
        with start_span("consensus.phase", phase="phase3", job_id=job.id):
            for attempt in range(1, attempts + 1):
                output = await self._call(
                    JobPhase.PHASE3, self.arbiter, prompt, "arbitration", profile.arbitration_tokens, progress,
                )
                result.outputs.append(output)
                if output.success:
                    break
                if attempt < attempts:
                    logger.warning(
                        "consensus_arbitration_retry",
                        arbiter=self.arbiter,
                        attempt=attempt,
                        error_code=output.error_code,
                    )
        await self._settle_phase(job, result)

        final = result.outputs[-1]
        if not final.success:
            raise ArbitrationFailure(self.arbiter, attempts=len(result.outputs), reason=final.error or "")
        return final

    # ------------------------------------------------------------------
    # Calls, transitions, outcomes
    # ------------------------------------------------------------------

    async def _call(
        self,
        phase: JobPhase,
        provider_id: str,
        prompt: str,
        role: str,
        max_tokens: int,
        progress: PhaseProgress,
        target: Optional[str] = None,
    ) -> ProviderOutput:
        """One provider call; failures come back as an unsuccessful ProviderOutput."""
        stall_after = self.providers.get(provider_id).timeout_seconds + self.settings.stall_grace_seconds
        failure: Optional[ProviderFailure] = None
        response = None
        start = time.monotonic()
        async with self._semaphore:
            try:
                response = await asyncio.wait_for(
                    self.providers.invoke(
                        provider_id,
                        prompt,
                        max_tokens=max_tokens,
                        temperature=self.settings.temperature,
                    ),
                    timeout=stall_after,
                )
            except asyncio.TimeoutError:
                failure = Timeout(provider_id, stall_after)
            except ProviderFailure as exc:
                failure = exc

        latency_ms = int((time.monotonic() - start) * 1000)
        if failure is None:
            output = ProviderOutput(
                provider_id=provider_id,
                role=role,
                target_provider_id=target,
                text=response.text,
                tokens_used=response.tokens_used,
                latency_ms=latency_ms,
                success=True,
            )
            record_provider_call(provider_id, phase.value, "success", latency_ms / 1000, response.tokens_used)
        else:
            output = ProviderOutput(
                provider_id=provider_id,
                role=role,
                target_provider_id=target,
                tokens_used=failure.tokens_used,
                latency_ms=latency_ms,
                success=False,
                error_code=failure.kind,
                error=failure.message,
                transient=failure.transient,
            )
            record_provider_call(provider_id, phase.value, failure.kind, latency_ms / 1000, failure.tokens_used)
            logger.warning(
                "consensus_provider_call_failed",
                phase=phase.value,
                provider=provider_id,
                role=role,
                error_code=failure.kind,
                transient=failure.transient,
                error=failure.message,
            )

        progress.settle()
        return output

    async def _enter_phase(self, job: Job, phase: JobPhase) -> None:
        if job.is_terminal:
            raise JobCancelled()
        job.advance(phase)
        job.set_progress(PROGRESS_RANGES[phase][0])
        await self.store.save_job(job)
        logger.info("consensus_phase_started", phase=phase.value)

    async def _settle_phase(self, job: Job, result: PhaseResult) -> None:
        result.completed_at = utcnow()
        duration = (result.completed_at - result.started_at).total_seconds()
        job.phase_timings[result.phase.value] = duration
        record_phase_duration(result.phase.value, duration)
        logger.info(
            "consensus_phase_completed",
            phase=result.phase.value,
            succeeded=len(result.successes),
            failed=len(result.outputs) - len(result.successes),
            tokens=result.tokens_used,
            duration_seconds=round(duration, 3),
        )
        if job.is_terminal:
            raise JobCancelled()
        job.set_progress(PROGRESS_RANGES[result.phase][1])
        await self.store.save_job(job)

    async def _complete(
        self,
        job: Job,
        drafts: List[ProviderOutput],
        reviews: List[ProviderOutput],
        final: ProviderOutput,
    ) -> None:
        missing_reviews = len(drafts) - len(reviews)
        confidence = compute_confidence(len(drafts), missing_reviews)
        actual_tokens = job.tokens_spent()

        metadata = {}
        if job.options.include_metadata:
            metadata = {
                "depth": job.options.depth.value,
                "arbiter": self.arbiter,
                "reviewers": {r.target_provider_id: r.provider_id for r in reviews},
                "missingReviews": missing_reviews,
                "estimatedTokens": job.estimated_tokens,
                "phaseTimings": dict(job.phase_timings),
            }

        artifact = ConsensusArtifact(
            job_id=job.id,
            account_id=job.account_id,
            topic=job.input.topic,
            text=final.text or "",
            confidence=confidence,
            contributing_providers=[draft.provider_id for draft in drafts],
            total_tokens=actual_tokens,
            phase_traces=[result.model_copy(deep=True) for result in job.phase_results],
            metadata=metadata,
        )

        # No await between the terminal check and complete()
        if job.is_terminal:
            raise JobCancelled()
        job.complete(actual_tokens=actual_tokens, result_ref=artifact.id)
        await self.store.save_artifact(artifact)
        await self.store.save_job(job)
        record_job_outcome("completed")
        logger.info(
            "consensus_job_completed",
            confidence=confidence,
            actual_tokens=actual_tokens,
            estimated_tokens=job.estimated_tokens,
            contributing_providers=artifact.contributing_providers,
            missing_reviews=missing_reviews,
        )

        try:
            await self.ledger.consume(job.account_id, actual_tokens, report=True)
        except Exception as exc:
            logger.error(
                "consensus_usage_charge_failed",
                tokens=actual_tokens,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )

    async def _fail(self, job: Job, code: str, phase: str, details: dict) -> None:
        if not job.is_terminal:
            job.fail(code=code, phase=phase, details=details)
            await self.store.save_job(job)
        record_job_outcome("failed", code)
        logger.error(
            "consensus_job_failed",
            code=code,
            phase=phase,
            tokens_spent=job.tokens_spent(),
            details=details,
        )
        await self._charge_spent(job)

    async def _charge_spent(self, job: Job) -> None:
        """Charge tokens already spent by a job that will not complete."""
        spent = job.tokens_spent()
        if spent <= 0:
            return
        try:
            await self.ledger.consume(job.account_id, spent, report=False)
        except Exception as exc:
            logger.error(
                "consensus_usage_charge_failed",
                tokens=spent,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
