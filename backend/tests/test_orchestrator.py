"""
Tests for the three-phase consensus pipeline.
"""
import asyncio

import pytest

from consensus_ai.models.domain import ConsensusInput, ConsensusOptions, Job, JobPhase
from consensus_ai.services.consensus.orchestrator import assign_reviewers, compute_confidence
from consensus_ai.services.providers import InvalidResponse, RateLimited, Timeout, TransportError
from consensus_ai.services.store import InMemoryStore

from conftest import SOURCES, TOPIC, FakeProviders, build_pipeline


class RecordingStore(InMemoryStore):
    """Keeps the phase of every saved job snapshot."""

    def __init__(self):
        super().__init__()
        self.saved_phases = []

    async def save_job(self, job):
        self.saved_phases.append(job.phase)
        await super().save_job(job)


def make_job(account_id="acct-1", include_metadata=False):
    return Job(
        account_id=account_id,
        input=ConsensusInput(topic=TOPIC, sources=SOURCES),
        options=ConsensusOptions(include_metadata=include_metadata),
        estimated_tokens=9000,
    )


def test_confidence_formula():
    assert compute_confidence(2) == 0.8
    assert compute_confidence(3) == 0.95
    assert compute_confidence(4) == 0.95
    assert compute_confidence(2, missing_reviews=1) == 0.75
    assert compute_confidence(1, missing_reviews=5) == 0.5


def test_reviewers_round_robin_never_self():
    assignment = assign_reviewers(["a", "b", "c"], ["a", "b", "c", "d"])
    assert assignment == {"a": "b", "b": "c", "c": "a"}
    assert all(author != reviewer for author, reviewer in assignment.items())


def test_single_author_reviewed_from_pool():
    assert assign_reviewers(["b"], ["a", "b", "c"]) == {"b": "c"}
    assert assign_reviewers(["a"], ["a"]) == {"a": None}


@pytest.mark.asyncio
async def test_drafter_timeout_still_completes():
    """Four providers, one times out in drafting: three drafts feed a 0.95 confidence report."""
    providers = FakeProviders({
        "openai": ["analysis"],
        "anthropic": ["analysis"],
        "google": [Timeout("google", 45)],
        "cohere": ["analysis"],
    })
    store, ledger, _, orchestrator, _ = build_pipeline(providers, arbiter="openai")
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.COMPLETED
    assert job.progress == 100
    artifact = await store.get_artifact(job.id)
    assert artifact is not None
    assert artifact.confidence == 0.95
    assert sorted(artifact.contributing_providers) == ["anthropic", "cohere", "openai"]

    phase1 = job.phase_results[0]
    assert len(phase1.successes) == 3
    failed = [o for o in phase1.outputs if not o.success]
    assert failed[0].provider_id == "google"
    assert failed[0].error_code == "timeout"
    assert failed[0].transient is True
    # The timed-out provider is not asked to review
    assert len(providers.calls_for("google")) == 1


@pytest.mark.asyncio
async def test_arbiter_failure_fails_job_and_charges_spent_tokens():
    """Arbiter fails on the first attempt and on the retry: no artifact, phases 1-2 charged."""
    providers = FakeProviders({
        "openai": ["analysis"],
        "anthropic": ["analysis"],
        "cohere": ["analysis"],
        "judge": [TransportError("judge", "HTTP 503", transient=True, status_code=503)],
    })
    store, ledger, _, orchestrator, _ = build_pipeline(
        providers,
        drafters=["openai", "anthropic", "cohere"],
        arbiter="judge",
    )
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.FAILED
    assert job.error.message == "generation failed"
    assert job.error.code == "arbitration_failure"
    assert job.error.phase == "phase3"
    assert len(providers.calls_for("judge")) == 2
    assert await store.get_artifact(job.id) is None

    spent_phase1_2 = job.phase_results[0].tokens_used + job.phase_results[1].tokens_used
    assert spent_phase1_2 == 6 * 150
    stats = await ledger.usage_stats("acct-1")
    assert stats["used"] == spent_phase1_2
    assert stats["reportsGenerated"] == 0


@pytest.mark.asyncio
async def test_arbiter_retry_recovers():
    providers = FakeProviders({
        "openai": ["analysis"],
        "anthropic": ["analysis"],
        "judge": [RateLimited("judge"), "final report"],
    })
    store, ledger, _, orchestrator, _ = build_pipeline(
        providers, drafters=["openai", "anthropic"], arbiter="judge",
    )
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.COMPLETED
    artifact = await store.get_artifact(job.id)
    assert artifact.text == "final report"
    phase3 = job.phase_results[2]
    assert [o.success for o in phase3.outputs] == [False, True]


@pytest.mark.asyncio
async def test_phase1_quorum_failure():
    providers = FakeProviders({
        "openai": ["analysis"],
        "anthropic": [InvalidResponse("anthropic", "response contained no text")],
        "cohere": [Timeout("cohere", 45)],
    })
    store, ledger, _, orchestrator, _ = build_pipeline(providers, quorum=2)
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.FAILED
    assert job.error.code == "quorum_failure"
    assert job.error.phase == "phase1"
    assert job.error.details["succeeded"] == 1
    assert job.error.details["reasons"] == {"anthropic": "invalid_response", "cohere": "timeout"}
    assert len(job.phase_results) == 1
    assert (await ledger.usage_stats("acct-1"))["used"] == 150


@pytest.mark.asyncio
async def test_missing_review_lowers_confidence():
    """A failed review is tolerated but costs confidence."""
    providers = FakeProviders({
        "openai": ["draft", "review"],
        "anthropic": ["draft", TransportError("anthropic", "HTTP 500", transient=True)],
        "cohere": ["draft", "review"],
    })
    store, ledger, _, orchestrator, _ = build_pipeline(providers, arbiter="openai")
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.COMPLETED
    artifact = await store.get_artifact(job.id)
    assert artifact.confidence == 0.9


@pytest.mark.asyncio
async def test_transitions_are_monotonic():
    store = RecordingStore()
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"]})
    _, ledger, _, orchestrator, _ = build_pipeline(providers, store=store)
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    order = [JobPhase.PENDING, JobPhase.PHASE1, JobPhase.PHASE2, JobPhase.PHASE3, JobPhase.COMPLETED]
    indices = [order.index(phase) for phase in store.saved_phases]
    assert indices == sorted(indices)
    assert store.saved_phases[-1] == JobPhase.COMPLETED


@pytest.mark.asyncio
async def test_actual_tokens_equal_sum_of_phase_results():
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"], "cohere": ["text"]})
    store, ledger, _, orchestrator, _ = build_pipeline(providers)
    await ledger.ensure_account("acct-1")
    job = make_job(include_metadata=True)

    await orchestrator.run(job)

    total = sum(result.tokens_used for result in job.phase_results)
    artifact = await store.get_artifact(job.id)
    assert job.actual_tokens == total
    assert artifact.total_tokens == total
    assert (await ledger.usage_stats("acct-1"))["used"] == total
    assert (await ledger.usage_stats("acct-1"))["reportsGenerated"] == 1
    assert artifact.metadata["missingReviews"] == 0


@pytest.mark.asyncio
async def test_prompts_hide_provider_names_from_arbiter():
    providers = FakeProviders({"openai": ["openai draft"], "anthropic": ["anthropic draft"]})
    _, ledger, _, orchestrator, _ = build_pipeline(providers, arbiter="openai")
    await ledger.ensure_account("acct-1")

    await orchestrator.run(make_job())

    arbitration_prompt = providers.calls_for("openai")[-1]["prompt"]
    assert "Analyst A" in arbitration_prompt and "Analyst B" in arbitration_prompt
    assert "Peer reviews" in arbitration_prompt


@pytest.mark.asyncio
async def test_stalled_call_is_cut_off():
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"], "slow": [1.0]})
    providers.get("slow").timeout_seconds = 0.01
    _, ledger, _, orchestrator, _ = build_pipeline(
        providers, drafters=["openai", "anthropic", "slow"], arbiter="openai", stall_grace_seconds=0.0,
    )
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.phase == JobPhase.COMPLETED
    slow = next(o for o in job.phase_results[0].outputs if o.provider_id == "slow")
    assert slow.success is False
    assert slow.error_code == "timeout"


@pytest.mark.asyncio
async def test_cancelled_job_stops_and_charges():
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"]})
    store, ledger, _, orchestrator, _ = build_pipeline(providers)
    await ledger.ensure_account("acct-1")
    job = make_job()

    original_settle = orchestrator._settle_phase

    async def cancel_after_phase1(job_, result):
        if result.phase == JobPhase.PHASE1:
            job_.fail(code="cancelled", phase="phase1")
        await original_settle(job_, result)

    orchestrator._settle_phase = cancel_after_phase1
    await orchestrator.run(job)

    assert job.phase == JobPhase.FAILED
    assert job.error.code == "cancelled"
    assert len(job.phase_results) == 1
    assert (await ledger.usage_stats("acct-1"))["used"] == 300


class SlowArtifactStore(InMemoryStore):
    """Yields to the event loop while an artifact is being written."""

    def __init__(self):
        super().__init__()
        self.saving_artifact = asyncio.Event()

    async def save_artifact(self, artifact):
        self.saving_artifact.set()
        await asyncio.sleep(0.05)
        await super().save_artifact(artifact)


@pytest.mark.asyncio
async def test_cancel_during_artifact_write_keeps_job_completed():
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"]})
    store, ledger, _, _, registry = build_pipeline(providers, store=SlowArtifactStore())
    await ledger.ensure_account("acct-1")

    job = await registry.submit("acct-1", {"topic": TOPIC, "sources": SOURCES})
    await store.saving_artifact.wait()
    cancelled = await registry.cancel(job.id)
    await registry.wait(job.id)

    assert cancelled.phase == JobPhase.COMPLETED
    assert cancelled.error is None
    artifact = await store.get_artifact(job.id)
    assert artifact is not None
    assert (await store.get_job(job.id)).result_ref == artifact.id
    assert (await ledger.usage_stats("acct-1"))["reportsGenerated"] == 1


@pytest.mark.asyncio
async def test_cancel_after_arbitration_persists_no_artifact():
    providers = FakeProviders({"openai": ["text"], "anthropic": ["text"]})
    store, ledger, _, orchestrator, _ = build_pipeline(providers)
    await ledger.ensure_account("acct-1")
    job = make_job()

    original_phase3 = orchestrator._run_phase3

    async def cancel_after_phase3(job_, drafts, reviews):
        final = await original_phase3(job_, drafts, reviews)
        job_.fail(code="cancelled", phase="phase3")
        return final

    orchestrator._run_phase3 = cancel_after_phase3
    await orchestrator.run(job)

    assert job.phase == JobPhase.FAILED
    assert job.error.code == "cancelled"
    assert job.actual_tokens is None
    assert await store.get_artifact(job.id) is None
    stats = await ledger.usage_stats("acct-1")
    assert stats["used"] == 5 * 150
    assert stats["reportsGenerated"] == 0


@pytest.mark.asyncio
async def test_unusable_response_usage_is_charged():
    unusable = InvalidResponse("anthropic", "response contained no text", status_code=200, tokens_used=40)
    providers = FakeProviders({"openai": ["analysis"], "anthropic": [unusable]})
    store, ledger, _, orchestrator, _ = build_pipeline(providers, quorum=2)
    await ledger.ensure_account("acct-1")
    job = make_job()

    await orchestrator.run(job)

    assert job.error.code == "quorum_failure"
    outputs = {o.provider_id: o for o in job.phase_results[0].outputs}
    assert outputs["anthropic"].success is False
    assert outputs["anthropic"].tokens_used == 40
    assert (await ledger.usage_stats("acct-1"))["used"] == 150 + 40
