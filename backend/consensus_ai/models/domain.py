"""
Domain models for accounts, tiers, jobs, phase results, artifacts and usage.

Jobs are mutated only by the orchestrator (through ``advance``/``fail``/
``complete``) and never leave a terminal phase. Tiers and artifacts are
immutable once created.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from consensus_ai.core.errors import InvalidTransition

TOPIC_MIN_CHARS = 10
TOPIC_MAX_CHARS = 1000
MAX_SOURCES = 10
SOURCE_MAX_CHARS = 5000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingType(str, Enum):
    METERED_SUBSCRIPTION = "metered-subscription"
    PAY_PER_USE = "pay-per-use"


class SubscriptionTier(BaseModel):
    """Reference data for a billing tier. Owned by the billing subsystem."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    billing_type: BillingType
    included_tokens: int = Field(..., ge=0)
    included_reports: Optional[int] = Field(None, ge=0)  # None = unlimited/pay per report
    price: float = Field(..., ge=0, description="Monthly price, or price per report for pay-per-use")
    overage_rate: float = Field(..., ge=0, description="Price per token beyond the allowance")


class Account(BaseModel):
    id: str
    tier: str
    email: Optional[str] = None
    active: bool = True
    period_start: datetime
    period_end: datetime
    # Period keys for which the usage alert / overage notice already went out
    alert_period: Optional[str] = None
    overage_period: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def period_key(self) -> str:
        return period_key_for(self.period_start)


def period_key_for(period_start: datetime) -> str:
    return period_start.strftime("%Y-%m-%d")


class UsageRecord(BaseModel):
    """One row per account per billing period. ``version`` guards concurrent writes."""

    account_id: str
    period_key: str
    tokens_consumed: int = 0
    reports_generated: int = 0
    overage_tokens: int = 0
    overage_cost: float = 0.0
    version: int = 0
    updated_at: datetime = Field(default_factory=utcnow)


class Depth(str, Enum):
    STANDARD = "standard"
    DETAILED = "detailed"


class ConsensusOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    depth: Depth = Depth.STANDARD
    include_metadata: bool = Field(False, alias="includeMetadata")


class ConsensusInput(BaseModel):
    """Topic plus ordered source texts submitted for consensus."""

    topic: str
    sources: List[str] = Field(default_factory=list)

    @field_validator("topic")
    @classmethod
    def validate_topic(cls, value: str) -> str:
        topic = value.strip()
        if not TOPIC_MIN_CHARS <= len(topic) <= TOPIC_MAX_CHARS:
            raise ValueError(
                f"topic must be between {TOPIC_MIN_CHARS} and {TOPIC_MAX_CHARS} characters"
            )
        return topic

    @field_validator("sources")
    @classmethod
    def validate_sources(cls, value: List[str]) -> List[str]:
        if len(value) > MAX_SOURCES:
            raise ValueError(f"at most {MAX_SOURCES} sources are allowed")
        sources = []
        for index, source in enumerate(value):
            text = source.strip()
            if not text or len(text) > SOURCE_MAX_CHARS:
                raise ValueError(
                    f"source {index} must be between 1 and {SOURCE_MAX_CHARS} characters"
                )
            sources.append(text)
        return sources


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobPhase(str, Enum):
    PENDING = "pending"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    JobPhase.PENDING: {JobPhase.PHASE1, JobPhase.FAILED},
    JobPhase.PHASE1: {JobPhase.PHASE2, JobPhase.FAILED},
    JobPhase.PHASE2: {JobPhase.PHASE3, JobPhase.FAILED},
    JobPhase.PHASE3: {JobPhase.COMPLETED, JobPhase.FAILED},
    JobPhase.COMPLETED: set(),
    JobPhase.FAILED: set(),
}

RUNNING_PHASES = (JobPhase.PHASE1, JobPhase.PHASE2, JobPhase.PHASE3)


class ProviderOutput(BaseModel):
    provider_id: str
    role: str  # draft, review, arbitration
    target_provider_id: Optional[str] = None  # author of the reviewed draft
    text: Optional[str] = None
    tokens_used: int = 0
    latency_ms: int = 0
    success: bool
    error_code: Optional[str] = None
    error: Optional[str] = None
    transient: Optional[bool] = None


class PhaseResult(BaseModel):
    phase: JobPhase
    outputs: List[ProviderOutput] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def tokens_used(self) -> int:
        return sum(output.tokens_used for output in self.outputs)

    @property
    def successes(self) -> List[ProviderOutput]:
        return [output for output in self.outputs if output.success]


class JobError(BaseModel):
    message: str = "generation failed"
    code: str
    phase: str
    details: Dict[str, Any] = Field(default_factory=dict)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account_id: str
    input: ConsensusInput
    options: ConsensusOptions = Field(default_factory=ConsensusOptions)
    phase: JobPhase = JobPhase.PENDING
    estimated_tokens: int
    actual_tokens: Optional[int] = None
    progress: int = 0
    phase_results: List[PhaseResult] = Field(default_factory=list)
    phase_timings: Dict[str, float] = Field(default_factory=dict)  # phase -> seconds
    error: Optional[JobError] = None
    result_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def status(self) -> JobStatus:
        if self.phase == JobPhase.PENDING:
            return JobStatus.PENDING
        if self.phase == JobPhase.COMPLETED:
            return JobStatus.COMPLETED
        if self.phase == JobPhase.FAILED:
            return JobStatus.FAILED
        return JobStatus.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.phase in (JobPhase.COMPLETED, JobPhase.FAILED)

    def advance(self, target: JobPhase) -> None:
        """Move to ``target``, refusing any transition the state machine forbids."""
        if target not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransition(self.id, self.phase.value, target.value)
        now = utcnow()
        self.phase = target
        self.updated_at = now
        if target == JobPhase.PHASE1:
            self.started_at = now
        if target in (JobPhase.COMPLETED, JobPhase.FAILED):
            self.completed_at = now

    def set_progress(self, value: int) -> None:
        """Progress never regresses."""
        self.progress = max(self.progress, min(100, int(value)))

    def fail(self, code: str, phase: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.advance(JobPhase.FAILED)
        self.error = JobError(code=code, phase=phase, details=details or {})

    def complete(self, actual_tokens: int, result_ref: str) -> None:
        if self.actual_tokens is not None:
            raise InvalidTransition(self.id, self.phase.value, JobPhase.COMPLETED.value)
        self.advance(JobPhase.COMPLETED)
        self.actual_tokens = actual_tokens
        self.result_ref = result_ref
        self.set_progress(100)

    def tokens_spent(self) -> int:
        return sum(result.tokens_used for result in self.phase_results)


class ConsensusArtifact(BaseModel):
    """Final synthesized report. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    account_id: str
    topic: str
    text: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    contributing_providers: List[str]
    total_tokens: int
    phase_traces: List[PhaseResult]
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def to_report(self, include_traces: bool = True) -> Dict[str, Any]:
        """Stable shape consumed by report rendering."""
        report: Dict[str, Any] = {
            "id": self.id,
            "jobId": self.job_id,
            "topic": self.topic,
            "text": self.text,
            "confidence": self.confidence,
            "contributingProviders": list(self.contributing_providers),
            "tokens": {
                "total": self.total_tokens,
                "byPhase": {trace.phase.value: trace.tokens_used for trace in self.phase_traces},
            },
            "createdAt": self.created_at.isoformat(),
        }
        if include_traces:
            report["phaseTraces"] = [
                {
                    "phase": trace.phase.value,
                    "outputs": [
                        {
                            "provider": output.provider_id,
                            "role": output.role,
                            "target": output.target_provider_id,
                            "success": output.success,
                            "tokensUsed": output.tokens_used,
                            "latencyMs": output.latency_ms,
                            "errorCode": output.error_code,
                        }
                        for output in trace.outputs
                    ],
                }
                for trace in self.phase_traces
            ]
        if self.metadata:
            report["metadata"] = dict(self.metadata)
        return report
