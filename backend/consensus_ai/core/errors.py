"""
Error taxonomy for the consensus service.

Every domain error carries a stable ``code`` and a structured ``details()``
payload so that user-visible failures always contain enough data to decide
whether to retry, upgrade or abandon.

- ValidationError: rejected before admission, never charged
- AdmissionDenied: quota insufficient, rejected before any provider call
- QuorumFailure: a phase produced fewer successful results than required
- ArbitrationFailure: Phase 3 failed after its single retry
- LedgerConflict: concurrent usage update lost a race (retried internally)

Per-call provider failures live in ``consensus_ai.services.providers.base``.
"""
from typing import Any, Dict, Optional


class ConsensusError(Exception):
    """Base class for all domain errors."""

    code = "consensus_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(ConsensusError):
    """Request rejected before admission."""

    code = "validation_error"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field

    def details(self) -> Dict[str, Any]:
        payload = super().details()
        if self.field:
            payload["field"] = self.field
        return payload


class AdmissionDenied(ConsensusError):
    """Estimated cost exceeds what the account may spend."""

    code = "insufficient_tokens"

    def __init__(self, required: int, available: int, overage: int):
        super().__init__("Insufficient tokens")
        self.required = required
        self.available = available
        self.overage = overage

    def details(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "required": self.required,
            "available": self.available,
            "overage": self.overage,
        }


class JobFailure(ConsensusError):
    """Terminal pipeline failure attributed to a phase."""

    code = "generation_failed"

    def __init__(self, message: str, phase: str):
        super().__init__(message)
        self.phase = phase

    def details(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "phase": self.phase}


class QuorumFailure(JobFailure):
    """Too few successful provider results for a phase to be valid."""

    code = "quorum_failure"

    def __init__(self, phase: str, required: int, succeeded: int, reasons: Dict[str, str]):
        super().__init__(
            f"{phase} reached {succeeded} of {required} required results",
            phase=phase,
        )
        self.required = required
        self.succeeded = succeeded
        self.reasons = reasons

    def details(self) -> Dict[str, Any]:
        payload = super().details()
        payload.update(
            required=self.required,
            succeeded=self.succeeded,
            reasons=self.reasons,
        )
        return payload


class ArbitrationFailure(JobFailure):
    """Arbiter failed on the initial attempt and on the retry."""

    code = "arbitration_failure"

    def __init__(self, arbiter: str, attempts: int, reason: str):
        super().__init__(
            f"arbiter {arbiter} failed after {attempts} attempts: {reason}",
            phase="phase3",
        )
        self.arbiter = arbiter
        self.attempts = attempts


class LedgerConflict(ConsensusError):
    """Optimistic usage update lost a race with another writer."""

    code = "ledger_conflict"

    def __init__(self, account_id: str, period_key: str):
        super().__init__(f"usage record {account_id}/{period_key} changed concurrently")
        self.account_id = account_id
        self.period_key = period_key


class DuplicateArtifact(ConsensusError):
    """A second artifact was offered for a job that already has one."""

    code = "duplicate_artifact"

    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} already has an artifact")
        self.job_id = job_id


class AccountNotFound(ConsensusError):
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class JobNotFound(ConsensusError):
    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__("Job not found")
        self.job_id = job_id


class JobNotCompleted(ConsensusError):
    """Result requested for a job that has not (successfully) completed."""

    code = "job_not_completed"

    def __init__(self, job_id: str, status: str, phase: str, failure: Optional[Dict[str, Any]] = None):
        super().__init__("generation failed" if failure else "Job has not completed")
        self.job_id = job_id
        self.status = status
        self.phase = phase
        self.failure = failure

    def details(self) -> Dict[str, Any]:
        payload = super().details()
        payload.update(jobId=self.job_id, status=self.status, phase=self.phase)
        if self.failure:
            payload["failure"] = self.failure
        return payload


class InvalidTransition(ConsensusError):
    """Attempted a job state change the state machine does not allow."""

    code = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"job {job_id} cannot move from {current} to {target}")
        self.current = current
        self.target = target
