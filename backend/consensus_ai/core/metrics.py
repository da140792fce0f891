"""
Prometheus metrics collection module.

Metrics Categories:
- RED Metrics: Rate, Errors, Duration of the HTTP surface
- Provider Metrics: call outcomes, latency and token usage per provider
- Pipeline Metrics: job outcomes, phase durations, admission decisions
- Ledger Metrics: tokens consumed, compare-and-set conflicts
- Scheduler Metrics: trigger runs by outcome
- Resource Metrics: CPU, memory

All metrics follow Prometheus naming conventions:
- Counters: _total suffix
- Histograms: _seconds suffix for duration
- Gauges: No special suffix
"""
import re

import psutil
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    generate_latest,
    REGISTRY,
    CONTENT_TYPE_LATEST,
)

from consensus_ai.core.logging import get_logger

logger = get_logger(__name__)

registry = REGISTRY

# ============================================================================
# RED METRICS - Rate, Errors, Duration
# ============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status"],
    registry=registry,
)

http_errors_total = Counter(
    "http_errors_total",
    "Total number of HTTP errors",
    ["method", "endpoint", "status_code"],
    registry=registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=registry,
)

# ============================================================================
# PROVIDER METRICS
# ============================================================================

provider_calls_total = Counter(
    "provider_calls_total",
    "Total number of LLM provider calls",
    ["provider", "phase", "outcome"],  # outcome: success or failure kind
    registry=registry,
)

provider_call_latency_seconds = Histogram(
    "provider_call_latency_seconds",
    "LLM provider call latency in seconds",
    ["provider"],
    buckets=[0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0],
    registry=registry,
)

provider_tokens_total = Counter(
    "provider_tokens_total",
    "Total tokens reported by LLM providers",
    ["provider"],
    registry=registry,
)

# ============================================================================
# PIPELINE METRICS
# ============================================================================

consensus_jobs_total = Counter(
    "consensus_jobs_total",
    "Total number of consensus jobs by terminal outcome",
    ["outcome", "reason"],
    registry=registry,
)

consensus_phase_duration_seconds = Histogram(
    "consensus_phase_duration_seconds",
    "Consensus phase duration in seconds",
    ["phase"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 45.0, 90.0, 180.0],
    registry=registry,
)

consensus_jobs_in_flight = Gauge(
    "consensus_jobs_in_flight",
    "Number of consensus jobs currently running",
    registry=registry,
)

admission_decisions_total = Counter(
    "admission_decisions_total",
    "Admission controller decisions",
    ["decision"],  # admitted, admitted_overage, denied
    registry=registry,
)

# ============================================================================
# LEDGER METRICS
# ============================================================================

ledger_tokens_consumed_total = Counter(
    "ledger_tokens_consumed_total",
    "Total tokens charged to account ledgers",
    ["tier"],
    registry=registry,
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Optimistic usage updates that lost a race and were retried",
    registry=registry,
)

# ============================================================================
# SCHEDULER METRICS
# ============================================================================

scheduler_runs_total = Counter(
    "scheduler_runs_total",
    "Scheduler trigger invocations",
    ["trigger", "outcome"],  # outcome: completed, skipped, failed
    registry=registry,
)

rate_limit_hits_total = Counter(
    "rate_limit_hits_total",
    "Requests rejected by the rate limiter",
    ["bucket"],
    registry=registry,
)

# ============================================================================
# RESOURCE METRICS
# ============================================================================

system_cpu_usage_percent = Gauge(
    "system_cpu_usage_percent",
    "System CPU usage percentage",
    registry=registry,
)

system_memory_usage_bytes = Gauge(
    "system_memory_usage_bytes",
    "System memory usage in bytes",
    registry=registry,
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

_JOB_PATH = re.compile(r"^/consensus/(status|result|cancel)/[^/]+$")
_TRIGGER_PATH = re.compile(r"^/admin/scheduler/[^/]+/run$")


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metrics.

    Replaces job ids and trigger names with placeholders to avoid high
    cardinality in metrics.

    Examples:
        /consensus/status/3f1c... -> /consensus/status/{job_id}
        /consensus/estimate?topic=x -> /consensus/estimate
        /health -> /health
    """
    if "?" in path:
        path = path.split("?")[0]

    match = _JOB_PATH.match(path)
    if match:
        return f"/consensus/{match.group(1)}/{{job_id}}"

    if _TRIGGER_PATH.match(path):
        return "/admin/scheduler/{trigger}/run"

    return path


def record_http_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Record HTTP request metrics (RED metrics).

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: Request path (normalized here)
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    normalized_endpoint = normalize_endpoint(endpoint)

    http_requests_total.labels(
        method=method,
        endpoint=normalized_endpoint,
        status=str(status_code),
    ).inc()

    if status_code >= 400:
        http_errors_total.labels(
            method=method,
            endpoint=normalized_endpoint,
            status_code=str(status_code),
        ).inc()

    http_request_duration_seconds.labels(
        method=method,
        endpoint=normalized_endpoint,
    ).observe(duration_seconds)


def record_provider_call(
    provider: str,
    phase: str,
    outcome: str,
    latency_seconds: float,
    tokens: int = 0,
) -> None:
    """
    Record a single provider call.

    Args:
        provider: Provider id
        phase: Pipeline phase the call belonged to
        outcome: "success" or the failure kind (rate_limited, timeout, ...)
        latency_seconds: Wall-clock latency of the call
        tokens: Tokens reported by the provider
    """
    provider_calls_total.labels(provider=provider, phase=phase, outcome=outcome).inc()
    provider_call_latency_seconds.labels(provider=provider).observe(latency_seconds)
    if tokens:
        provider_tokens_total.labels(provider=provider).inc(tokens)


def record_job_outcome(outcome: str, reason: str = "none") -> None:
    consensus_jobs_total.labels(outcome=outcome, reason=reason).inc()


def record_phase_duration(phase: str, duration_seconds: float) -> None:
    consensus_phase_duration_seconds.labels(phase=phase).observe(duration_seconds)


def record_admission_decision(decision: str) -> None:
    admission_decisions_total.labels(decision=decision).inc()


def record_tokens_consumed(tier: str, tokens: int) -> None:
    if tokens > 0:
        ledger_tokens_consumed_total.labels(tier=tier).inc(tokens)


def record_ledger_conflict() -> None:
    ledger_conflicts_total.inc()


def record_scheduler_run(trigger: str, outcome: str) -> None:
    scheduler_runs_total.labels(trigger=trigger, outcome=outcome).inc()


def record_rate_limit_hit(bucket: str) -> None:
    rate_limit_hits_total.labels(bucket=bucket).inc()


def update_resource_metrics() -> None:
    """
    Update system resource metrics (CPU, memory).

    Called on-demand when metrics are scraped.
    """
    try:
        system_cpu_usage_percent.set(psutil.cpu_percent(interval=None))
        system_memory_usage_bytes.set(psutil.virtual_memory().used)
    except Exception as e:
        logger.warning(
            "metrics_resource_update_failed",
            error=str(e),
            error_type=type(e).__name__,
        )


def get_metrics() -> bytes:
    """Get Prometheus metrics in text format."""
    update_resource_metrics()
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
