"""
Token cost estimation for a consensus job.

Pure and deterministic: the same topic, sources, depth and provider count
always produce the same estimate, and the estimate is always positive. Used
both for admission control and for pre-submission display.

Cost model, with N drafting providers and I input tokens per call:
- Phase 1: N calls of (I + draft output)
- Phase 2: N calls of (I + draft under review + review output)
- Phase 3: one call of (I + N drafts + N reviews + arbitration output)
The sum is inflated by 5% and floored at a depth-dependent minimum that
grows with the number of sources.
"""
import math
from dataclasses import dataclass
from typing import Dict, Sequence, Union

from consensus_ai.models.domain import Depth

OVERHEAD_FACTOR = 1.05
PROMPT_OVERHEAD_TOKENS = 200  # instructions wrapped around the input in every call
MINIMUM_PER_SOURCE = 500


@dataclass(frozen=True)
class DepthProfile:
    draft_tokens: int
    review_tokens: int
    arbitration_tokens: int
    base_minimum: int


DEPTH_PROFILES = {
    Depth.STANDARD: DepthProfile(draft_tokens=600, review_tokens=300, arbitration_tokens=900, base_minimum=8000),
    Depth.DETAILED: DepthProfile(draft_tokens=1200, review_tokens=600, arbitration_tokens=1800, base_minimum=12000),
}


def count_text_tokens(text: str) -> int:
    """Approximate tokens as the larger of chars/4 and words/0.75."""
    if not text:
        return 0
    by_chars = math.ceil(len(text) / 4)
    by_words = math.ceil(len(text.split()) / 0.75)
    return max(by_chars, by_words)


def _phase_costs(
    topic: str,
    sources: Sequence[str],
    depth: Union[Depth, str],
    provider_count: int,
) -> Dict[str, int]:
    if provider_count < 1:
        raise ValueError("provider_count must be at least 1")
    profile = DEPTH_PROFILES[Depth(depth)]
    n = provider_count
    input_tokens = (
        PROMPT_OVERHEAD_TOKENS
        + count_text_tokens(topic)
        + sum(count_text_tokens(source) for source in sources)
    )
    return {
        "phase1": n * (input_tokens + profile.draft_tokens),
        "phase2": n * (input_tokens + profile.draft_tokens + profile.review_tokens),
        "phase3": (
            input_tokens
            + n * profile.draft_tokens
            + n * profile.review_tokens
            + profile.arbitration_tokens
        ),
    }


def minimum_tokens(sources: Sequence[str], depth: Union[Depth, str]) -> int:
    return DEPTH_PROFILES[Depth(depth)].base_minimum + MINIMUM_PER_SOURCE * len(sources)


def estimate_tokens(
    topic: str,
    sources: Sequence[str],
    depth: Union[Depth, str] = Depth.STANDARD,
    provider_count: int = 3,
) -> int:
    """
    Estimate the total tokens a consensus job will consume.

    Raises:
        ValueError: if provider_count < 1 or depth is unknown
    """
    raw = sum(_phase_costs(topic, sources, depth, provider_count).values())
    return max(math.ceil(raw * OVERHEAD_FACTOR), minimum_tokens(sources, depth))


def estimate_breakdown(
    topic: str,
    sources: Sequence[str],
    depth: Union[Depth, str] = Depth.STANDARD,
    provider_count: int = 3,
) -> Dict[str, int]:
    """
    Split the estimate across phases for display.

    The phase values always sum to ``total``; when the minimum floor applies
    they are scaled up proportionally.
    """
    costs = _phase_costs(topic, sources, depth, provider_count)
    total = estimate_tokens(topic, sources, depth, provider_count)
    raw = sum(costs.values())

    breakdown: Dict[str, int] = {}
    allocated = 0
    for phase in ("phase1", "phase2"):
        breakdown[phase] = math.floor(total * costs[phase] / raw)
        allocated += breakdown[phase]
    breakdown["phase3"] = total - allocated
    breakdown["total"] = total
    breakdown["minimum"] = minimum_tokens(sources, depth)
    return breakdown
