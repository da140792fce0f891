"""
Prompt builders for the three consensus phases.

Drafts never see each other; reviewers see one draft; the arbiter sees every
surviving draft and review. Provider names are replaced by neutral labels so
that reviewers and the arbiter judge content, not vendors.
"""
from typing import Dict, List, Sequence

from consensus_ai.models.domain import Depth

LENGTH_GUIDANCE = {
    Depth.STANDARD: {"draft": "500-800 words", "review": "200-300 words", "final": "800-1200 words"},
    Depth.DETAILED: {"draft": "1000-1500 words", "review": "400-600 words", "final": "1500-2200 words"},
}


def _format_sources(sources: Sequence[str]) -> str:
    if not sources:
        return "(no sources supplied; rely on general knowledge and say so)"
    return "\n".join(f"[{index}] {source}" for index, source in enumerate(sources, start=1))


def analyst_labels(provider_ids: Sequence[str]) -> Dict[str, str]:
    """Stable neutral label per provider, in draft order (Analyst A, Analyst B, ...)."""
    return {
        provider_id: f"Analyst {chr(ord('A') + index)}"
        for index, provider_id in enumerate(provider_ids)
    }


def build_draft_prompt(topic: str, sources: Sequence[str], depth: Depth) -> str:
    length = LENGTH_GUIDANCE[depth]["draft"]
    return (
        "You are an independent analyst. Write your own analysis of the topic "
        "using the numbered sources below.\n\n"
        f"Topic: {topic}\n\n"
        f"Sources:\n{_format_sources(sources)}\n\n"
        "Requirements:\n"
        "- Identify the main themes and the evidence behind them, citing sources by number.\n"
        "- Point out where sources agree or contradict each other.\n"
        "- Separate established facts from interpretation.\n"
        f"- Length: {length}.\n\n"
        "Analysis:"
    )


def build_review_prompt(
    topic: str,
    sources: Sequence[str],
    draft: str,
    author_label: str,
    depth: Depth,
) -> str:
    length = LENGTH_GUIDANCE[depth]["review"]
    return (
        f"You are peer reviewing an analysis written by {author_label}.\n\n"
        f"Topic: {topic}\n\n"
        f"Sources:\n{_format_sources(sources)}\n\n"
        f"Analysis under review:\n{draft}\n\n"
        "Review it for factual accuracy against the sources, unsupported claims, "
        "missing perspectives and reasoning errors. List concrete corrections. "
        f"Length: {length}.\n\n"
        "Review:"
    )


def build_arbitration_prompt(
    topic: str,
    sources: Sequence[str],
    drafts: List[Dict[str, str]],
    reviews: List[Dict[str, str]],
    depth: Depth,
) -> str:
    """
    Args:
        drafts: [{"label": ..., "text": ...}] in draft order
        reviews: [{"reviewer": ..., "target": ..., "text": ...}]
    """
    length = LENGTH_GUIDANCE[depth]["final"]
    draft_section = "\n\n---\n\n".join(
        f"{draft['label']}:\n{draft['text']}" for draft in drafts
    )
    if reviews:
        review_section = "\n\n---\n\n".join(
            f"{review['reviewer']} reviewing {review['target']}:\n{review['text']}"
            for review in reviews
        )
    else:
        review_section = "(no reviews available)"

    return (
        "You are the final arbiter. Several analysts independently analysed the "
        "same topic and then reviewed each other. Produce a single consensus report.\n\n"
        f"Topic: {topic}\n\n"
        f"Sources:\n{_format_sources(sources)}\n\n"
        f"Analyses:\n\n{draft_section}\n\n"
        f"Peer reviews:\n\n{review_section}\n\n"
        "Structure the report as:\n"
        "1. Executive summary\n"
        "2. Key findings with source citations\n"
        "3. Points of agreement between analysts\n"
        "4. Points of disagreement and your resolution, using the reviews\n"
        "5. Conclusion\n"
        f"Length: {length}.\n\n"
        "Consensus report:"
    )
