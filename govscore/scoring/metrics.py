"""
Per-delegate accountability metrics.

Every function here is pure: inputs in, numbers out. The enrichment engine
composes them; the sync orchestrator and the read API never compute
metrics on their own.
"""
import math
import re
import time
from collections import Counter
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from govscore.config.settings import (
    BASE_UNITS_PER_WHOLE,
    EPOCH_ANCHOR_NUMBER,
    EPOCH_ANCHOR_TIME,
    EPOCH_LENGTH_SECONDS,
    MIN_RATIONALE_LENGTH,
)
from govscore.data_models.governance import (
    Proposal,
    ReliabilityBreakdown,
    SizeTier,
    Vote,
    VoteDecision,
)

# --------------------------------------------------
# Units & epochs
# --------------------------------------------------

def base_to_whole_units(amount: Optional[int]) -> float:
    return (amount or 0) / BASE_UNITS_PER_WHOLE


def block_time_to_epoch(block_time: int) -> int:
    return (int(block_time) - EPOCH_ANCHOR_TIME) // EPOCH_LENGTH_SECONDS + EPOCH_ANCHOR_NUMBER


def current_epoch(now: Optional[float] = None) -> int:
    return block_time_to_epoch(int(now if now is not None else time.time()))


def epoch_vote_counts(votes: Sequence[Vote]) -> Dict[int, int]:
    return dict(Counter(vote.epoch_no for vote in votes))


def active_proposal_epochs(proposals: Iterable[Proposal], current: int) -> Dict[int, int]:
    """Number of proposals open for voting in each epoch.

    A proposal is open from its proposed epoch until it is ratified, dropped
    or expires, or until the current epoch when still open.
    """
    counts: Dict[int, int] = {}
    for proposal in proposals:
        closing = proposal.closing_epoch
        end = min(closing, current) if closing is not None else current
        for epoch in range(proposal.proposed_epoch, end + 1):
            counts[epoch] = counts.get(epoch, 0) + 1
    return counts


# --------------------------------------------------
# Participation & rationale
# --------------------------------------------------

def calculate_participation_rate(vote_count: int, total_proposals: int) -> int:
    if total_proposals <= 0:
        return 0
    return min(100, round(vote_count / total_proposals * 100))


def has_rationale(vote: Vote, resolved_text: Optional[str] = None) -> bool:
    """Whether a vote carries a rationale.

    Resolved text is authoritative and must meet the minimum length. A URL
    that has not been resolved yet gets the benefit of the doubt.
    """
    if resolved_text is not None:
        return len(resolved_text.strip()) >= MIN_RATIONALE_LENGTH
    if vote.inline_rationale and vote.inline_rationale.strip():
        return True
    return bool(vote.meta_url)


def calculate_rationale_rate(
    votes: Sequence[Vote],
    resolved_texts: Optional[Mapping[str, str]] = None,
) -> int:
    if not votes:
        return 0
    resolved_texts = resolved_texts or {}
    with_rationale = sum(
        1 for vote in votes if has_rationale(vote, resolved_texts.get(vote.vote_tx_hash))
    )
    return round(with_rationale / len(votes) * 100)


def count_decisions(votes: Sequence[Vote]) -> Dict[VoteDecision, int]:
    counts = Counter(vote.decision for vote in votes)
    return {decision: counts.get(decision, 0) for decision in VoteDecision}


def calculate_deliberation_modifier(yes: int, no: int, abstain: int) -> float:
    """Discount for rubber-stamping: one decision dominating a long vote record."""
    total = yes + no + abstain
    if total <= 10:
        return 1.0
    dominant_ratio = max(yes, no, abstain) / total
    if dominant_ratio > 0.95:
        return 0.70
    if dominant_ratio > 0.90:
        return 0.85
    if dominant_ratio > 0.85:
        return 0.95
    return 1.0


def calculate_effective_participation(participation_rate: int, modifier: float) -> int:
    return round(participation_rate * modifier)


# --------------------------------------------------
# Reliability
# --------------------------------------------------

STREAK_WEIGHT = 0.35
RECENCY_WEIGHT = 0.30
GAP_WEIGHT = 0.20
TENURE_WEIGHT = 0.15


def calculate_reliability(
    epoch_vote_counts: Sequence[int],
    first_epoch: Optional[int],
    current_epoch: int,
    proposal_epochs: Optional[Mapping[int, int]] = None,
) -> ReliabilityBreakdown:
    """
    Score how steadily a delegate has kept voting.

    Args:
        epoch_vote_counts: votes per epoch, index 0 being `first_epoch`
        first_epoch: epoch of the delegate's first recorded vote
        current_epoch: epoch to measure streak, recency and tenure against
        proposal_epochs: proposals open per epoch; epochs with none are skipped
            when counting streaks and gaps

    Returns:
        ReliabilityBreakdown with the 0-100 score and its raw components
    """
    if not epoch_vote_counts or first_epoch is None or sum(epoch_vote_counts) == 0:
        return ReliabilityBreakdown()

    votes_by_epoch = {
        first_epoch + offset: count for offset, count in enumerate(epoch_vote_counts) if count > 0
    }
    last_vote_epoch = max(votes_by_epoch)
    end_epoch = max(current_epoch, last_vote_epoch)

    def is_active(epoch: int) -> bool:
        return proposal_epochs is None or proposal_epochs.get(epoch, 0) > 0

    streak = 0
    for epoch in range(end_epoch, first_epoch - 1, -1):
        if not is_active(epoch):
            continue
        if votes_by_epoch.get(epoch, 0) == 0:
            break
        streak += 1

    recency = sum(1 for epoch in range(last_vote_epoch + 1, end_epoch + 1) if is_active(epoch))

    longest_gap = 0
    run = 0
    for epoch in range(first_epoch, end_epoch + 1):
        if not is_active(epoch):
            continue
        if votes_by_epoch.get(epoch, 0) > 0:
            run = 0
        else:
            run += 1
            longest_gap = max(longest_gap, run)

    tenure = max(0, current_epoch - first_epoch)

    streak_score = min(100.0, streak * 10)
    recency_score = 100 * math.exp(-recency / 5)
    gap_score = max(0.0, 100 - longest_gap * 12)
    tenure_score = min(100.0, 20 + 80 * (1 - math.exp(-tenure / 30)))

    score = (
        streak_score * STREAK_WEIGHT
        + recency_score * RECENCY_WEIGHT
        + gap_score * GAP_WEIGHT
        + tenure_score * TENURE_WEIGHT
    )
    return ReliabilityBreakdown(
        score=max(0, min(100, round(score))),
        streak=streak,
        recency=recency,
        longest_gap=longest_gap,
        tenure=tenure,
    )


def reliability_from_votes(
    votes: Sequence[Vote],
    current: int,
    proposal_epochs: Optional[Mapping[int, int]] = None,
) -> ReliabilityBreakdown:
    """Reliability over a raw vote list, laying epochs out densely from the first vote."""
    if not votes:
        return ReliabilityBreakdown()
    counts = epoch_vote_counts(votes)
    first = min(counts)
    last = max(max(counts), current)
    dense = [counts.get(epoch, 0) for epoch in range(first, last + 1)]
    return calculate_reliability(dense, first, current, proposal_epochs)


# --------------------------------------------------
# Profile completeness
# --------------------------------------------------

PROFILE_FIELD_POINTS = (
    (("givenName", "name"), 15),
    (("objectives",), 20),
    (("motivations",), 15),
    (("qualifications",), 10),
    (("bio",), 10),
)
ONE_LINK_POINTS = 25
MULTI_LINK_POINTS = 30

KNOWN_SOCIAL_DOMAINS = {
    "twitter.com", "x.com", "github.com", "linkedin.com", "youtube.com",
}
_PLACEHOLDER_URI = re.compile(r"^(https?://)?(example\.com|localhost)|\s", re.IGNORECASE)


def unwrap_value(value: Any) -> Any:
    """Unwrap JSON-LD `{"@value": ...}` wrappers used by structured metadata."""
    if isinstance(value, dict) and "@value" in value:
        return value["@value"]
    return value


def _metadata_body(metadata: Mapping[str, Any]) -> Mapping[str, Any]:
    body = metadata.get("body") if isinstance(metadata, Mapping) else None
    return body if isinstance(body, Mapping) else (metadata or {})


def _has_text(value: Any) -> bool:
    value = unwrap_value(value)
    return isinstance(value, str) and bool(value.strip())


def is_valid_social_link(uri: str) -> bool:
    if not uri or _PLACEHOLDER_URI.search(uri):
        return False
    parsed = urlparse(uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    host = parsed.netloc.lower().split(":")[0]
    if host.startswith("www."):
        host = host[4:]
    return host in KNOWN_SOCIAL_DOMAINS


def extract_social_links(metadata: Mapping[str, Any]) -> List[str]:
    """Distinct, validated social links declared in a delegate's references."""
    references = _metadata_body(metadata).get("references") or []
    links: List[str] = []
    for reference in references if isinstance(references, list) else []:
        if not isinstance(reference, Mapping):
            continue
        uri = unwrap_value(reference.get("uri"))
        if not isinstance(uri, str):
            continue
        uri = uri.strip().rstrip("/")
        if is_valid_social_link(uri) and uri.lower() not in {link.lower() for link in links}:
            links.append(uri)
    return links


def calculate_profile_completeness(
    metadata: Optional[Mapping[str, Any]],
    broken_links: Optional[Collection[str]] = None,
) -> int:
    """Additive profile points; links a reachability check found broken earn nothing."""
    if not metadata:
        return 0
    body = _metadata_body(metadata)
    score = 0
    for keys, points in PROFILE_FIELD_POINTS:
        if any(_has_text(body.get(key)) for key in keys):
            score += points

    broken = {link.lower() for link in broken_links or ()}
    link_count = sum(1 for link in extract_social_links(metadata) if link.lower() not in broken)
    if link_count >= 2:
        score += MULTI_LINK_POINTS
    elif link_count == 1:
        score += ONE_LINK_POINTS
    return min(100, score)


# --------------------------------------------------
# Size tier
# --------------------------------------------------

def get_size_tier(voting_power_whole: float) -> SizeTier:
    if voting_power_whole < 100_000:
        return SizeTier.SMALL
    if voting_power_whole < 5_000_000:
        return SizeTier.MEDIUM
    if voting_power_whole < 50_000_000:
        return SizeTier.LARGE
    return SizeTier.WHALE
