"""
Delegate enrichment engine.

Joins each delegate's registry info, declared metadata and vote history into
a scored `Delegate`. The participation baseline is the largest vote count in
the batch, so enrichment is a two-pass fold over the whole batch: the first
pass finds the baseline, the second applies it.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from govscore.data_models.governance import Delegate, Vote, VoteDecision
from govscore.data_models.upstream_schemas import DelegateInfo, DelegateMetadata, UpstreamVote
from govscore.scoring.composite import DEFAULT_WEIGHTS, ScoreWeights, calculate_composite_score
from govscore.scoring.metrics import (
    base_to_whole_units,
    block_time_to_epoch,
    calculate_deliberation_modifier,
    calculate_effective_participation,
    calculate_participation_rate,
    calculate_profile_completeness,
    calculate_rationale_rate,
    count_decisions,
    get_size_tier,
    reliability_from_votes,
    unwrap_value,
)

INLINE_RATIONALE_KEYS = ("comment", "rationale")


@dataclass
class DelegateInput:
    """Everything the upstream API knows about one delegate for this run."""
    delegate_id: str
    info: Optional[DelegateInfo] = None
    metadata: Optional[DelegateMetadata] = None
    votes: List[Vote] = field(default_factory=list)
    # Declared links the last reachability check found broken
    broken_links: FrozenSet[str] = frozenset()


def extract_inline_rationale(meta_json: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not meta_json:
        return None
    body = meta_json.get("body")
    for source in (body if isinstance(body, Mapping) else {}, meta_json):
        for key in INLINE_RATIONALE_KEYS:
            value = unwrap_value(source.get(key))
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def to_domain_vote(raw: UpstreamVote, delegate_id: Optional[str] = None) -> Vote:
    return Vote(
        vote_tx_hash=raw.vote_tx_hash,
        delegate_id=delegate_id or raw.voter_id,
        proposal_tx_hash=raw.proposal_tx_hash,
        proposal_index=raw.proposal_index,
        decision=VoteDecision(raw.vote),
        epoch_no=raw.epoch_no if raw.epoch_no is not None else block_time_to_epoch(raw.block_time),
        block_time=raw.block_time,
        meta_url=raw.meta_url,
        meta_hash=raw.meta_hash,
        inline_rationale=extract_inline_rationale(raw.meta_json),
    )


def dedupe_votes(votes: Iterable[Vote]) -> List[Vote]:
    """Keep the first occurrence of each vote transaction hash."""
    seen: Dict[str, Vote] = {}
    for vote in votes:
        seen.setdefault(vote.vote_tx_hash, vote)
    return list(seen.values())


def _declared_field(metadata: Optional[DelegateMetadata], *keys: str) -> Optional[str]:
    if metadata is None or not metadata.meta_json:
        return None
    body = metadata.meta_json.get("body")
    for source in (body if isinstance(body, Mapping) else {}, metadata.meta_json):
        for key in keys:
            value = unwrap_value(source.get(key))
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def participation_baseline(inputs: Sequence[DelegateInput]) -> int:
    return max((len(item.votes) for item in inputs), default=0)


def enrich_delegate(
    item: DelegateInput,
    baseline: int,
    current_epoch: int,
    proposal_epochs: Optional[Mapping[int, int]] = None,
    resolved_texts: Optional[Mapping[str, str]] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
    now: Optional[datetime] = None,
) -> Delegate:
    votes = item.votes
    decisions = count_decisions(votes)
    yes, no, abstain = (decisions[VoteDecision.YES], decisions[VoteDecision.NO], decisions[VoteDecision.ABSTAIN])

    participation = calculate_participation_rate(len(votes), baseline)
    rationale_rate = calculate_rationale_rate(votes, resolved_texts)
    modifier = calculate_deliberation_modifier(yes, no, abstain)
    effective = calculate_effective_participation(participation, modifier)
    reliability = reliability_from_votes(votes, current_epoch, proposal_epochs)

    voting_power = item.info.amount if item.info else 0
    declared = item.metadata.meta_json if item.metadata and item.metadata.meta_json else {}

    return Delegate(
        delegate_id=item.delegate_id,
        name=_declared_field(item.metadata, "givenName", "name"),
        ticker=_declared_field(item.metadata, "ticker"),
        handle=_declared_field(item.metadata, "handle"),
        registered=item.info.registered if item.info else True,
        metadata=declared,
        voting_power=voting_power,
        size_tier=get_size_tier(base_to_whole_units(voting_power)),
        total_votes=len(votes),
        yes_votes=yes,
        no_votes=no,
        abstain_votes=abstain,
        participation_rate=participation,
        rationale_rate=rationale_rate,
        deliberation_modifier=modifier,
        effective_participation=effective,
        reliability=reliability,
        profile_completeness=calculate_profile_completeness(declared, item.broken_links),
        score=calculate_composite_score(effective, rationale_rate, reliability.score, weights),
        first_vote_epoch=min((v.epoch_no for v in votes), default=None),
        last_vote_time=max((v.block_time for v in votes), default=None),
        updated_at=now or datetime.now(timezone.utc),
    )


def enrich_delegates(
    inputs: Sequence[DelegateInput],
    current_epoch: int,
    proposal_epochs: Optional[Mapping[int, int]] = None,
    resolved_texts: Optional[Mapping[str, str]] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
    now: Optional[datetime] = None,
) -> List[Delegate]:
    """Enrich and score a whole batch against one shared participation baseline."""
    baseline = participation_baseline(inputs)
    now = now or datetime.now(timezone.utc)
    return [
        enrich_delegate(item, baseline, current_epoch, proposal_epochs, resolved_texts, weights, now)
        for item in inputs
    ]
