"""
Alignment engine.

Scores how well a delegate's voting record matches each preference category
a voter can select, and flags when that match drops noticeably between two
snapshots. Category scores are computed for every delegate during sync; the
overall score for a particular voter is derived from them at read time.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from govscore.data_models.governance import (
    AlignmentBreakdown,
    AlignmentShift,
    CategoryShift,
    Delegate,
    PreferenceCategory,
    Proposal,
    ProposalType,
    SizeTier,
    TreasuryTier,
    Vote,
    VoteDecision,
)
from govscore.scoring.metrics import has_rationale

NEUTRAL_SCORE = 50
OVERALL_SHIFT_THRESHOLD = 8
CATEGORY_SHIFT_THRESHOLD = 5

CONSERVATIVE_NO_POINTS = {TreasuryTier.MAJOR: 100, TreasuryTier.SIGNIFICANT: 90, TreasuryTier.ROUTINE: 50}
CONSERVATIVE_YES_POINTS = {TreasuryTier.MAJOR: 10, TreasuryTier.SIGNIFICANT: 30, TreasuryTier.ROUTINE: 50}
GROWTH_YES_WITH_RATIONALE_POINTS = {TreasuryTier.MAJOR: 90, TreasuryTier.SIGNIFICANT: 85, TreasuryTier.ROUTINE: 70}
GROWTH_YES_WITHOUT_RATIONALE = 60
GROWTH_NO_WITH_RATIONALE = 40
GROWTH_NO_WITHOUT_RATIONALE = 20

SIZE_TIER_DECENTRALIZATION = {
    SizeTier.SMALL: 95,
    SizeTier.MEDIUM: 72,
    SizeTier.LARGE: 40,
    SizeTier.WHALE: 12,
}

VotePair = Tuple[Vote, Optional[Proposal]]


def match_votes_to_proposals(votes: Iterable[Vote], proposals: Iterable[Proposal]) -> List[VotePair]:
    by_key = {proposal.key: proposal for proposal in proposals}
    return [(vote, by_key.get(vote.proposal_key)) for vote in votes]


def _treasury_votes(pairs: Sequence[VotePair]) -> List[VotePair]:
    return [
        (vote, proposal) for vote, proposal in pairs
        if proposal is not None and proposal.proposal_type is ProposalType.TREASURY_WITHDRAWALS
    ]


def _tagged(pairs: Sequence[VotePair], category: PreferenceCategory) -> List[VotePair]:
    return [(v, p) for v, p in pairs if p is not None and category in p.relevant_prefs]


def calculate_treasury_conservative_score(pairs: Sequence[VotePair]) -> int:
    treasury_votes = _treasury_votes(pairs)
    if not treasury_votes:
        return NEUTRAL_SCORE

    total = 0
    for vote, proposal in treasury_votes:
        tier = proposal.treasury_tier or TreasuryTier.ROUTINE
        if vote.decision is VoteDecision.NO:
            total += CONSERVATIVE_NO_POINTS[tier]
        elif vote.decision is VoteDecision.YES:
            total += CONSERVATIVE_YES_POINTS[tier]
        else:
            total += NEUTRAL_SCORE
    return round(total / len(treasury_votes))


def calculate_treasury_growth_score(pairs: Sequence[VotePair]) -> int:
    treasury_votes = _treasury_votes(pairs)
    if not treasury_votes:
        return NEUTRAL_SCORE

    total = 0
    for vote, proposal in treasury_votes:
        tier = proposal.treasury_tier or TreasuryTier.ROUTINE
        explained = has_rationale(vote)
        if vote.decision is VoteDecision.YES:
            total += GROWTH_YES_WITH_RATIONALE_POINTS[tier] if explained else GROWTH_YES_WITHOUT_RATIONALE
        elif vote.decision is VoteDecision.NO:
            total += GROWTH_NO_WITH_RATIONALE if explained else GROWTH_NO_WITHOUT_RATIONALE
        else:
            total += NEUTRAL_SCORE
    return round(total / len(treasury_votes))


def calculate_decentralization_score(delegate: Delegate) -> int:
    return SIZE_TIER_DECENTRALIZATION.get(delegate.size_tier, NEUTRAL_SCORE)


def calculate_security_score(delegate: Delegate, pairs: Sequence[VotePair]) -> int:
    security_votes = _tagged(pairs, PreferenceCategory.SECURITY)
    if not security_votes:
        return round(delegate.participation_rate * 0.6 + delegate.rationale_rate * 0.4)

    cautious = sum(1 for v, _ in security_votes if v.decision in (VoteDecision.NO, VoteDecision.ABSTAIN))
    explained = sum(1 for v, _ in security_votes if has_rationale(v))
    caution_rate = cautious / len(security_votes) * 100
    rationale_rate = explained / len(security_votes) * 100
    return round(caution_rate * 0.6 + rationale_rate * 0.4)


def calculate_innovation_score(delegate: Delegate, pairs: Sequence[VotePair]) -> int:
    innovation_votes = [
        (v, p) for v, p in pairs
        if p is not None and (
            PreferenceCategory.INNOVATION in p.relevant_prefs
            or p.proposal_type is ProposalType.INFO_ACTION
        )
    ]
    if not innovation_votes:
        return round(delegate.participation_rate * 0.5 + 25)

    yes_rate = sum(1 for v, _ in innovation_votes if v.decision is VoteDecision.YES) / len(innovation_votes) * 100
    return round(yes_rate * 0.5 + delegate.participation_rate * 0.5)


def calculate_transparency_score(delegate: Delegate) -> int:
    return delegate.rationale_rate


def compute_all_category_scores(
    delegate: Delegate,
    votes: Sequence[Vote],
    proposals: Iterable[Proposal],
) -> AlignmentBreakdown:
    """All six category scores for one delegate, independent of any voter's preferences."""
    pairs = match_votes_to_proposals(votes, proposals)
    return AlignmentBreakdown(
        treasury_conservative=calculate_treasury_conservative_score(pairs),
        treasury_growth=calculate_treasury_growth_score(pairs),
        decentralization=calculate_decentralization_score(delegate),
        security=calculate_security_score(delegate, pairs),
        innovation=calculate_innovation_score(delegate, pairs),
        transparency=calculate_transparency_score(delegate),
        last_vote_time=max((v.block_time for v in votes), default=None),
    )


def parse_preferences(raw: Iterable[str]) -> List[PreferenceCategory]:
    """
    Parse preference names, dropping duplicates.

    Raises:
        ValueError: for a name that is not a preference category
    """
    prefs: List[PreferenceCategory] = []
    for name in raw:
        pref = PreferenceCategory(name.strip())
        if pref not in prefs:
            prefs.append(pref)
    return prefs


def _selected_scores(breakdown: AlignmentBreakdown, prefs: Sequence[PreferenceCategory]) -> List[float]:
    scores: List[float] = []
    treasury = [
        breakdown.score_for(p) for p in
        (PreferenceCategory.TREASURY_CONSERVATIVE, PreferenceCategory.TREASURY_GROWTH)
        if p in prefs
    ]
    if treasury:
        scores.append(sum(treasury) / len(treasury))
    for pref in (
        PreferenceCategory.DECENTRALIZATION,
        PreferenceCategory.SECURITY,
        PreferenceCategory.INNOVATION,
        PreferenceCategory.TRANSPARENCY,
    ):
        if pref in prefs:
            scores.append(breakdown.score_for(pref))
    return scores


def compute_overall_alignment(
    breakdown: Optional[AlignmentBreakdown],
    prefs: Sequence[PreferenceCategory],
) -> int:
    """Mean of the selected categories; both treasury variants count as one category."""
    if breakdown is None or not prefs:
        return NEUTRAL_SCORE
    scores = _selected_scores(breakdown, prefs)
    if not scores:
        return NEUTRAL_SCORE
    return round(sum(scores) / len(scores))


def detect_alignment_shifts(
    previous: Optional[AlignmentBreakdown],
    current: AlignmentBreakdown,
    prefs: Sequence[PreferenceCategory],
    delegate_id: str,
    name: Optional[str] = None,
) -> Optional[AlignmentShift]:
    """Return a shift record when overall alignment fell by more than the threshold."""
    if previous is None:
        return None

    previous_overall = compute_overall_alignment(previous, prefs)
    current_overall = compute_overall_alignment(current, prefs)
    delta = current_overall - previous_overall
    if delta >= -OVERALL_SHIFT_THRESHOLD:
        return None

    category_shifts = []
    for pref in PreferenceCategory:
        if pref not in prefs:
            continue
        before, after = previous.score_for(pref), current.score_for(pref)
        if after < before - CATEGORY_SHIFT_THRESHOLD:
            category_shifts.append(
                CategoryShift(category=pref, previous=before, current=after, delta=after - before)
            )

    return AlignmentShift(
        delegate_id=delegate_id,
        name=name,
        previous_overall=previous_overall,
        current_overall=current_overall,
        delta=delta,
        category_shifts=category_shifts,
    )


# ============================================================================
# Per-vote evaluation
# ============================================================================

class VoteAlignmentStatus(str, Enum):
    ALIGNED = "aligned"
    UNALIGNED = "unaligned"
    NEUTRAL = "neutral"


@dataclass
class VoteAlignment:
    status: VoteAlignmentStatus
    reasons: List[str] = field(default_factory=list)


def evaluate_vote_alignment(
    vote: Vote,
    proposal: Optional[Proposal],
    prefs: Sequence[PreferenceCategory],
) -> VoteAlignment:
    """Whether a single vote supports or works against the voter's preferences."""
    if not prefs or proposal is None:
        return VoteAlignment(VoteAlignmentStatus.NEUTRAL)
    matching = [p for p in prefs if p in proposal.relevant_prefs]
    if not matching:
        return VoteAlignment(VoteAlignmentStatus.NEUTRAL)

    is_treasury = proposal.proposal_type is ProposalType.TREASURY_WITHDRAWALS
    explained = has_rationale(vote)
    decision = vote.decision
    reasons: List[str] = []
    aligned = unaligned = 0

    for pref in matching:
        if pref is PreferenceCategory.TREASURY_CONSERVATIVE and is_treasury:
            if decision is VoteDecision.NO:
                aligned += 1
                reasons.append("Voted No on treasury spend")
            elif decision is VoteDecision.YES:
                unaligned += 1
                reasons.append("Voted Yes on treasury spend")
        elif pref is PreferenceCategory.TREASURY_GROWTH and is_treasury:
            if decision is VoteDecision.YES and explained:
                aligned += 1
                reasons.append("Supported treasury spend with rationale")
            elif decision is VoteDecision.YES:
                unaligned += 1
                reasons.append("Supported treasury spend without rationale")
            elif decision is VoteDecision.NO and not explained:
                unaligned += 1
                reasons.append("Rejected treasury spend without rationale")
        elif pref is PreferenceCategory.SECURITY:
            if decision in (VoteDecision.NO, VoteDecision.ABSTAIN):
                aligned += 1
                reasons.append("Cautious vote on security-relevant proposal")
            else:
                unaligned += 1
                reasons.append("Approved security-relevant proposal")
        elif pref is PreferenceCategory.INNOVATION:
            if decision is VoteDecision.YES:
                aligned += 1
                reasons.append("Supported innovation/growth proposal")
            elif decision is VoteDecision.NO:
                unaligned += 1
                reasons.append("Voted against innovation/growth proposal")
        elif pref is PreferenceCategory.TRANSPARENCY:
            if explained:
                aligned += 1
                reasons.append("Provided on-chain rationale")
            else:
                unaligned += 1
                reasons.append("No on-chain rationale provided")
        # decentralization is a delegate-level property, not a per-vote one

    if aligned == 0 and unaligned == 0:
        return VoteAlignment(VoteAlignmentStatus.NEUTRAL, reasons)
    status = VoteAlignmentStatus.ALIGNED if aligned >= unaligned else VoteAlignmentStatus.UNALIGNED
    return VoteAlignment(status, reasons)
