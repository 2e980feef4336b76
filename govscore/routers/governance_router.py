"""
Read endpoints over the persisted governance snapshot.

Nothing here talks to the upstream API directly: delegates come from the
freshness-aware cache, everything else straight from the store.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from govscore.data_models.governance import AlignmentBreakdown, PreferenceCategory
from govscore.exceptions import GovScoreError
from govscore.routers.deps import get_delegate_cache, get_governance_store
from govscore.scoring.alignment import (
    compute_overall_alignment,
    detect_alignment_shifts,
    evaluate_vote_alignment,
    parse_preferences,
)
from govscore.scoring.classifier import proposal_status
from govscore.scoring.composite import calculate_hybrid_score
from govscore.services.delegate_cache import DelegateCache
from govscore.services.diagnostics import get_diagnostics
from govscore.services.store import GovernanceStore
from govscore.utils.logger import logger

router = APIRouter()


def _parse_prefs(prefs: Optional[str]) -> List[PreferenceCategory]:
    if not prefs:
        return []
    try:
        return parse_preferences(p for p in prefs.split(",") if p.strip())
    except ValueError as e:
        valid = ", ".join(c.value for c in PreferenceCategory)
        raise HTTPException(status_code=400, detail=f"{e}. Valid preferences: {valid}")


def _storage_failure(e: GovScoreError) -> HTTPException:
    logger.error("Governance read failed: %s", e.message)
    return HTTPException(status_code=e.code, detail=e.to_dict())


@router.get("/delegates")
async def list_delegates(
    prefs: Optional[str] = Query(None, description="Comma-separated preference categories"),
    cache: DelegateCache = Depends(get_delegate_cache),
) -> Dict[str, Any]:
    """
    Delegates ordered by accountability score.

    With `prefs`, each row also carries the overall alignment for those
    preferences and the hybrid score, and rows are ordered by hybrid score.
    """
    selected = _parse_prefs(prefs)
    try:
        delegates = await cache.get_all()
    except GovScoreError as e:
        raise _storage_failure(e)

    rows = []
    for delegate in delegates:
        row = delegate.model_dump(mode="json")
        if selected:
            overall = compute_overall_alignment(delegate.alignment, selected)
            row["alignment_overall"] = overall
            row["hybrid_score"] = calculate_hybrid_score(delegate.score, overall)
        rows.append(row)
    if selected:
        rows.sort(key=lambda r: r["hybrid_score"], reverse=True)

    return {
        "delegates": rows,
        "count": len(rows),
        "prefs": [p.value for p in selected],
        "stale": cache.is_stale(),
    }


@router.get("/delegates/{delegate_id}")
def get_delegate_detail(
    delegate_id: str,
    prefs: Optional[str] = Query(None, description="Comma-separated preference categories"),
    store: GovernanceStore = Depends(get_governance_store),
) -> Dict[str, Any]:
    """
    One delegate with its votes and score history.

    With `prefs`, votes are alignment-annotated and the delegate carries
    `alignment_shift` when its alignment fell since the previous sync.
    """
    selected = _parse_prefs(prefs)
    try:
        delegate = store.get_delegate(delegate_id)
        if delegate is None:
            raise HTTPException(status_code=404, detail=f"Delegate {delegate_id} not found")
        votes = store.get_votes(delegate_id)
        proposals = {p.key: p for p in store.get_proposals()}
        rationales = store.get_rationales([v.vote_tx_hash for v in votes])
        history = store.get_score_history(delegate_id)
    except GovScoreError as e:
        raise _storage_failure(e)

    vote_rows = []
    for vote in votes:
        proposal = proposals.get(vote.proposal_key)
        rationale = rationales.get(vote.vote_tx_hash)
        row = vote.model_dump(mode="json")
        row["proposal_title"] = proposal.title if proposal else None
        row["rationale_text"] = rationale.rationale_text if rationale else vote.inline_rationale
        row["rationale_summary"] = rationale.ai_summary if rationale else None
        if selected:
            alignment = evaluate_vote_alignment(vote, proposal, selected)
            row["alignment"] = {"status": alignment.status.value, "reasons": alignment.reasons}
        vote_rows.append(row)

    detail = delegate.model_dump(mode="json")
    if selected:
        overall = compute_overall_alignment(delegate.alignment, selected)
        detail["alignment_overall"] = overall
        detail["hybrid_score"] = calculate_hybrid_score(delegate.score, overall)
        shift = detect_alignment_shifts(
            delegate.previous_alignment, delegate.alignment or AlignmentBreakdown(), selected,
            delegate.delegate_id, delegate.name,
        )
        detail["alignment_shift"] = shift.model_dump(mode="json") if shift else None

    return {
        "delegate": detail,
        "votes": vote_rows,
        "score_history": [entry.model_dump(mode="json") for entry in history],
    }


@router.get("/proposals")
def list_proposals(store: GovernanceStore = Depends(get_governance_store)) -> Dict[str, Any]:
    try:
        proposals = store.get_proposals()
        tallies = store.get_vote_tallies()
    except GovScoreError as e:
        raise _storage_failure(e)

    rows = []
    for proposal in proposals:
        row = proposal.model_dump(mode="json")
        row["status"] = proposal_status(proposal).value
        row["votes"] = tallies.get(proposal.key, {"Yes": 0, "No": 0, "Abstain": 0})
        rows.append(row)
    return {"proposals": rows, "count": len(rows)}


@router.get("/diagnostics")
def diagnostics(
    store: GovernanceStore = Depends(get_governance_store),
    cache: DelegateCache = Depends(get_delegate_cache),
) -> Dict[str, Any]:
    """Vote-power and rationale coverage, summary coverage and recent sync runs."""
    try:
        report = get_diagnostics(store)
    except GovScoreError as e:
        raise _storage_failure(e)
    report["cache"] = cache.get_cache_stats()
    return report
