"""Coverage figures for the resolution passes plus recent sync history."""
from typing import Any, Dict

from govscore.services.store import GovernanceStore

RECENT_SYNC_RUNS = 10


def _percent(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 1) if whole else 0.0


def get_diagnostics(store: GovernanceStore) -> Dict[str, Any]:
    counts = store.get_coverage_counts()
    votes_total = counts["votes_total"]
    exact = counts["votes_power_exact"]
    nearest = counts["votes_power_nearest"]
    hash_checked = counts["rationales_hash_checked"]

    return {
        "vote_power": {
            "total": votes_total,
            "exact": exact,
            "nearest": nearest,
            "unresolved": votes_total - exact - nearest,
            "coverage_pct": _percent(exact + nearest, votes_total),
            "exact_pct": _percent(exact, votes_total),
        },
        "rationale_hash": {
            "checked": hash_checked,
            "verified": counts["rationales_hash_verified"],
            "pass_rate_pct": _percent(counts["rationales_hash_verified"], hash_checked),
        },
        "summaries": {
            "proposals_pct": _percent(counts["proposals_summarized"], counts["proposals_total"]),
            "rationales_pct": _percent(counts["rationales_summarized"], counts["rationales_with_text"]),
        },
        "sync_runs": [
            run.model_dump(mode="json") for run in store.get_sync_runs(limit=RECENT_SYNC_RUNS)
        ],
    }
