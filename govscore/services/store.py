"""
Persisted governance snapshot.

`GovernanceStore` is the storage contract the sync orchestrator writes to
and the read path reads from. All writes are idempotent upserts keyed by
natural identity, chunked into fixed-size batches whose outcomes are
tallied in a BatchResult instead of raised.

`InMemoryGovernanceStore` keeps everything in dicts. It backs the test
suite and serves as the store when no database is configured.
"""
import threading
from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from govscore.data_models.governance import (
    AlignmentBreakdown,
    Delegate,
    PowerSnapshot,
    PowerSource,
    Proposal,
    ScoreHistoryEntry,
    SocialLinkCheck,
    SyncRun,
    Vote,
    VoteRationale,
)
from govscore.utils.batching import BatchResult, chunked
from govscore.utils.logger import logger

DEFAULT_WRITE_BATCH_SIZE = 100

ProposalKey = Tuple[str, int]


class VotePowerUpdate(NamedTuple):
    vote_tx_hash: str
    voting_power: int
    source: PowerSource


class GovernanceStore(ABC):
    """Storage contract for the scored governance snapshot."""

    def __init__(self, batch_size: int = DEFAULT_WRITE_BATCH_SIZE):
        self.batch_size = batch_size

    def _write_batches(self, label: str, rows: Sequence[Any], write_chunk: Callable[[List[Any]], None]) -> BatchResult:
        """Write rows chunk by chunk; a failed chunk is counted and the rest continue."""
        result = BatchResult()
        for chunk in chunked(list(rows), self.batch_size):
            try:
                write_chunk(chunk)
                result.record_success(len(chunk))
            except Exception as e:
                logger.error("[Store] %s batch of %d failed: %s", label, len(chunk), e)
                result.record_failure(f"{label}: {e}", len(chunk))
        if rows:
            logger.info("[Store] %s: %d written, %d failed", label, result.succeeded, result.failed)
        return result

    # Delegates
    @abstractmethod
    def upsert_delegates(self, delegates: Sequence[Delegate]) -> BatchResult: ...

    @abstractmethod
    def get_delegates(self) -> List[Delegate]:
        """All delegates, highest score first."""

    @abstractmethod
    def get_delegate(self, delegate_id: str) -> Optional[Delegate]: ...

    @abstractmethod
    def update_alignment(self, scores: Dict[str, AlignmentBreakdown]) -> BatchResult:
        """Replace alignment scores; the replaced breakdown is kept as `previous_alignment`."""

    @abstractmethod
    def update_metadata_verification(self, results: Dict[str, bool]) -> BatchResult: ...

    @abstractmethod
    def update_delegator_counts(self, counts: Dict[str, int]) -> BatchResult: ...

    # Votes
    @abstractmethod
    def upsert_votes(self, votes: Sequence[Vote]) -> BatchResult:
        """Insert or refresh votes; a resolved voting power is never overwritten."""

    @abstractmethod
    def get_votes(self, delegate_id: Optional[str] = None) -> List[Vote]: ...

    @abstractmethod
    def get_votes_needing_power(self) -> Dict[str, List[Vote]]:
        """Votes without an exact voting power, grouped by delegate."""

    @abstractmethod
    def apply_vote_power(self, updates: Sequence[VotePowerUpdate]) -> BatchResult:
        """Attach voting power to votes; votes already resolved exactly are left alone."""

    # Proposals
    @abstractmethod
    def upsert_proposals(self, proposals: Sequence[Proposal]) -> BatchResult: ...

    @abstractmethod
    def get_proposals(self) -> List[Proposal]: ...

    @abstractmethod
    def update_vote_tallies(self, tallies: Dict[ProposalKey, Dict[str, int]]) -> BatchResult: ...

    @abstractmethod
    def get_vote_tallies(self) -> Dict[ProposalKey, Dict[str, int]]: ...

    @abstractmethod
    def update_proposal_summary(self, key: ProposalKey, summary: str) -> None: ...

    # Power snapshots
    @abstractmethod
    def upsert_power_snapshots(self, snapshots: Sequence[PowerSnapshot]) -> BatchResult:
        """Append snapshots, ignoring ones already stored for the same delegate and epoch."""

    @abstractmethod
    def get_power_snapshots(self, delegate_id: str) -> List[PowerSnapshot]: ...

    # Score history
    @abstractmethod
    def upsert_score_history(self, entries: Sequence[ScoreHistoryEntry]) -> BatchResult: ...

    @abstractmethod
    def get_score_history(self, delegate_id: str) -> List[ScoreHistoryEntry]: ...

    # Rationales
    @abstractmethod
    def get_rationales(self, vote_tx_hashes: Optional[Iterable[str]] = None) -> Dict[str, VoteRationale]: ...

    @abstractmethod
    def upsert_rationales(self, rationales: Sequence[VoteRationale]) -> BatchResult: ...

    @abstractmethod
    def update_rationale_summary(self, vote_tx_hash: str, summary: str) -> None: ...

    # Profile link checks
    @abstractmethod
    def upsert_link_checks(self, checks: Sequence[SocialLinkCheck]) -> BatchResult: ...

    @abstractmethod
    def get_link_checks(self, delegate_id: Optional[str] = None) -> List[SocialLinkCheck]: ...

    # Sync log
    @abstractmethod
    def start_sync_run(self, run: SyncRun) -> int: ...

    @abstractmethod
    def finish_sync_run(self, run: SyncRun) -> None: ...

    @abstractmethod
    def get_sync_runs(self, limit: int = 10) -> List[SyncRun]:
        """Most recent runs first."""

    # Diagnostics
    @abstractmethod
    def get_coverage_counts(self) -> Dict[str, int]:
        """Raw counts behind the diagnostic coverage percentages."""


class InMemoryGovernanceStore(GovernanceStore):
    """Dict-backed store; every read returns copies so callers cannot mutate state."""

    def __init__(self, batch_size: int = DEFAULT_WRITE_BATCH_SIZE):
        super().__init__(batch_size)
        self._lock = threading.Lock()
        self.delegates: Dict[str, Delegate] = {}
        self.votes: Dict[str, Vote] = {}
        self.proposals: Dict[ProposalKey, Proposal] = {}
        self.tallies: Dict[ProposalKey, Dict[str, int]] = {}
        self.power_snapshots: Dict[Tuple[str, int], PowerSnapshot] = {}
        self.score_history: Dict[Tuple[str, Any], ScoreHistoryEntry] = {}
        self.rationales: Dict[str, VoteRationale] = {}
        self.link_checks: Dict[Tuple[str, str], SocialLinkCheck] = {}
        self.sync_runs: Dict[int, SyncRun] = {}

    # Delegates
    def upsert_delegates(self, delegates: Sequence[Delegate]) -> BatchResult:
        def write(chunk: List[Delegate]) -> None:
            with self._lock:
                for delegate in chunk:
                    existing = self.delegates.get(delegate.delegate_id)
                    stored = delegate.model_copy(deep=True)
                    if existing is not None:
                        # Written by the secondary stage; keep until it runs again
                        stored.alignment = stored.alignment or existing.alignment
                        stored.previous_alignment = stored.previous_alignment or existing.previous_alignment
                        if stored.metadata_hash_verified is None:
                            stored.metadata_hash_verified = existing.metadata_hash_verified
                        if stored.delegator_count is None:
                            stored.delegator_count = existing.delegator_count
                    self.delegates[delegate.delegate_id] = stored
        return self._write_batches("delegates", delegates, write)

    def get_delegates(self) -> List[Delegate]:
        with self._lock:
            delegates = [d.model_copy(deep=True) for d in self.delegates.values()]
        return sorted(delegates, key=lambda d: d.score, reverse=True)

    def get_delegate(self, delegate_id: str) -> Optional[Delegate]:
        with self._lock:
            delegate = self.delegates.get(delegate_id)
            return delegate.model_copy(deep=True) if delegate else None

    def update_alignment(self, scores: Dict[str, AlignmentBreakdown]) -> BatchResult:
        def write(chunk: List[Tuple[str, AlignmentBreakdown]]) -> None:
            with self._lock:
                for delegate_id, breakdown in chunk:
                    delegate = self.delegates.get(delegate_id)
                    if delegate is not None:
                        delegate.previous_alignment = delegate.alignment
                        delegate.alignment = breakdown.model_copy()
        return self._write_batches("alignment", list(scores.items()), write)

    def update_metadata_verification(self, results: Dict[str, bool]) -> BatchResult:
        def write(chunk: List[Tuple[str, bool]]) -> None:
            with self._lock:
                for delegate_id, verified in chunk:
                    if delegate_id in self.delegates:
                        self.delegates[delegate_id].metadata_hash_verified = verified
        return self._write_batches("metadata verification", list(results.items()), write)

    def update_delegator_counts(self, counts: Dict[str, int]) -> BatchResult:
        def write(chunk: List[Tuple[str, int]]) -> None:
            with self._lock:
                for delegate_id, count in chunk:
                    if delegate_id in self.delegates:
                        self.delegates[delegate_id].delegator_count = count
        return self._write_batches("delegator counts", list(counts.items()), write)

    # Votes
    def upsert_votes(self, votes: Sequence[Vote]) -> BatchResult:
        def write(chunk: List[Vote]) -> None:
            with self._lock:
                for vote in chunk:
                    stored = vote.model_copy()
                    existing = self.votes.get(vote.vote_tx_hash)
                    if existing is not None and existing.power_source is not None:
                        stored.voting_power = existing.voting_power
                        stored.power_source = existing.power_source
                    self.votes[vote.vote_tx_hash] = stored
        return self._write_batches("votes", votes, write)

    def get_votes(self, delegate_id: Optional[str] = None) -> List[Vote]:
        with self._lock:
            votes = [
                v.model_copy() for v in self.votes.values()
                if delegate_id is None or v.delegate_id == delegate_id
            ]
        return sorted(votes, key=lambda v: v.block_time, reverse=True)

    def get_votes_needing_power(self) -> Dict[str, List[Vote]]:
        grouped: Dict[str, List[Vote]] = {}
        with self._lock:
            for vote in self.votes.values():
                if vote.power_source is not PowerSource.EXACT:
                    grouped.setdefault(vote.delegate_id, []).append(vote.model_copy())
        return grouped

    def apply_vote_power(self, updates: Sequence[VotePowerUpdate]) -> BatchResult:
        def write(chunk: List[VotePowerUpdate]) -> None:
            with self._lock:
                for update in chunk:
                    vote = self.votes.get(update.vote_tx_hash)
                    if vote is None or vote.power_source is PowerSource.EXACT:
                        continue
                    vote.voting_power = update.voting_power
                    vote.power_source = update.source
        return self._write_batches("vote power", updates, write)

    # Proposals
    def upsert_proposals(self, proposals: Sequence[Proposal]) -> BatchResult:
        def write(chunk: List[Proposal]) -> None:
            with self._lock:
                for proposal in chunk:
                    stored = proposal.model_copy(deep=True)
                    existing = self.proposals.get(proposal.key)
                    if existing is not None and stored.ai_summary is None:
                        stored.ai_summary = existing.ai_summary
                    self.proposals[proposal.key] = stored
        return self._write_batches("proposals", proposals, write)

    def get_proposals(self) -> List[Proposal]:
        with self._lock:
            proposals = [p.model_copy(deep=True) for p in self.proposals.values()]
        return sorted(proposals, key=lambda p: p.block_time, reverse=True)

    def update_vote_tallies(self, tallies: Dict[ProposalKey, Dict[str, int]]) -> BatchResult:
        def write(chunk: List[Tuple[ProposalKey, Dict[str, int]]]) -> None:
            with self._lock:
                for key, tally in chunk:
                    self.tallies[key] = dict(tally)
        return self._write_batches("vote tallies", list(tallies.items()), write)

    def get_vote_tallies(self) -> Dict[ProposalKey, Dict[str, int]]:
        with self._lock:
            return deepcopy(self.tallies)

    def update_proposal_summary(self, key: ProposalKey, summary: str) -> None:
        with self._lock:
            if key in self.proposals:
                self.proposals[key].ai_summary = summary

    # Power snapshots
    def upsert_power_snapshots(self, snapshots: Sequence[PowerSnapshot]) -> BatchResult:
        def write(chunk: List[PowerSnapshot]) -> None:
            with self._lock:
                for snapshot in chunk:
                    self.power_snapshots.setdefault((snapshot.delegate_id, snapshot.epoch_no), snapshot.model_copy())
        return self._write_batches("power snapshots", snapshots, write)

    def get_power_snapshots(self, delegate_id: str) -> List[PowerSnapshot]:
        with self._lock:
            snapshots = [s.model_copy() for (d, _), s in self.power_snapshots.items() if d == delegate_id]
        return sorted(snapshots, key=lambda s: s.epoch_no)

    # Score history
    def upsert_score_history(self, entries: Sequence[ScoreHistoryEntry]) -> BatchResult:
        def write(chunk: List[ScoreHistoryEntry]) -> None:
            with self._lock:
                for entry in chunk:
                    self.score_history[(entry.delegate_id, entry.snapshot_date)] = entry.model_copy()
        return self._write_batches("score history", entries, write)

    def get_score_history(self, delegate_id: str) -> List[ScoreHistoryEntry]:
        with self._lock:
            entries = [e.model_copy() for (d, _), e in self.score_history.items() if d == delegate_id]
        return sorted(entries, key=lambda e: e.snapshot_date)

    # Rationales
    def get_rationales(self, vote_tx_hashes: Optional[Iterable[str]] = None) -> Dict[str, VoteRationale]:
        with self._lock:
            if vote_tx_hashes is None:
                return {k: r.model_copy() for k, r in self.rationales.items()}
            return {k: self.rationales[k].model_copy() for k in vote_tx_hashes if k in self.rationales}

    def upsert_rationales(self, rationales: Sequence[VoteRationale]) -> BatchResult:
        def write(chunk: List[VoteRationale]) -> None:
            with self._lock:
                for rationale in chunk:
                    stored = rationale.model_copy()
                    existing = self.rationales.get(rationale.vote_tx_hash)
                    if existing is not None and stored.ai_summary is None:
                        stored.ai_summary = existing.ai_summary
                    self.rationales[rationale.vote_tx_hash] = stored
        return self._write_batches("rationales", rationales, write)

    def update_rationale_summary(self, vote_tx_hash: str, summary: str) -> None:
        with self._lock:
            if vote_tx_hash in self.rationales:
                self.rationales[vote_tx_hash].ai_summary = summary

    # Profile link checks
    def upsert_link_checks(self, checks: Sequence[SocialLinkCheck]) -> BatchResult:
        def write(chunk: List[SocialLinkCheck]) -> None:
            with self._lock:
                for check in chunk:
                    self.link_checks[(check.delegate_id, check.uri)] = check.model_copy()
        return self._write_batches("link checks", checks, write)

    def get_link_checks(self, delegate_id: Optional[str] = None) -> List[SocialLinkCheck]:
        with self._lock:
            return [
                c.model_copy() for (d, _), c in sorted(self.link_checks.items())
                if delegate_id is None or d == delegate_id
            ]

    # Sync log
    def start_sync_run(self, run: SyncRun) -> int:
        with self._lock:
            run_id = len(self.sync_runs) + 1
            self.sync_runs[run_id] = run.model_copy(update={"id": run_id}, deep=True)
            return run_id

    def finish_sync_run(self, run: SyncRun) -> None:
        with self._lock:
            self.sync_runs[run.id] = run.model_copy(deep=True)

    def get_sync_runs(self, limit: int = 10) -> List[SyncRun]:
        with self._lock:
            runs = sorted(self.sync_runs.values(), key=lambda r: r.id, reverse=True)
            return [r.model_copy(deep=True) for r in runs[:limit]]

    # Diagnostics
    def get_coverage_counts(self) -> Dict[str, int]:
        with self._lock:
            votes = list(self.votes.values())
            rationales = list(self.rationales.values())
            proposals = list(self.proposals.values())
        return {
            "votes_total": len(votes),
            "votes_power_exact": sum(1 for v in votes if v.power_source is PowerSource.EXACT),
            "votes_power_nearest": sum(1 for v in votes if v.power_source is PowerSource.NEAREST),
            "rationales_hash_checked": sum(1 for r in rationales if r.hash_verified is not None),
            "rationales_hash_verified": sum(1 for r in rationales if r.hash_verified),
            "rationales_with_text": sum(1 for r in rationales if r.rationale_text),
            "rationales_summarized": sum(1 for r in rationales if r.rationale_text and r.ai_summary),
            "proposals_total": len(proposals),
            "proposals_summarized": sum(1 for p in proposals if p.ai_summary),
        }
