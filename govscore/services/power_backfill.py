"""
Voting-power backfill.

Attributes a voting power to every persisted vote that lacks an exact one.
For each delegate the full power history is fetched and stored as
snapshots, then votes are matched to snapshots in two tiers: an exact epoch
match first, then the nearest snapshot epoch for whatever is left. Votes of
delegates with no history at all stay unresolved; they are not retried.
"""
import asyncio
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence

from govscore.config.sync_settings import SyncSettings
from govscore.data_models.governance import PowerSnapshot, PowerSource, Vote
from govscore.services.store import GovernanceStore, VotePowerUpdate
from govscore.upstream.client import UpstreamClient
from govscore.utils.batching import BatchResult, chunked, gather_bounded
from govscore.utils.logger import logger

UPDATE_CHUNK_SIZE = 50


@dataclass
class BackfillResult:
    delegates_processed: int = 0
    delegates_without_history: int = 0
    snapshots_written: int = 0
    exact: int = 0
    nearest: int = 0
    unresolved: int = 0
    unchanged: int = 0
    writes: BatchResult = field(default_factory=BatchResult)
    errors: List[str] = field(default_factory=list)

    def absorb(self, other: "BackfillResult") -> None:
        self.delegates_processed += other.delegates_processed
        self.delegates_without_history += other.delegates_without_history
        self.snapshots_written += other.snapshots_written
        self.exact += other.exact
        self.nearest += other.nearest
        self.unresolved += other.unresolved
        self.unchanged += other.unchanged
        self.writes = self.writes.merge(other.writes)
        self.errors.extend(other.errors)

    def to_dict(self) -> dict:
        return {
            "delegates_processed": self.delegates_processed,
            "delegates_without_history": self.delegates_without_history,
            "snapshots_written": self.snapshots_written,
            "exact": self.exact,
            "nearest": self.nearest,
            "unresolved": self.unresolved,
            "unchanged": self.unchanged,
            "writes": self.writes.to_dict(),
            "errors": self.errors[:20],
        }


class PowerMatch(NamedTuple):
    exact: List[VotePowerUpdate]
    nearest: List[VotePowerUpdate]
    unresolved: int = 0
    unchanged: int = 0


def match_vote_power(votes: Sequence[Vote], snapshots: Sequence[PowerSnapshot]) -> PowerMatch:
    """
    Match pending votes to power snapshots.

    A vote whose epoch has a snapshot is always resolved exactly, even when
    the nearest match would give the same amount. Ties between two equally
    distant snapshots go to the earlier epoch. A nearest match equal to the
    power already stored is counted as unchanged, so every pending vote
    lands in exactly one of the four buckets.
    """
    pending = [v for v in votes if v.power_source is not PowerSource.EXACT]
    if not snapshots:
        return PowerMatch([], [], unresolved=len(pending))

    amount_by_epoch = {s.epoch_no: s.amount for s in snapshots}
    epochs = sorted(amount_by_epoch)
    exact: List[VotePowerUpdate] = []
    nearest: List[VotePowerUpdate] = []
    unchanged = 0

    for vote in pending:
        if vote.epoch_no in amount_by_epoch:
            exact.append(VotePowerUpdate(vote.vote_tx_hash, amount_by_epoch[vote.epoch_no], PowerSource.EXACT))
            continue
        closest = min(epochs, key=lambda epoch: (abs(epoch - vote.epoch_no), epoch))
        amount = amount_by_epoch[closest]
        if vote.power_source is PowerSource.NEAREST and vote.voting_power == amount:
            unchanged += 1
            continue
        nearest.append(VotePowerUpdate(vote.vote_tx_hash, amount, PowerSource.NEAREST))
    return PowerMatch(exact, nearest, unchanged=unchanged)


class PowerBackfillResolver:
    """Resolve missing voting power on persisted votes, one delegate at a time."""

    def __init__(
        self,
        client: UpstreamClient,
        store: GovernanceStore,
        update_concurrency: Optional[int] = None,
        delegate_delay: Optional[float] = None,
    ):
        self.client = client
        self.store = store
        self.update_concurrency = update_concurrency or SyncSettings.get_backfill_update_concurrency()
        self.delegate_delay = (
            SyncSettings.get_backfill_delegate_delay() if delegate_delay is None else delegate_delay
        )

    async def _apply(self, updates: List[VotePowerUpdate]) -> BatchResult:
        chunks = list(chunked(updates, UPDATE_CHUNK_SIZE))
        outcomes = await gather_bounded(
            chunks,
            lambda chunk: asyncio.to_thread(self.store.apply_vote_power, chunk),
            self.update_concurrency,
        )
        result = BatchResult()
        for chunk, outcome in zip(chunks, outcomes):
            if isinstance(outcome, Exception):
                result.record_failure(outcome, len(chunk))
            else:
                result = result.merge(outcome)
        return result

    async def resolve_delegate(self, delegate_id: str, votes: Sequence[Vote]) -> BackfillResult:
        result = BackfillResult(delegates_processed=1)
        history = await self.client.fetch_power_history(delegate_id)
        snapshots = [
            PowerSnapshot(delegate_id=delegate_id, epoch_no=entry.epoch_no, amount=entry.amount)
            for entry in history
        ]
        if not snapshots:
            result.delegates_without_history = 1
            result.unresolved = len(votes)
            logger.info("[Backfill] %s has no power history; %d votes stay unresolved", delegate_id, len(votes))
            return result

        written = await asyncio.to_thread(self.store.upsert_power_snapshots, snapshots)
        result.snapshots_written = written.succeeded
        result.writes = written

        exact, nearest, result.unresolved, result.unchanged = match_vote_power(votes, snapshots)
        # Exact matches land before any nearest-epoch fill
        if exact:
            result.writes = result.writes.merge(await self._apply(exact))
        if nearest:
            result.writes = result.writes.merge(await self._apply(nearest))
        result.exact = len(exact)
        result.nearest = len(nearest)
        return result

    async def run(self) -> BackfillResult:
        pending = await asyncio.to_thread(self.store.get_votes_needing_power)
        total = BackfillResult()
        logger.info("[Backfill] %d delegates have votes without exact power", len(pending))

        for position, (delegate_id, votes) in enumerate(pending.items()):
            try:
                total.absorb(await self.resolve_delegate(delegate_id, votes))
            except Exception as e:
                logger.warning("[Backfill] %s failed: %s", delegate_id, e)
                total.errors.append(f"{delegate_id}: {e}")
                total.unresolved += len(votes)
            if self.delegate_delay and position < len(pending) - 1:
                await asyncio.sleep(self.delegate_delay)

        logger.info(
            "[Backfill] exact=%d nearest=%d unchanged=%d unresolved=%d snapshots=%d",
            total.exact, total.nearest, total.unchanged, total.unresolved, total.snapshots_written,
        )
        return total
