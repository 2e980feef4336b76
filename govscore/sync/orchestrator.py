"""
Sync orchestrator.

One run pulls the delegate registry, vote history and proposals from the
upstream API, scores every delegate, and persists the snapshot the read
path serves. Stages run in order:

    0. health check       (failure aborts the run before any data write)
    1. parallel fetch
    2. classify + enrich
    3. batch upserts      (proposals, delegates, votes)
    4. secondary writes   (delegator counts, power snapshots, alignment,
                           score history, vote tallies) in parallel
    5. power backfill     (full runs only)
    6. rationale fetch    (full runs only)
    7. profile checks     (full runs only; link reachability, metadata hash)
    8. AI summaries       (full runs only)

A stage that raises is logged and recorded under `stage_errors`; later
stages still run on whatever the earlier ones produced.
"""
import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from govscore.config.sync_settings import SyncSettings
from govscore.data_models.governance import (
    Delegate,
    LinkStatus,
    PowerSnapshot,
    Proposal,
    ScoreHistoryEntry,
    SyncRun,
    SyncType,
    Vote,
    VoteDecision,
)
from govscore.data_models.upstream_schemas import UpstreamVote
from govscore.exceptions import UpstreamUnavailableError
from govscore.scoring.alignment import compute_all_category_scores, detect_alignment_shifts, parse_preferences
from govscore.scoring.classifier import classify
from govscore.scoring.enrichment import DelegateInput, dedupe_votes, enrich_delegates, to_domain_vote
from govscore.scoring.metrics import (
    active_proposal_epochs,
    calculate_profile_completeness,
    current_epoch,
    extract_social_links,
)
from govscore.services.power_backfill import PowerBackfillResolver
from govscore.services.profile_verifier import ProfileVerifier, group_broken_links
from govscore.services.rationale_fetcher import RationaleFetcher
from govscore.services.store import GovernanceStore
from govscore.services.summarizer import Summarizer, build_proposal_prompt, build_rationale_prompt
from govscore.sync.run_logger import SyncRunLogger
from govscore.upstream.client import DelegateBatch, UpstreamClient
from govscore.utils.batching import BatchResult, gather_bounded
from govscore.utils.logger import logger


@dataclass
class SyncState:
    """Data carried between the stages of one run."""
    current_epoch: int = 0
    delegate_ids: List[str] = field(default_factory=list)
    batch: DelegateBatch = field(default_factory=DelegateBatch)
    raw_votes: Dict[str, List[UpstreamVote]] = field(default_factory=dict)
    proposals: List[Proposal] = field(default_factory=list)
    votes: Dict[str, List[Vote]] = field(default_factory=dict)
    delegates: List[Delegate] = field(default_factory=list)
    writes: Dict[str, BatchResult] = field(default_factory=dict)
    stage_errors: Dict[str, str] = field(default_factory=dict)
    stage_timings_ms: Dict[str, int] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)

    def record_write(self, table: str, result: BatchResult) -> None:
        previous = self.writes.get(table)
        self.writes[table] = previous.merge(result) if previous else result

    @property
    def write_totals(self) -> BatchResult:
        total = BatchResult()
        for result in self.writes.values():
            total = total.merge(result)
        return total

    @property
    def all_votes(self) -> List[Vote]:
        return [vote for votes in self.votes.values() for vote in votes]


def latest_vote_tallies(votes: List[Vote]) -> Dict[Tuple[str, int], Dict[str, int]]:
    """Yes/No/Abstain counts per proposal, counting only each delegate's latest vote."""
    latest: Dict[Tuple[str, str, int], Vote] = {}
    for vote in votes:
        key = (vote.delegate_id, vote.proposal_tx_hash, vote.proposal_index)
        if key not in latest or vote.block_time > latest[key].block_time:
            latest[key] = vote

    tallies: Dict[Tuple[str, int], Dict[str, int]] = {}
    for vote in latest.values():
        tally = tallies.setdefault(vote.proposal_key, {d.value: 0 for d in VoteDecision})
        tally[vote.decision.value] += 1
    return tallies


class SyncOrchestrator:
    """Runs one fast or full sync against an upstream client and a store."""

    def __init__(
        self,
        client: UpstreamClient,
        store: GovernanceStore,
        summarizer: Optional[Summarizer] = None,
        rationale_fetcher: Optional[RationaleFetcher] = None,
        profile_verifier: Optional[ProfileVerifier] = None,
        settings=SyncSettings,
    ):
        self.client = client
        self.store = store
        self.summarizer = summarizer
        self.rationale_fetcher = rationale_fetcher
        self.profile_verifier = profile_verifier
        self.settings = settings

    async def run(self, sync_type: SyncType = SyncType.FULL) -> SyncRun:
        sync_type = SyncType(sync_type)
        run_log = SyncRunLogger(self.store, sync_type)
        await asyncio.to_thread(run_log.start)
        state = SyncState(current_epoch=current_epoch())

        try:
            await self._check_health()
        except UpstreamUnavailableError as e:
            logger.error("[Sync] %s; aborting before any writes", e.message)
            return await asyncio.to_thread(run_log.finalize, False, {"health_check": False}, e.message)

        stages: List[Tuple[str, Callable[[SyncState], Awaitable[None]]]] = [
            ("fetch", self._fetch),
            ("enrich", self._enrich),
            ("persist", self._persist),
            ("secondary", self._secondary),
        ]
        if sync_type is SyncType.FULL:
            stages += [
                ("backfill", self._backfill),
                ("rationales", self._rationales),
                ("profiles", self._profiles),
                ("summaries", self._summaries),
            ]

        for name, stage in stages:
            started = time.monotonic()
            try:
                await stage(state)
            except Exception as e:
                logger.error("[Sync] Stage %s failed: %s", name, e, exc_info=True)
                state.stage_errors[name] = str(e) or type(e).__name__
            state.stage_timings_ms[name] = int((time.monotonic() - started) * 1000)

        totals = state.write_totals
        max_error_rate = self.settings.get_max_error_rate()
        success = not state.stage_errors and totals.error_rate < max_error_rate

        errors = [f"{name}: {message}" for name, message in state.stage_errors.items()]
        if totals.error_rate >= max_error_rate:
            errors.append(f"write error rate {totals.error_rate:.1%} ({totals.failed}/{totals.total} rows)")

        return await asyncio.to_thread(
            run_log.finalize, success, self._metrics(state), "; ".join(errors) or None
        )

    async def _check_health(self) -> None:
        if not await self.client.health_check():
            raise UpstreamUnavailableError()

    async def score_live(self) -> List[Delegate]:
        """Fetch and score delegates without persisting anything; the read path's slow fallback."""
        state = SyncState(current_epoch=current_epoch())
        await self._fetch(state)
        await self._enrich(state)
        return state.delegates

    def _metrics(self, state: SyncState) -> Dict[str, Any]:
        totals = state.write_totals
        return {
            "health_check": True,
            "current_epoch": state.current_epoch,
            "delegates": len(state.delegates),
            "votes": len(state.all_votes),
            "proposals": len(state.proposals),
            "writes": {table: result.to_dict() for table, result in state.writes.items()},
            "write_error_rate": round(totals.error_rate, 4),
            "stage_errors": dict(state.stage_errors),
            "stage_timings_ms": dict(state.stage_timings_ms),
            "upstream": self.client.get_metrics(),
            **state.details,
        }

    # ------------------------------------------------------------------
    # Stage 1: fetch
    # ------------------------------------------------------------------

    async def _fetch(self, state: SyncState) -> None:
        listing, raw_proposals, bulk_votes = await asyncio.gather(
            self.client.fetch_delegate_list(),
            self.client.fetch_proposals(),
            self.client.fetch_all_votes_bulk(),
            return_exceptions=True,
        )
        if isinstance(raw_proposals, Exception):
            state.stage_errors["fetch.proposals"] = str(raw_proposals)
            raw_proposals = []
        skipped = 0
        for raw in raw_proposals:
            try:
                state.proposals.append(classify(raw))
            except ValueError as e:
                skipped += 1
                logger.warning("[Sync] Skipping proposal %s#%s: %s", raw.proposal_tx_hash, raw.proposal_index, e)
        state.details["proposals_skipped"] = skipped

        # Proposals are independent of the registry and still get persisted
        if isinstance(listing, Exception):
            raise listing
        state.delegate_ids = [item.drep_id for item in listing if item.registered]

        state.batch = await self.client.fetch_batch(state.delegate_ids)
        if state.batch.failed_ids:
            state.details["delegates_fetch_failed"] = len(state.batch.failed_ids)

        if isinstance(bulk_votes, Exception) or not bulk_votes:
            reason = bulk_votes if isinstance(bulk_votes, Exception) else "empty response"
            logger.warning("[Sync] Bulk vote list unavailable (%s); fetching votes per delegate", reason)
            bulk_votes = await self.client.fetch_votes_for_delegates(state.delegate_ids)
        state.raw_votes = bulk_votes

    # ------------------------------------------------------------------
    # Stage 2: enrich
    # ------------------------------------------------------------------

    async def _enrich(self, state: SyncState) -> None:
        broken_links = group_broken_links(await asyncio.to_thread(self.store.get_link_checks))
        inputs: List[DelegateInput] = []
        for delegate_id in state.delegate_ids:
            info = state.batch.info.get(delegate_id)
            if info is None:
                # No registry data this run; the persisted row stays as it is
                continue
            votes = dedupe_votes(to_domain_vote(raw, delegate_id) for raw in state.raw_votes.get(delegate_id, []))
            state.votes[delegate_id] = votes
            inputs.append(DelegateInput(
                delegate_id, info, state.batch.metadata.get(delegate_id), votes,
                broken_links=broken_links.get(delegate_id, frozenset()),
            ))

        hashes = [vote.vote_tx_hash for vote in state.all_votes if vote.meta_url]
        rationales = await asyncio.to_thread(self.store.get_rationales, hashes) if hashes else {}
        resolved_texts = {h: r.rationale_text for h, r in rationales.items() if r.rationale_text}

        proposal_epochs = active_proposal_epochs(state.proposals, state.current_epoch)
        state.delegates = enrich_delegates(
            inputs,
            state.current_epoch,
            proposal_epochs=proposal_epochs or None,
            resolved_texts=resolved_texts,
        )
        logger.info("[Sync] Enriched %d delegates, %d votes", len(state.delegates), len(state.all_votes))

    # ------------------------------------------------------------------
    # Stage 3: persist
    # ------------------------------------------------------------------

    async def _persist(self, state: SyncState) -> None:
        # Votes reference proposals and delegates
        state.record_write("proposals", await asyncio.to_thread(self.store.upsert_proposals, state.proposals))
        state.record_write("delegates", await asyncio.to_thread(self.store.upsert_delegates, state.delegates))
        state.record_write("votes", await asyncio.to_thread(self.store.upsert_votes, state.all_votes))

    # ------------------------------------------------------------------
    # Stage 4: secondary writes
    # ------------------------------------------------------------------

    async def _secondary(self, state: SyncState) -> None:
        tasks = {
            "delegator_counts": self._write_delegator_counts(state),
            "power_snapshots": self._write_power_snapshots(state),
            "alignment": self._write_alignment(state),
            "vote_tallies": self._write_vote_tallies(state),
        }
        if self.settings.is_score_history_enabled():
            tasks["score_history"] = self._write_score_history(state)

        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for name, outcome in zip(tasks, outcomes):
            if isinstance(outcome, Exception):
                logger.error("[Sync] Secondary task %s failed: %s", name, outcome)
                state.stage_errors[f"secondary.{name}"] = str(outcome) or type(outcome).__name__

    async def _write_delegator_counts(self, state: SyncState) -> None:
        active = [
            d.delegate_id for d in state.delegates
            if state.batch.info[d.delegate_id].active is not False
        ]
        outcomes = await gather_bounded(
            active, self.client.fetch_delegator_count, self.settings.get_delegator_concurrency()
        )
        counts = {
            delegate_id: count for delegate_id, count in zip(active, outcomes)
            if not isinstance(count, Exception)
        }
        state.details["delegator_counts_failed"] = len(active) - len(counts)
        state.record_write("delegator_counts", await asyncio.to_thread(self.store.update_delegator_counts, counts))

    async def _write_power_snapshots(self, state: SyncState) -> None:
        snapshots = [
            PowerSnapshot(delegate_id=d.delegate_id, epoch_no=state.current_epoch, amount=d.voting_power)
            for d in state.delegates
        ]
        state.record_write("power_snapshots", await asyncio.to_thread(self.store.upsert_power_snapshots, snapshots))

    async def _write_alignment(self, state: SyncState) -> None:
        scores = {
            d.delegate_id: compute_all_category_scores(d, state.votes.get(d.delegate_id, []), state.proposals)
            for d in state.delegates
        }
        stored = {d.delegate_id: d for d in await asyncio.to_thread(self.store.get_delegates)}
        prefs = parse_preferences(self.settings.get_alignment_shift_prefs())
        shifts = []
        for delegate in state.delegates:
            previous = stored.get(delegate.delegate_id)
            shift = detect_alignment_shifts(
                previous.alignment if previous else None,
                scores[delegate.delegate_id],
                prefs,
                delegate.delegate_id,
                delegate.name,
            )
            if shift is not None:
                logger.info(
                    "[Sync] Alignment of %s fell %d -> %d", shift.delegate_id,
                    shift.previous_overall, shift.current_overall,
                )
                shifts.append(shift)
        state.details["alignment_shifts"] = {
            "count": len(shifts),
            "shifts": [shift.model_dump(mode="json") for shift in shifts[:20]],
        }

        state.record_write("alignment", await asyncio.to_thread(self.store.update_alignment, scores))

    async def _write_score_history(self, state: SyncState) -> None:
        today = datetime.now(timezone.utc).date()
        entries = [
            ScoreHistoryEntry(
                delegate_id=d.delegate_id,
                snapshot_date=today,
                score=d.score,
                effective_participation=d.effective_participation,
                rationale_rate=d.rationale_rate,
                reliability_score=d.reliability.score,
                profile_completeness=d.profile_completeness,
            )
            for d in state.delegates
        ]
        state.record_write("score_history", await asyncio.to_thread(self.store.upsert_score_history, entries))

    async def _write_vote_tallies(self, state: SyncState) -> None:
        tallies = latest_vote_tallies(state.all_votes)
        state.record_write("vote_tallies", await asyncio.to_thread(self.store.update_vote_tallies, tallies))

    # ------------------------------------------------------------------
    # Stages 5-8: full runs only
    # ------------------------------------------------------------------

    async def _backfill(self, state: SyncState) -> None:
        resolver = PowerBackfillResolver(self.client, self.store)
        result = await resolver.run()
        state.record_write("vote_power", result.writes)
        state.details["backfill"] = result.to_dict()

    async def _rationales(self, state: SyncState) -> None:
        votes = await asyncio.to_thread(self.store.get_votes)
        candidates = [v for v in votes if v.meta_url]
        known = await asyncio.to_thread(self.store.get_rationales, [v.vote_tx_hash for v in candidates])
        pending = [
            v for v in candidates
            if not (v.vote_tx_hash in known and known[v.vote_tx_hash].rationale_text)
        ][:self.settings.get_rationale_max_per_sync()]

        if not pending:
            state.details["rationales"] = {"attempted": 0, "resolved": 0}
            return

        fetcher = self.rationale_fetcher or RationaleFetcher()
        try:
            resolved = await fetcher.fetch_many(pending, self.settings.get_rationale_concurrency())
        finally:
            if self.rationale_fetcher is None:
                await fetcher.aclose()

        state.record_write("rationales", await asyncio.to_thread(self.store.upsert_rationales, resolved))
        state.details["rationales"] = {"attempted": len(pending), "resolved": len(resolved)}

    async def _profiles(self, state: SyncState) -> None:
        recheck_before = datetime.now(timezone.utc) - timedelta(days=self.settings.get_link_recheck_days())
        fresh = {
            (c.delegate_id, c.uri)
            for c in await asyncio.to_thread(self.store.get_link_checks)
            if c.last_checked_at is not None and c.last_checked_at > recheck_before
        }
        links = [
            (d.delegate_id, uri)
            for d in state.delegates
            for uri in extract_social_links(d.metadata)
            if (d.delegate_id, uri) not in fresh
        ][:self.settings.get_link_checks_max_per_sync()]

        # Anchors are verified once; a recorded outcome is not rechecked
        stored = {d.delegate_id: d for d in await asyncio.to_thread(self.store.get_delegates)}
        anchors = {}
        for delegate in state.delegates:
            info = state.batch.info.get(delegate.delegate_id)
            known = stored.get(delegate.delegate_id)
            if info is None or not (info.meta_url and info.meta_hash):
                continue
            if known is not None and known.metadata_hash_verified is not None:
                continue
            anchors[delegate.delegate_id] = (info.meta_url, info.meta_hash)
            if len(anchors) >= self.settings.get_metadata_checks_max_per_sync():
                break

        verifier = self.profile_verifier or ProfileVerifier()
        concurrency = self.settings.get_profile_concurrency()
        try:
            checks = await verifier.check_links(links, concurrency)
            verified = await verifier.verify_many(anchors, concurrency)
        finally:
            if self.profile_verifier is None:
                await verifier.aclose()

        state.record_write("link_checks", await asyncio.to_thread(self.store.upsert_link_checks, checks))
        state.record_write(
            "metadata_verification", await asyncio.to_thread(self.store.update_metadata_verification, verified)
        )

        # Profile points follow the link checks just written
        broken_links = group_broken_links(await asyncio.to_thread(self.store.get_link_checks))
        rescored = []
        for delegate in state.delegates:
            completeness = calculate_profile_completeness(delegate.metadata, broken_links.get(delegate.delegate_id))
            if completeness != delegate.profile_completeness:
                rescored.append(delegate.model_copy(update={"profile_completeness": completeness}))
        if rescored:
            state.record_write("delegates", await asyncio.to_thread(self.store.upsert_delegates, rescored))

        state.details["profiles"] = {
            "links_checked": len(checks),
            "links_broken": sum(1 for c in checks if c.status is LinkStatus.BROKEN),
            "metadata_checked": len(verified),
            "metadata_mismatch": sum(1 for ok in verified.values() if not ok),
            "rescored": len(rescored),
        }

    async def _summaries(self, state: SyncState) -> None:
        if self.summarizer is None:
            logger.info("[Sync] No summarizer configured; skipping summaries")
            return

        limit = self.settings.get_summary_max_per_sync()
        concurrency = self.settings.get_summary_concurrency()
        proposals = await asyncio.to_thread(self.store.get_proposals)
        titles = {p.key: p.title for p in proposals}

        pending_proposals = [p for p in proposals if not p.ai_summary][:limit]

        async def summarize_proposal(proposal: Proposal) -> bool:
            summary = await self.summarizer.summarize("proposal", build_proposal_prompt(proposal))
            if not summary:
                return False
            await asyncio.to_thread(self.store.update_proposal_summary, proposal.key, summary)
            return True

        rationales = await asyncio.to_thread(self.store.get_rationales)
        pending_rationales = [r for r in rationales.values() if r.rationale_text and not r.ai_summary][:limit]
        votes = {v.vote_tx_hash: v for v in await asyncio.to_thread(self.store.get_votes)}

        async def summarize_rationale(rationale) -> bool:
            vote = votes.get(rationale.vote_tx_hash)
            if vote is None:
                return False
            prompt = build_rationale_prompt(vote, rationale.rationale_text, titles.get(vote.proposal_key))
            summary = await self.summarizer.summarize("rationale", prompt)
            if not summary:
                return False
            await asyncio.to_thread(self.store.update_rationale_summary, rationale.vote_tx_hash, summary)
            return True

        proposal_outcomes = await gather_bounded(pending_proposals, summarize_proposal, concurrency)
        rationale_outcomes = await gather_bounded(pending_rationales, summarize_rationale, concurrency)
        state.details["summaries"] = {
            "proposals": sum(1 for ok in proposal_outcomes if ok is True),
            "rationales": sum(1 for ok in rationale_outcomes if ok is True),
            "failed": sum(1 for ok in proposal_outcomes + rationale_outcomes if ok is not True),
        }
