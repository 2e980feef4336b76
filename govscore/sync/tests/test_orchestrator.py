"""Tests for the sync orchestrator, run against a fake upstream client and the in-memory store."""
import asyncio
import hashlib
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from govscore.data_models.governance import LinkStatus, SyncRun, SyncType, Vote, VoteDecision
from govscore.data_models.upstream_schemas import (
    DelegateInfo,
    DelegateListItem,
    DelegateMetadata,
    PowerHistoryEntry,
    UpstreamProposal,
    UpstreamVote,
)
from govscore.exceptions import UpstreamUnavailableError
from govscore.services.profile_verifier import ProfileVerifier
from govscore.services.rationale_fetcher import RationaleFetcher
from govscore.services.store import InMemoryGovernanceStore
from govscore.sync import __main__ as sync_cli
from govscore.sync.orchestrator import SyncOrchestrator, latest_vote_tallies
from govscore.sync.run_logger import MAX_ERROR_MESSAGE_LENGTH, SyncRunLogger
from govscore.upstream.client import DelegateBatch
from govscore.utils.retry import RetryPolicy

RATIONALE_DOC = {"body": {"comment": "The budget lacks milestones, so I cannot support it at this size."}}
ANCHOR_DOC = b'{"body": {"givenName": "Alice"}}'
ANCHOR_HASH = hashlib.blake2b(ANCHOR_DOC, digest_size=32).hexdigest()
ALICE_LINKS = ["https://github.com/alice", "https://x.com/alice"]


def raw_vote(tx, proposal_tx="p1", vote="Yes", block_time=1_700_000_000, **kwargs):
    return UpstreamVote(
        vote_tx_hash=tx, proposal_tx_hash=proposal_tx, proposal_index=0,
        vote=vote, block_time=block_time, epoch_no=500, **kwargs,
    )


class FakeUpstreamClient:
    """In-process stand-in for UpstreamClient with canned responses."""

    def __init__(self, healthy=True, bulk_votes=True, proposals_error=None, listing_error=None):
        self.healthy = healthy
        self.listing_error = listing_error
        self.bulk_votes = bulk_votes
        self.proposals_error = proposals_error
        self.votes = {
            "drep1": [
                raw_vote("v1", vote="Yes", block_time=1_700_000_000, voter_id="drep1"),
                raw_vote("v2", vote="No", block_time=1_700_000_100, voter_id="drep1"),
            ],
            "drep2": [
                raw_vote("v3", vote="Yes", voter_id="drep2", meta_url="https://rationale.test/v3.json"),
            ],
        }
        self.per_delegate_calls = 0

    async def health_check(self):
        return self.healthy

    async def fetch_delegate_list(self):
        if self.listing_error:
            raise self.listing_error
        return [
            DelegateListItem(drep_id="drep1"),
            DelegateListItem(drep_id="drep2"),
            DelegateListItem(drep_id="retired", registered=False),
        ]

    async def fetch_proposals(self):
        if self.proposals_error:
            raise self.proposals_error
        return [
            UpstreamProposal(
                proposal_tx_hash="p1", proposal_index=0, proposal_type="InfoAction",
                proposed_epoch=499, block_time=1_699_000_000,
                meta_json={"body": {"title": "Community survey"}},
            ),
            UpstreamProposal(
                proposal_tx_hash="p2", proposal_index=0, proposal_type="Mystery",
                proposed_epoch=499, block_time=1_699_000_000,
            ),
        ]

    async def fetch_all_votes_bulk(self):
        return self.votes if self.bulk_votes else {}

    async def fetch_votes_for_delegates(self, ids):
        self.per_delegate_calls += 1
        return {delegate_id: self.votes.get(delegate_id, []) for delegate_id in ids}

    async def fetch_batch(self, ids):
        return DelegateBatch(
            info={
                "drep1": DelegateInfo(
                    drep_id="drep1", amount=2_000_000_000_000,
                    meta_url="https://meta.test/drep1.jsonld", meta_hash=ANCHOR_HASH,
                ),
                "drep2": DelegateInfo(drep_id="drep2", amount=50_000_000_000, active=False),
            },
            metadata={"drep1": DelegateMetadata(drep_id="drep1", meta_json={
                "givenName": "Alice",
                "references": [{"uri": uri} for uri in ALICE_LINKS],
            })},
        )

    async def fetch_delegator_count(self, delegate_id):
        return 7

    async def fetch_power_history(self, delegate_id):
        return [PowerHistoryEntry(epoch_no=500, amount=123)]

    def get_metrics(self):
        return {"requests": 0}


class FakeSummarizer:
    def __init__(self):
        self.kinds = []

    async def summarize(self, kind, text):
        self.kinds.append(kind)
        return f"Short {kind} summary"


def rationale_fetcher():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=RATIONALE_DOC))
    return RationaleFetcher(transport=transport, retry_policy=RetryPolicy(max_retries=0, sleep=AsyncMock()))


def profile_verifier(dead_links=(), anchor_body=ANCHOR_DOC):
    def handler(request):
        if request.method == "HEAD":
            return httpx.Response(404 if str(request.url) in dead_links else 200)
        return httpx.Response(200, content=anchor_body)

    return ProfileVerifier(
        transport=httpx.MockTransport(handler), retry_policy=RetryPolicy(max_retries=0, sleep=AsyncMock())
    )


def run_sync(orchestrator, sync_type):
    return asyncio.run(orchestrator.run(sync_type))


class TestHealthCheck:
    """Test the health gate."""

    def test_failed_health_check_aborts_before_writes(self):
        """Test exactly one failed SyncRun is recorded and no data is written."""
        store = InMemoryGovernanceStore()
        run = run_sync(SyncOrchestrator(FakeUpstreamClient(healthy=False), store), SyncType.FULL)

        assert run.success is False
        assert run.error_message == UpstreamUnavailableError().message == "Upstream API failed health check"
        assert run.metrics == {"health_check": False}
        assert len(store.get_sync_runs()) == 1
        assert store.get_delegates() == []
        assert store.get_votes() == []
        assert store.get_proposals() == []


class TestFastSync:
    """Test stages 0-4."""

    def test_fast_run_persists_snapshot(self):
        """Test delegates, votes, proposals and secondary data are written."""
        store = InMemoryGovernanceStore()
        run = run_sync(SyncOrchestrator(FakeUpstreamClient(), store), SyncType.FAST)

        assert run.success is True
        assert run.error_message is None
        assert run.metrics["proposals_skipped"] == 1
        assert "backfill" not in run.metrics["stage_timings_ms"]
        assert sorted(d.delegate_id for d in store.get_delegates()) == ["drep1", "drep2"]
        assert len(store.get_votes()) == 3
        assert [p.tx_hash for p in store.get_proposals()] == ["p1"]

        alice = store.get_delegate("drep1")
        assert alice.name == "Alice"
        assert alice.alignment is not None
        assert alice.delegator_count == 7
        assert store.get_delegate("drep2").delegator_count is None
        assert store.get_vote_tallies()[("p1", 0)] == {"Yes": 1, "No": 1, "Abstain": 0}
        assert len(store.get_score_history("drep1")) == 1
        assert store.get_rationales() == {}

    def test_rerun_is_idempotent(self):
        """Test a second run over the same data leaves row counts unchanged."""
        store = InMemoryGovernanceStore()
        orchestrator = SyncOrchestrator(FakeUpstreamClient(), store)
        run_sync(orchestrator, SyncType.FAST)
        first = (len(store.get_delegates()), len(store.get_votes()), len(store.get_proposals()),
                 len(store.get_power_snapshots("drep1")), len(store.get_score_history("drep1")))
        run_sync(orchestrator, SyncType.FAST)
        second = (len(store.get_delegates()), len(store.get_votes()), len(store.get_proposals()),
                  len(store.get_power_snapshots("drep1")), len(store.get_score_history("drep1")))
        assert first == second
        assert len(store.get_sync_runs()) == 2

    def test_per_delegate_vote_fallback(self):
        """Test an empty bulk vote list falls back to per-delegate fetches."""
        client = FakeUpstreamClient(bulk_votes=False)
        store = InMemoryGovernanceStore()
        run_sync(SyncOrchestrator(client, store), SyncType.FAST)
        assert client.per_delegate_calls == 1
        assert len(store.get_votes()) == 3

    def test_stage_error_recorded(self):
        """Test a proposal fetch failure is recorded while delegates are still written."""
        store = InMemoryGovernanceStore()
        client = FakeUpstreamClient(proposals_error=RuntimeError("proposal list down"))
        run = run_sync(SyncOrchestrator(client, store), SyncType.FAST)

        assert run.success is False
        assert "fetch.proposals: proposal list down" in run.error_message
        assert len(store.get_delegates()) == 2

    def test_listing_failure_keeps_proposals(self):
        """Test proposals fetched alongside a failed delegate listing are still classified and written."""
        store = InMemoryGovernanceStore()
        client = FakeUpstreamClient(listing_error=RuntimeError("registry down"))
        run = run_sync(SyncOrchestrator(client, store), SyncType.FAST)

        assert run.success is False
        assert "fetch: registry down" in run.error_message
        assert [p.tx_hash for p in store.get_proposals()] == ["p1"]
        assert run.metrics["proposals_skipped"] == 1
        assert store.get_delegates() == []

    def test_alignment_drop_recorded_on_rerun(self):
        """Test a second run whose votes lower a delegate's alignment reports the shift."""
        store = InMemoryGovernanceStore()
        client = FakeUpstreamClient()
        first = run_sync(SyncOrchestrator(client, store), SyncType.FAST)
        assert first.metrics["alignment_shifts"]["count"] == 0

        # drep2 re-publishes its vote without the rationale anchor
        client.votes["drep2"] = [raw_vote("v3", voter_id="drep2")]
        second = run_sync(SyncOrchestrator(client, store), SyncType.FAST)

        shifts = second.metrics["alignment_shifts"]
        assert shifts["count"] == 1
        shift = shifts["shifts"][0]
        assert shift["delegate_id"] == "drep2"
        assert shift["delta"] < -8
        assert "transparency" in [c["category"] for c in shift["category_shifts"]]

        drep2 = store.get_delegate("drep2")
        assert drep2.previous_alignment.transparency == 100
        assert drep2.alignment.transparency == 0


class TestFullSync:
    """Test stages 5-7."""

    def test_full_run(self):
        """Test backfill, rationale fetch and summaries all run."""
        store = InMemoryGovernanceStore()
        summarizer = FakeSummarizer()
        orchestrator = SyncOrchestrator(
            FakeUpstreamClient(), store, summarizer=summarizer,
            rationale_fetcher=rationale_fetcher(), profile_verifier=profile_verifier(),
        )
        run = run_sync(orchestrator, SyncType.FULL)

        assert run.success is True
        assert run.metrics["backfill"]["exact"] == 3
        assert run.metrics["rationales"] == {"attempted": 1, "resolved": 1}
        assert run.metrics["summaries"] == {"proposals": 1, "rationales": 1, "failed": 0}
        assert all(v.voting_power == 123 for v in store.get_votes())

        rationale = store.get_rationales(["v3"])["v3"]
        assert rationale.rationale_text.startswith("The budget lacks milestones")
        assert rationale.ai_summary == "Short rationale summary"
        assert store.get_proposals()[0].ai_summary == "Short proposal summary"

    def test_full_run_without_summarizer(self):
        """Test summaries are skipped cleanly when no summarizer is configured."""
        store = InMemoryGovernanceStore()
        orchestrator = SyncOrchestrator(
            FakeUpstreamClient(), store, rationale_fetcher=rationale_fetcher(), profile_verifier=profile_verifier()
        )
        run = run_sync(orchestrator, SyncType.FULL)
        assert run.success is True
        assert "summaries" not in run.metrics
        assert store.get_proposals()[0].ai_summary is None

    def test_dead_link_lowers_completeness(self):
        """Test a link that fails its HEAD check stops earning profile points, now and on later runs."""
        store = InMemoryGovernanceStore()
        run_sync(SyncOrchestrator(FakeUpstreamClient(), store), SyncType.FAST)
        assert store.get_delegate("drep1").profile_completeness == 45

        orchestrator = SyncOrchestrator(
            FakeUpstreamClient(), store, rationale_fetcher=rationale_fetcher(),
            profile_verifier=profile_verifier(dead_links={"https://x.com/alice"}),
        )
        run = run_sync(orchestrator, SyncType.FULL)

        assert run.success is True
        assert run.metrics["profiles"]["links_checked"] == 2
        assert run.metrics["profiles"]["links_broken"] == 1
        assert run.metrics["profiles"]["rescored"] == 1
        statuses = {c.uri: (c.status, c.http_status) for c in store.get_link_checks("drep1")}
        assert statuses == {
            "https://github.com/alice": (LinkStatus.VALID, 200),
            "https://x.com/alice": (LinkStatus.BROKEN, 404),
        }
        assert store.get_delegate("drep1").profile_completeness == 40
        assert store.get_delegate("drep1").metadata_hash_verified is True

        run_sync(SyncOrchestrator(FakeUpstreamClient(), store), SyncType.FAST)
        assert store.get_delegate("drep1").profile_completeness == 40

    def test_metadata_hash_mismatch_flagged(self):
        """Test an anchor document that does not match its declared hash is recorded as unverified."""
        store = InMemoryGovernanceStore()
        orchestrator = SyncOrchestrator(
            FakeUpstreamClient(), store, rationale_fetcher=rationale_fetcher(),
            profile_verifier=profile_verifier(anchor_body=b'{"body": {"givenName": "Mallory"}}'),
        )
        run = run_sync(orchestrator, SyncType.FULL)

        assert run.metrics["profiles"]["metadata_checked"] == 1
        assert run.metrics["profiles"]["metadata_mismatch"] == 1
        assert store.get_delegate("drep1").metadata_hash_verified is False
        assert store.get_delegate("drep2").metadata_hash_verified is None

    def test_profile_checks_not_repeated(self):
        """Test fresh link checks and recorded anchor outcomes are skipped on the next full run."""
        store = InMemoryGovernanceStore()
        for _ in range(2):
            orchestrator = SyncOrchestrator(
                FakeUpstreamClient(), store, rationale_fetcher=rationale_fetcher(),
                profile_verifier=profile_verifier(),
            )
            run = run_sync(orchestrator, SyncType.FULL)
        assert run.metrics["profiles"]["links_checked"] == 0
        assert run.metrics["profiles"]["metadata_checked"] == 0
        assert store.get_delegate("drep1").metadata_hash_verified is True

    def test_score_live_writes_nothing(self):
        """Test the live scoring path returns delegates without persisting."""
        store = InMemoryGovernanceStore()
        delegates = asyncio.run(SyncOrchestrator(FakeUpstreamClient(), store).score_live())
        assert sorted(d.delegate_id for d in delegates) == ["drep1", "drep2"]
        assert store.get_delegates() == []
        assert store.get_sync_runs() == []


class TestVoteTallies:
    """Test latest-vote tallies."""

    def test_only_latest_vote_counts(self):
        """Test a delegate's re-vote replaces the earlier one."""
        def vote(tx, delegate_id, decision, block_time):
            return Vote(
                vote_tx_hash=tx, delegate_id=delegate_id, proposal_tx_hash="p1", proposal_index=0,
                decision=decision, epoch_no=500, block_time=block_time,
            )

        tallies = latest_vote_tallies([
            vote("a", "d1", VoteDecision.YES, 1),
            vote("b", "d1", VoteDecision.ABSTAIN, 2),
            vote("c", "d2", VoteDecision.NO, 1),
        ])
        assert tallies == {("p1", 0): {"Yes": 0, "No": 1, "Abstain": 1}}


class TestSyncRunLogger:
    """Test sync log bookkeeping."""

    def test_finalize_before_start(self):
        """Test finalizing an unstarted run is an error."""
        with pytest.raises(RuntimeError):
            SyncRunLogger(InMemoryGovernanceStore(), SyncType.FAST).finalize(True)

    def test_error_message_capped(self):
        """Test long error messages are truncated."""
        store = InMemoryGovernanceStore()
        run_log = SyncRunLogger(store, SyncType.FULL)
        run_log.start()
        run = run_log.finalize(False, {"x": 1}, "e" * 5000)
        assert len(run.error_message) == MAX_ERROR_MESSAGE_LENGTH
        assert run.duration_ms >= 0
        assert store.get_sync_runs()[0].metrics == {"x": 1}


class TestCli:
    """Test the command-line entry point."""

    def test_exit_codes(self):
        """Test the exit code follows the run outcome."""
        started = datetime(2025, 1, 1, tzinfo=timezone.utc)
        failed = SyncRun(id=1, sync_type=SyncType.FAST, started_at=started, success=False, error_message="x")
        ok = SyncRun(id=2, sync_type=SyncType.FULL, started_at=started, success=True)

        with patch.object(sync_cli, "run_sync", AsyncMock(return_value=failed)) as mocked:
            assert sync_cli.main(["--type", "fast", "--no-summaries"]) == 1
            mocked.assert_awaited_once_with(SyncType.FAST, summaries=False)
        with patch.object(sync_cli, "run_sync", AsyncMock(return_value=ok)):
            assert sync_cli.main([]) == 0

    def test_summarizer_disabled_without_model(self):
        """Test no summarizer is built when summaries are off."""
        assert sync_cli.build_summarizer(False) is None
