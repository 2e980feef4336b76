"""Unit tests for delegate enrichment."""
from datetime import datetime, timezone

from govscore.data_models.governance import SizeTier, Vote, VoteDecision
from govscore.data_models.upstream_schemas import DelegateInfo, DelegateMetadata, UpstreamVote
from govscore.scoring.enrichment import (
    DelegateInput,
    dedupe_votes,
    enrich_delegates,
    extract_inline_rationale,
    participation_baseline,
    to_domain_vote,
)

NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def votes_for(delegate_id, count, decision=VoteDecision.YES, epoch=500, prefix=None):
    prefix = prefix or delegate_id
    return [
        Vote(
            vote_tx_hash=f"{prefix}-{i}",
            delegate_id=delegate_id,
            proposal_tx_hash=f"p{i}",
            proposal_index=0,
            decision=decision,
            epoch_no=epoch,
            block_time=1_700_000_000 + i,
        )
        for i in range(count)
    ]


class TestInlineRationale:
    """Test rationale text embedded in vote metadata."""

    def test_body_comment_first(self):
        """Test the body comment wins over a top-level rationale."""
        meta = {"body": {"comment": {"@value": "From body"}}, "rationale": "Top level"}
        assert extract_inline_rationale(meta) == "From body"

    def test_top_level_fallback(self):
        """Test a flat rationale is used when the body has none."""
        assert extract_inline_rationale({"rationale": "  Flat  "}) == "Flat"

    def test_empty(self):
        """Test missing or blank metadata yields None."""
        assert extract_inline_rationale(None) is None
        assert extract_inline_rationale({"body": {"comment": "   "}}) is None


class TestDomainVotes:
    """Test conversion and deduplication of raw votes."""

    def test_epoch_derived_from_block_time(self):
        """Test a vote without an epoch gets one from its block time."""
        raw = UpstreamVote(
            vote_tx_hash="v1", proposal_tx_hash="p1", proposal_index=0,
            vote="No", block_time=1596491091 + 432000 * 3,
        )
        vote = to_domain_vote(raw, "drep1")
        assert vote.epoch_no == 212
        assert vote.decision is VoteDecision.NO
        assert vote.delegate_id == "drep1"

    def test_dedupe_keeps_first(self):
        """Test duplicate vote transactions collapse to the first seen."""
        first, second = votes_for("d", 1)[0], votes_for("d", 1)[0].model_copy(update={"epoch_no": 1})
        assert dedupe_votes([first, second]) == [first]


class TestEnrichDelegates:
    """Test the two-pass batch enrichment."""

    def test_rubber_stamper_scenario(self):
        """Test 50 all-Yes votes against a baseline of 100 votes."""
        inputs = [
            DelegateInput("busy", info=DelegateInfo(drep_id="busy"), votes=votes_for("busy", 100, VoteDecision.NO)),
            DelegateInput("stamper", info=DelegateInfo(drep_id="stamper"), votes=votes_for("stamper", 50)),
        ]
        assert participation_baseline(inputs) == 100

        busy, stamper = enrich_delegates(inputs, current_epoch=500, now=NOW)
        assert stamper.participation_rate == 50
        assert stamper.deliberation_modifier == 0.70
        assert stamper.effective_participation == 35
        assert stamper.rationale_rate == 0
        assert busy.participation_rate == 100

    def test_baseline_is_shared(self):
        """Test adding a busier delegate lowers everyone else's participation."""
        small = DelegateInput("a", votes=votes_for("a", 10))
        alone = enrich_delegates([small], current_epoch=500, now=NOW)[0]
        together = enrich_delegates([small, DelegateInput("b", votes=votes_for("b", 40))], 500, now=NOW)[0]
        assert alone.participation_rate == 100
        assert together.participation_rate == 25

    def test_profile_and_power(self):
        """Test declared metadata and voting power flow into the delegate."""
        item = DelegateInput(
            "drep1",
            info=DelegateInfo(drep_id="drep1", amount=25_000_000 * 1_000_000, registered=True),
            metadata=DelegateMetadata(drep_id="drep1", meta_json={"body": {"givenName": {"@value": "Alice"}}}),
            votes=votes_for("drep1", 3),
        )
        delegate = enrich_delegates([item], current_epoch=500, now=NOW)[0]
        assert delegate.name == "Alice"
        assert delegate.size_tier is SizeTier.LARGE
        assert delegate.profile_completeness == 15
        assert delegate.total_votes == 3
        assert delegate.yes_votes == 3
        assert delegate.updated_at == NOW

    def test_broken_links_lower_completeness(self):
        """Test links flagged broken for a delegate do not earn link points."""
        meta = {"givenName": "Alice", "references": [{"uri": "https://github.com/alice"}]}
        item = DelegateInput(
            "drep1",
            info=DelegateInfo(drep_id="drep1"),
            metadata=DelegateMetadata(drep_id="drep1", meta_json=meta),
            broken_links=frozenset({"https://github.com/alice"}),
        )
        assert enrich_delegates([item], current_epoch=500, now=NOW)[0].profile_completeness == 15

    def test_resolved_text_changes_rationale_rate(self):
        """Test fetched rationale shorter than the minimum stops counting."""
        votes = [v.model_copy(update={"meta_url": "ipfs://Qm"}) for v in votes_for("d", 2)]
        item = DelegateInput("d", votes=votes)
        unresolved = enrich_delegates([item], 500, now=NOW)[0]
        resolved = enrich_delegates([item], 500, resolved_texts={"d-0": "short"}, now=NOW)[0]
        assert unresolved.rationale_rate == 100
        assert resolved.rationale_rate == 50

    def test_no_votes(self):
        """Test a delegate without votes scores zero across the board."""
        delegate = enrich_delegates([DelegateInput("quiet")], current_epoch=500, now=NOW)[0]
        assert delegate.score == 0
        assert delegate.first_vote_epoch is None
        assert delegate.last_vote_time is None
