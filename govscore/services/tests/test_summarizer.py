"""Unit tests for summary prompts, cleanup and the langchain-backed summarizer."""
import asyncio

from langchain_core.messages import AIMessage

from govscore.data_models.governance import Proposal, ProposalType, Vote, VoteDecision
from govscore.services.summarizer import (
    LangChainSummarizer,
    build_proposal_prompt,
    build_rationale_prompt,
    clean_summary,
    truncate_to_word_boundary,
)


class FakeChatModel:
    """Stands in for a chat model; only `ainvoke` is used."""

    def __init__(self, content=None, delay=0.0, error=None):
        self.content = content
        self.delay = delay
        self.error = error
        self.calls = []

    async def ainvoke(self, messages):
        self.calls.append(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return AIMessage(content=self.content)


class TestCleanSummary:
    """Test summary post-processing."""

    def test_truncates_at_word_boundary(self):
        """Test long text is cut at the last space before the limit."""
        assert truncate_to_word_boundary("alpha beta gamma", 12) == "alpha beta"
        assert truncate_to_word_boundary("short", 12) == "short"

    def test_strips_urls_and_whitespace(self):
        """Test links are removed and whitespace collapsed."""
        text = "Funds  tooling   https://x.org/doc and ipfs://QmCid  for devs"
        assert clean_summary(text) == "Funds tooling and for devs"

    def test_empty(self):
        """Test empty or link-only output yields None."""
        assert clean_summary("") is None
        assert clean_summary("https://only.link") is None

    def test_never_exceeds_limit(self):
        """Test the cleaned summary respects the 160 character cap."""
        assert len(clean_summary("word " * 100)) <= 160


class TestPrompts:
    """Test prompt construction."""

    def test_proposal_prompt(self):
        """Test withdrawal amounts and trimmed descriptions are included."""
        proposal = Proposal(
            tx_hash="p1", proposal_index=0, proposal_type=ProposalType.TREASURY_WITHDRAWALS,
            title="Dev grants", withdrawal_amount=2_000_000, proposed_epoch=500, block_time=0,
        )
        prompt = build_proposal_prompt(proposal, "d" * 5000)
        assert "Title: Dev grants" in prompt
        assert "Amount: 2,000,000 ADA" in prompt
        assert "d" * 2001 not in prompt

    def test_rationale_prompt(self):
        """Test the vote decision and a placeholder title appear."""
        vote = Vote(
            vote_tx_hash="v1", delegate_id="d", proposal_tx_hash="abcdef123456", proposal_index=2,
            decision=VoteDecision.ABSTAIN, epoch_no=500, block_time=0,
        )
        prompt = build_rationale_prompt(vote, "Because")
        assert "voting Abstain" in prompt
        assert '"abcdef12#2"' in prompt


class TestLangChainSummarizer:
    """Test the summarizer around a fake chat model."""

    def test_summary_is_cleaned(self):
        """Test model output passes through clean_summary."""
        llm = FakeChatModel("Funds a   dev program. See https://x.org")
        summary = asyncio.run(LangChainSummarizer(llm).summarize("proposal", "prompt"))
        assert summary == "Funds a dev program. See"
        assert len(llm.calls[0]) == 2

    def test_timeout_returns_none(self):
        """Test a slow model yields None instead of raising."""
        llm = FakeChatModel("late", delay=1.0)
        assert asyncio.run(LangChainSummarizer(llm, timeout=0.01).summarize("proposal", "prompt")) is None

    def test_error_returns_none(self):
        """Test a model error yields None."""
        llm = FakeChatModel(error=RuntimeError("quota"))
        assert asyncio.run(LangChainSummarizer(llm).summarize("rationale", "prompt")) is None
