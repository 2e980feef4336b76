"""Unit tests for rationale fetching, driven through an httpx mock transport."""
import asyncio
import hashlib
import json
from unittest.mock import AsyncMock

import httpx

from govscore.data_models.governance import Vote, VoteDecision
from govscore.services.rationale_fetcher import (
    RationaleFetcher,
    extract_rationale_text,
    resolve_url,
    verify_hash,
)
from govscore.utils.retry import RetryPolicy


def make_vote(tx="v1", meta_url="https://example.org/r.json", meta_hash=None):
    return Vote(
        vote_tx_hash=tx,
        delegate_id="drep1",
        proposal_tx_hash="p1",
        proposal_index=0,
        decision=VoteDecision.NO,
        epoch_no=500,
        block_time=1_700_000_000,
        meta_url=meta_url,
        meta_hash=meta_hash,
    )


def fetcher_for(handler, **kwargs):
    policy = RetryPolicy(max_retries=1, base_delay=1.0, name="test", sleep=AsyncMock())
    return RationaleFetcher(transport=httpx.MockTransport(handler), retry_policy=policy, **kwargs)


def run_fetch(fetcher, vote):
    async def _run():
        async with fetcher:
            return await fetcher.fetch(vote)
    return asyncio.run(_run())


class TestExtraction:
    """Test text extraction from fetched documents."""

    def test_body_keys_in_order(self):
        """Test body comment beats body rationale and top-level fields."""
        doc = {"body": {"rationale": "second", "comment": {"@value": "first"}}, "rationale": "top"}
        assert extract_rationale_text(json.dumps(doc)) == "first"

    def test_top_level_fallback(self):
        """Test top-level keys are searched when the body has nothing."""
        doc = {"body": {"title": "x"}, "justification": ["Because of the audit"]}
        assert extract_rationale_text(json.dumps(doc)) == "Because of the audit"

    def test_plain_text_accepted(self):
        """Test a non-JSON plain-text document is used as-is."""
        assert extract_rationale_text("  I voted no because the budget is unclear.  ") == (
            "I voted no because the budget is unclear."
        )

    def test_html_rejected(self):
        """Test HTML pages are not treated as rationale."""
        assert extract_rationale_text("<!DOCTYPE html><html><body>Gateway error</body></html>") is None

    def test_json_without_rationale(self):
        """Test JSON lacking every known key yields None."""
        assert extract_rationale_text(json.dumps({"hello": "world"})) is None
        assert extract_rationale_text("[1, 2]") is None


class TestHelpers:
    """Test URL rewriting and hash checks."""

    def test_ipfs_rewrite(self):
        """Test ipfs:// URLs go through the gateway and others pass through."""
        assert resolve_url("ipfs://QmCid", "https://ipfs.io/ipfs/") == "https://ipfs.io/ipfs/QmCid"
        assert resolve_url("https://a.org/x") == "https://a.org/x"

    def test_verify_hash(self):
        """Test blake2b-256 comparison is case-insensitive and None when undeclared."""
        raw = b"rationale"
        digest = hashlib.blake2b(raw, digest_size=32).hexdigest()
        assert verify_hash(raw, digest.upper()) is True
        assert verify_hash(raw, "00" * 32) is False
        assert verify_hash(raw, None) is None


class TestRationaleFetcher:
    """Test fetching against a mock transport."""

    def test_successful_fetch_with_hash(self):
        """Test a JSON document is parsed and its hash verified."""
        raw = json.dumps({"body": {"comment": "The treasury ask is too large for the scope."}}).encode()
        digest = hashlib.blake2b(raw, digest_size=32).hexdigest()
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, content=raw)

        fetcher = fetcher_for(handler)
        rationale = run_fetch(fetcher, make_vote(meta_url="ipfs://QmCid", meta_hash=digest))
        assert requested == ["https://ipfs.io/ipfs/QmCid"]
        assert rationale.rationale_text == "The treasury ask is too large for the scope."
        assert rationale.hash_verified is True
        assert fetcher.get_metrics() == {"fetched": 1, "misses": 0}

    def test_declared_size_over_limit(self):
        """Test a Content-Length above the cap is refused."""
        fetcher = fetcher_for(lambda request: httpx.Response(200, content=b"a" * 200), max_bytes=100)
        assert run_fetch(fetcher, make_vote()) is None
        assert fetcher.get_metrics()["misses"] == 1

    def test_streamed_body_over_limit(self):
        """Test a body without Content-Length is cut off once it passes the cap."""
        async def body():
            yield b"a" * 60
            yield b"a" * 60

        fetcher = fetcher_for(lambda request: httpx.Response(200, content=body()), max_bytes=100)
        assert run_fetch(fetcher, make_vote()) is None

    def test_retryable_status_retried_once(self):
        """Test a 503 is retried once before giving up."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        fetcher = fetcher_for(handler)
        assert run_fetch(fetcher, make_vote()) is None
        assert len(calls) == 2

    def test_not_found_not_retried(self):
        """Test a 404 gives up immediately."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        assert run_fetch(fetcher_for(handler), make_vote()) is None
        assert len(calls) == 1

    def test_timeout_is_a_miss(self):
        """Test a transport timeout resolves to None."""
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        assert run_fetch(fetcher_for(handler), make_vote()) is None

    def test_vote_without_url(self):
        """Test votes without a URL are skipped without a request."""
        fetcher = fetcher_for(lambda request: httpx.Response(500))
        assert run_fetch(fetcher, make_vote(meta_url=None)) is None
        assert fetcher.get_metrics() == {"fetched": 0, "misses": 0}

    def test_fetch_many_drops_misses(self):
        """Test only resolved rationales are returned."""
        def handler(request):
            if request.url.path.endswith("good.txt"):
                return httpx.Response(200, text="Plain-text rationale that explains the vote.")
            return httpx.Response(200, text="<html>nope</html>")

        fetcher = fetcher_for(handler)
        votes = [make_vote("a", "https://x.org/good.txt"), make_vote("b", "https://x.org/bad.html")]

        async def _run():
            async with fetcher:
                return await fetcher.fetch_many(votes, concurrency=2)

        resolved = asyncio.run(_run())
        assert [r.vote_tx_hash for r in resolved] == ["a"]
        assert resolved[0].hash_verified is None
