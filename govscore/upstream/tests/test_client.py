"""Unit tests for the upstream API client using an httpx mock transport."""
import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from govscore.exceptions import UpstreamError, UpstreamRateLimitError, UpstreamTimeoutError
from govscore.upstream.client import UpstreamClient
from govscore.utils.retry import RetryPolicy


def make_client(handler, **kwargs):
    sleep = AsyncMock()
    policy = RetryPolicy(max_retries=3, base_delay=1.0, name="test", sleep=sleep)
    client = UpstreamClient(
        base_url="https://upstream.test/api/v1",
        api_key="secret",
        retry_policy=policy,
        inter_batch_delay=0,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )
    return client, sleep


def run(client, coro_factory):
    async def _run():
        async with client:
            return await coro_factory(client)
    return asyncio.run(_run())


def vote_row(tx, voter="drep1", vote="Yes"):
    return {
        "vote_tx_hash": tx,
        "voter_id": voter,
        "proposal_tx_hash": "p1",
        "proposal_index": 0,
        "vote": vote,
        "block_time": 1_700_000_000,
    }


class TestRetries:
    """Test retry behaviour on rate limits and errors."""

    def test_rate_limit_backoff_schedule(self):
        """Test persistent 429s back off 1s, 2s, 4s and then raise."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429)

        client, sleep = make_client(handler)
        with pytest.raises(UpstreamRateLimitError):
            run(client, lambda c: c.fetch_power_history("drep1"))
        assert len(calls) == 4
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 4.0]
        assert client.get_metrics()["rate_limited"] == 4

    def test_rate_limit_recovers(self):
        """Test a single 429 followed by success returns the data."""
        responses = [httpx.Response(429), httpx.Response(200, json=[{"epoch_no": 500, "amount": "42"}])]

        client, sleep = make_client(lambda request: responses.pop(0))
        history = run(client, lambda c: c.fetch_power_history("drep1"))
        assert [(h.epoch_no, h.amount) for h in history] == [(500, 42)]
        assert sleep.await_count == 1

    def test_server_error_not_retried(self):
        """Test a 500 raises immediately without backoff."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        client, sleep = make_client(handler)
        with pytest.raises(UpstreamError) as exc_info:
            run(client, lambda c: c.fetch_power_history("drep1"))
        assert exc_info.value.status_code == 500
        assert len(calls) == 1
        sleep.assert_not_awaited()

    def test_timeouts_retried_then_raised(self):
        """Test repeated timeouts surface as UpstreamTimeoutError."""
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        client, sleep = make_client(handler)
        with pytest.raises(UpstreamTimeoutError):
            run(client, lambda c: c.fetch_power_history("drep1"))
        assert sleep.await_count == 3

    def test_auth_header(self):
        """Test the API key is sent as a bearer token."""
        seen = []

        def handler(request):
            seen.append(request.headers.get("Authorization"))
            return httpx.Response(200, json=[])

        client, _ = make_client(handler)
        run(client, lambda c: c.fetch_power_history("drep1"))
        assert seen == ["Bearer secret"]


class TestHealthCheck:
    """Test the liveness check."""

    def test_healthy(self):
        """Test a non-empty tip response is healthy."""
        client, _ = make_client(lambda request: httpx.Response(200, json=[{"epoch_no": 500}]))
        assert run(client, lambda c: c.health_check()) is True

    @pytest.mark.parametrize("response", [
        httpx.Response(503),
        httpx.Response(200, json=[]),
        httpx.Response(200, text="not json"),
    ])
    def test_unhealthy(self, response):
        """Test error statuses, empty tips and bad bodies are unhealthy."""
        client, _ = make_client(lambda request: response)
        assert run(client, lambda c: c.health_check()) is False


class TestEndpoints:
    """Test batching, pagination and validation."""

    def test_fetch_batch_isolates_failed_chunk(self):
        """Test a failing chunk is recorded while other chunks succeed."""
        def handler(request):
            ids = json.loads(request.content)["_drep_ids"]
            if "bad" in ids:
                return httpx.Response(400, text="invalid id")
            if request.url.path.endswith("/drep_info"):
                return httpx.Response(200, json=[{"drep_id": i, "amount": "1000"} for i in ids])
            return httpx.Response(200, json=[{"drep_id": i, "meta_json": {"givenName": i}} for i in ids])

        client, _ = make_client(handler, batch_size=2)
        batch = run(client, lambda c: c.fetch_batch(["a", "b", "bad", "c"]))
        assert sorted(batch.info) == ["a", "b"]
        assert sorted(batch.metadata) == ["a", "b"]
        assert batch.failed_ids == ["bad", "c"]
        assert len(batch.errors) == 1
        assert batch.info["a"].amount == 1000

    def test_pagination(self):
        """Test pages are requested until a short page arrives."""
        offsets = []

        def handler(request):
            offset = int(request.url.params["offset"])
            offsets.append(offset)
            rows = [{"drep_id": f"d{offset + i}"} for i in range(2 if offset < 4 else 1)]
            return httpx.Response(200, json=rows)

        client, _ = make_client(handler, page_size=2)
        delegates = run(client, lambda c: c.fetch_delegate_list())
        assert offsets == [0, 2, 4]
        assert [d.drep_id for d in delegates] == ["d0", "d1", "d2", "d3", "d4"]

    def test_bulk_votes_grouped_and_validated(self):
        """Test bulk votes are grouped by voter and malformed rows dropped."""
        rows = [vote_row("v1"), vote_row("v2", "drep2", "No"), vote_row("v3", vote="Maybe")]
        client, _ = make_client(lambda request: httpx.Response(200, json=rows))
        grouped = run(client, lambda c: c.fetch_all_votes_bulk())
        assert {k: [v.vote_tx_hash for v in vs] for k, vs in grouped.items()} == {"drep1": ["v1"], "drep2": ["v2"]}

    def test_votes_for_delegates_tolerates_failures(self):
        """Test a delegate whose vote list fails maps to an empty list."""
        def handler(request):
            delegate_id = json.loads(request.content)["_drep_id"]
            if delegate_id == "broken":
                return httpx.Response(404)
            row = vote_row(f"v-{delegate_id}")
            del row["voter_id"]
            return httpx.Response(200, json=[row])

        client, _ = make_client(handler, vote_concurrency=2)
        votes = run(client, lambda c: c.fetch_votes_for_delegates(["ok", "broken"]))
        assert votes["broken"] == []
        assert votes["ok"][0].voter_id == "ok"

    def test_non_list_page_rejected(self):
        """Test an object where a list was expected raises UpstreamError."""
        client, _ = make_client(lambda request: httpx.Response(200, json={"error": "nope"}))
        with pytest.raises(UpstreamError):
            run(client, lambda c: c.fetch_proposals())
