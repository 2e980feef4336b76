"""
HTTP client for the upstream governance read API.

Provides batched and paginated access to delegate registry entries,
delegate metadata, vote lists, proposal lists and voting-power history.
429 responses and timeouts are retried under a shared RetryPolicy; every
other non-2xx response raises UpstreamError immediately.
"""
import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from govscore.config.settings import (
    UPSTREAM_API_KEY,
    UPSTREAM_BASE_URL,
    UPSTREAM_PAGE_SIZE,
    UPSTREAM_TIMEOUT_SECONDS,
)
from govscore.config.sync_settings import SyncSettings
from govscore.data_models.upstream_schemas import (
    DelegateInfo,
    DelegateListItem,
    DelegateMetadata,
    PowerHistoryEntry,
    UpstreamProposal,
    UpstreamVote,
    validate_records,
)
from govscore.exceptions import (
    UpstreamError,
    UpstreamRateLimitError,
    UpstreamTimeoutError,
)
from govscore.utils.batching import chunked, gather_bounded
from govscore.utils.logger import logger
from govscore.utils.retry import RetryPolicy


@dataclass
class DelegateBatch:
    """Registry info and declared metadata for a set of delegates, keyed by id."""
    info: Dict[str, DelegateInfo] = field(default_factory=dict)
    metadata: Dict[str, DelegateMetadata] = field(default_factory=dict)
    failed_ids: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


class UpstreamClient:
    """
    Async client for the upstream governance API.

    Use as an async context manager so the underlying connection pool is
    closed when the sync run finishes.
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = None,
        vote_concurrency: int = None,
        inter_batch_delay: float = None,
        page_size: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or UPSTREAM_BASE_URL).rstrip("/")
        headers = {"Accept": "application/json"}
        api_key = api_key or UPSTREAM_API_KEY
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or UPSTREAM_TIMEOUT_SECONDS,
            transport=transport,
        )

        if retry_policy is None:
            retry = SyncSettings.get_retry_config()
            retry_policy = RetryPolicy(
                max_retries=retry["max_retries"],
                base_delay=retry["base_delay_ms"] / 1000,
                name="upstream",
            )
        self.retry_policy = retry_policy
        self.batch_size = batch_size or SyncSettings.get_upstream_batch_size()
        self.vote_concurrency = vote_concurrency or SyncSettings.get_vote_concurrency()
        self.inter_batch_delay = (
            SyncSettings.get_inter_batch_delay() if inter_batch_delay is None else inter_batch_delay
        )
        self.page_size = page_size or UPSTREAM_PAGE_SIZE
        self._metrics = {"requests": 0, "rate_limited": 0, "timeouts": 0, "errors": 0}

    async def __aenter__(self) -> "UpstreamClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def get_metrics(self) -> Dict[str, int]:
        return dict(self._metrics)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _handle_response(self, response: httpx.Response, path: str) -> Any:
        """
        Parse a response body or raise the matching UpstreamError.

        Raises:
            UpstreamRateLimitError: on 429, so the retry policy can back off
            UpstreamError: on any other non-2xx status or an unparsable body
        """
        if response.status_code == 429:
            self._metrics["rate_limited"] += 1
            retry_after = response.headers.get("Retry-After")
            raise UpstreamRateLimitError(
                f"Rate limited on {path}",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if response.status_code >= 400:
            raise UpstreamError(
                f"Upstream error {response.status_code} on {path}: {response.text[:200]}",
                status_code=response.status_code,
                response=response,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(
                f"Invalid JSON from {path}: {e}",
                status_code=response.status_code,
                response=response,
            ) from e

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        async def _attempt():
            self._metrics["requests"] += 1
            try:
                response = await self.client.request(method, path, params=params, json=json)
            except httpx.TimeoutException as e:
                self._metrics["timeouts"] += 1
                raise UpstreamTimeoutError(f"{method} {path} timed out: {e}") from e
            except httpx.HTTPError as e:
                raise UpstreamError(f"{method} {path} failed: {e}") from e
            return self._handle_response(response, path)

        try:
            return await self.retry_policy.run(_attempt)
        except UpstreamError as e:
            self._metrics["errors"] += 1
            logger.error("[Upstream] %s %s failed: %s", method, path, e.message)
            raise

    async def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Any]:
        """Collect every page of a GET endpoint using offset/limit paging."""
        rows: List[Any] = []
        offset = 0
        while True:
            page_params = dict(params or {})
            page_params.update({"offset": offset, "limit": self.page_size})
            page = await self._request("GET", path, params=page_params)
            if not isinstance(page, list):
                raise UpstreamError(f"Expected a list from {path}, got {type(page).__name__}")
            rows.extend(page)
            if len(page) < self.page_size:
                return rows
            offset += self.page_size
            if self.inter_batch_delay:
                await asyncio.sleep(self.inter_batch_delay)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def health_check(self) -> bool:
        """Liveness check against the chain tip. Never raises."""
        try:
            response = await self.client.get("/tip")
            if response.status_code != 200:
                logger.error("[Upstream] Health check returned %s", response.status_code)
                return False
            data = response.json()
            return isinstance(data, list) and len(data) > 0
        except Exception as e:
            logger.error("[Upstream] Health check failed: %s", e)
            return False

    async def fetch_delegate_list(self) -> List[DelegateListItem]:
        rows = await self._paginate("/drep_list")
        return validate_records(rows, DelegateListItem, "drep_list").valid

    async def fetch_batch(self, ids: Sequence[str], batch_size: int = None) -> DelegateBatch:
        """
        Fetch registry info and metadata for `ids`, at most `batch_size` per request.

        A failed chunk is recorded on the result and does not stop the others.
        """
        batch_size = batch_size or self.batch_size
        result = DelegateBatch()
        chunks = list(chunked(list(ids), batch_size))

        for position, chunk in enumerate(chunks):
            payload = {"_drep_ids": chunk}
            try:
                info_rows, metadata_rows = await asyncio.gather(
                    self._request("POST", "/drep_info", json=payload),
                    self._request("POST", "/drep_metadata", json=payload),
                )
            except UpstreamError as e:
                result.failed_ids.extend(chunk)
                result.errors.append(e.message)
                logger.warning("[Upstream] Batch %d/%d failed: %s", position + 1, len(chunks), e.message)
            else:
                for info in validate_records(info_rows, DelegateInfo, "drep_info").valid:
                    result.info[info.drep_id] = info
                for meta in validate_records(metadata_rows, DelegateMetadata, "drep_metadata").valid:
                    result.metadata[meta.drep_id] = meta

            if self.inter_batch_delay and position < len(chunks) - 1:
                await asyncio.sleep(self.inter_batch_delay)

        logger.info(
            "[Upstream] Fetched info for %d/%d delegates in %d batches",
            len(result.info), len(ids), len(chunks),
        )
        return result

    async def fetch_votes(self, delegate_id: str) -> List[UpstreamVote]:
        rows = await self._request("POST", "/drep_votes", json={"_drep_id": delegate_id})
        votes = validate_records(rows, UpstreamVote, "drep_votes").valid
        for vote in votes:
            vote.voter_id = delegate_id
        return votes

    async def fetch_votes_for_delegates(self, ids: Sequence[str]) -> Dict[str, List[UpstreamVote]]:
        """Per-delegate vote lists with bounded fan-out; a failed delegate maps to []."""
        results = await gather_bounded(ids, self.fetch_votes, self.vote_concurrency)
        votes_by_delegate: Dict[str, List[UpstreamVote]] = {}
        for delegate_id, outcome in zip(ids, results):
            if isinstance(outcome, Exception):
                logger.warning("[Upstream] Votes for %s unavailable: %s", delegate_id, outcome)
                votes_by_delegate[delegate_id] = []
            else:
                votes_by_delegate[delegate_id] = outcome
        return votes_by_delegate

    async def fetch_all_votes_bulk(self) -> Dict[str, List[UpstreamVote]]:
        """Every delegate vote from the bulk vote list, grouped by voter id."""
        rows = await self._paginate("/vote_list", params={"voter_role": "eq.DRep"})
        grouped: Dict[str, List[UpstreamVote]] = defaultdict(list)
        for vote in validate_records(rows, UpstreamVote, "vote_list").valid:
            if vote.voter_id:
                grouped[vote.voter_id].append(vote)
        logger.info("[Upstream] Bulk vote list: %d votes across %d delegates", len(rows), len(grouped))
        return dict(grouped)

    async def fetch_proposals(self) -> List[UpstreamProposal]:
        rows = await self._paginate("/proposal_list")
        return validate_records(rows, UpstreamProposal, "proposal_list").valid

    async def fetch_power_history(self, delegate_id: str) -> List[PowerHistoryEntry]:
        rows = await self._request(
            "GET", "/drep_voting_power_history", params={"_drep_id": delegate_id}
        )
        return validate_records(rows, PowerHistoryEntry, "drep_voting_power_history").valid

    async def fetch_delegator_count(self, delegate_id: str) -> int:
        rows = await self._paginate("/drep_delegators", params={"_drep_id": delegate_id})
        return len(rows)
