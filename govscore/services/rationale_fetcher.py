"""
Off-chain vote rationale resolution.

A vote may anchor its rationale at a URL (often `ipfs://`). The fetcher
downloads the document under a short timeout and a hard size cap, pulls
the rationale text out of the common JSON layouts (or accepts plain text),
and checks the raw bytes against the vote's declared blake2b-256 hash.

Every failure (timeout, non-2xx, oversized, HTML, no recognisable text)
resolves to None. A missing rationale is a permanent outcome for that sync,
never an error for the caller.
"""
import hashlib
import json
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

import httpx

from govscore.config.settings import (
    IPFS_GATEWAY,
    RATIONALE_FETCH_TIMEOUT_SECONDS,
    RATIONALE_MAX_CONTENT_BYTES,
)
from govscore.config.sync_settings import SyncSettings
from govscore.data_models.governance import Vote, VoteRationale
from govscore.exceptions import RationaleFetchError
from govscore.utils.batching import gather_bounded
from govscore.utils.logger import logger
from govscore.utils.retry import RetryPolicy

BODY_RATIONALE_KEYS = ("comment", "rationale", "motivation")
TOP_LEVEL_RATIONALE_KEYS = ("rationale", "motivation", "justification", "reason", "comment")
RETRYABLE_STATUS_CODES = (429, 502, 503)


def resolve_url(url: str, gateway: str = IPFS_GATEWAY) -> str:
    """Rewrite `ipfs://<cid>` to an HTTP gateway URL; other URLs pass through."""
    if url.startswith("ipfs://"):
        return gateway.rstrip("/") + "/" + url[len("ipfs://"):]
    return url


def json_ld_string(value: Any) -> Optional[str]:
    """A non-empty string from a plain value, a `{"@value": ...}` wrapper or the first list item."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict) and "@value" in value:
        inner = value["@value"]
        return (inner.strip() or None) if isinstance(inner, str) else None
    if isinstance(value, list) and value:
        return json_ld_string(value[0])
    return None


def extract_rationale_text(text: str) -> Optional[str]:
    """
    Pull rationale text out of a fetched document.

    JSON documents are searched under `body` first (comment, rationale,
    motivation), then at the top level. Anything that is not JSON is
    accepted as plain text unless it looks like an HTML page.
    """
    try:
        document = json.loads(text)
    except ValueError:
        stripped = text.strip()
        if stripped and "<!DOCTYPE" not in text and "<html" not in text:
            return stripped
        return None

    if isinstance(document, dict):
        body = document.get("body")
        if isinstance(body, dict):
            for key in BODY_RATIONALE_KEYS:
                found = json_ld_string(body.get(key))
                if found:
                    return found
        for key in TOP_LEVEL_RATIONALE_KEYS:
            found = json_ld_string(document.get(key))
            if found:
                return found
        return None
    if isinstance(document, str):
        return document.strip() or None
    return None


def verify_hash(raw: bytes, expected: Optional[str]) -> Optional[bool]:
    """blake2b-256 of the raw bytes against the declared hex hash; None when nothing was declared."""
    if not expected:
        return None
    return hashlib.blake2b(raw, digest_size=32).hexdigest() == expected.strip().lower()


class RationaleFetcher:
    """Fetch and parse rationale documents for votes that anchor one by URL."""

    def __init__(
        self,
        timeout: float = None,
        max_bytes: int = None,
        gateway: str = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.max_bytes = max_bytes or RATIONALE_MAX_CONTENT_BYTES
        self.gateway = gateway or IPFS_GATEWAY
        self.retry_policy = retry_policy or RetryPolicy(max_retries=1, base_delay=1.0, name="rationale")
        self.client = httpx.AsyncClient(
            timeout=timeout or RATIONALE_FETCH_TIMEOUT_SECONDS,
            headers={"Accept": "application/json, text/plain, */*"},
            follow_redirects=True,
            transport=transport,
        )
        self.fetched = 0
        self.misses = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _download(self, url: str) -> bytes:
        try:
            async with self.client.stream("GET", url) as response:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise RationaleFetchError(f"HTTP {response.status_code}", url=url, retryable=True)
                if response.status_code >= 400:
                    raise RationaleFetchError(f"HTTP {response.status_code}", url=url)

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self.max_bytes:
                    raise RationaleFetchError(f"declared size {declared} exceeds {self.max_bytes}", url=url)

                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise RationaleFetchError(f"body exceeds {self.max_bytes} bytes", url=url)
                return bytes(body)
        except httpx.TimeoutException as e:
            raise RationaleFetchError(f"timed out: {e}", url=url) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise RationaleFetchError(f"request failed: {e}", url=url) from e

    async def fetch_document(self, url: str) -> Optional[bytes]:
        """Raw document bytes, or None when the URL cannot be resolved within limits."""
        fetch_url = resolve_url(url, self.gateway)
        try:
            return await self.retry_policy.run(lambda: self._download(fetch_url))
        except RationaleFetchError as e:
            logger.debug("[Rationale] %s: %s", fetch_url, e.message)
            return None

    async def fetch(self, vote: Vote) -> Optional[VoteRationale]:
        if not vote.meta_url:
            return None

        raw = await self.fetch_document(vote.meta_url)
        text = extract_rationale_text(raw.decode("utf-8", errors="replace")) if raw is not None else None
        if not text:
            self.misses += 1
            return None

        self.fetched += 1
        return VoteRationale(
            vote_tx_hash=vote.vote_tx_hash,
            delegate_id=vote.delegate_id,
            meta_url=vote.meta_url,
            rationale_text=text,
            hash_verified=verify_hash(raw, vote.meta_hash),
            fetched_at=datetime.now(timezone.utc),
        )

    async def fetch_many(self, votes: Sequence[Vote], concurrency: int = None) -> List[VoteRationale]:
        """Resolve rationales for votes with bounded concurrency; misses are dropped."""
        concurrency = concurrency or SyncSettings.get_rationale_concurrency()
        outcomes = await gather_bounded(votes, self.fetch, concurrency)
        resolved: List[VoteRationale] = []
        for vote, outcome in zip(votes, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("[Rationale] %s failed unexpectedly: %s", vote.vote_tx_hash, outcome)
                self.misses += 1
            elif outcome is not None:
                resolved.append(outcome)
        logger.info("[Rationale] resolved %d of %d rationale URLs", len(resolved), len(votes))
        return resolved

    def get_metrics(self) -> dict:
        return {"fetched": self.fetched, "misses": self.misses}
