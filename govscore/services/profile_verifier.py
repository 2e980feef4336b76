"""
Delegate profile verification.

Two checks back the declared profile with something observable: each
declared social link gets a HEAD request (non-2xx or no answer marks it
broken, and broken links earn no profile points), and the metadata anchor
document is downloaded and checked against its declared blake2b-256 hash.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import httpx

from govscore.config.settings import (
    LINK_CHECK_TIMEOUT_SECONDS,
    LINK_CHECK_USER_AGENT,
    METADATA_MAX_CONTENT_BYTES,
)
from govscore.config.sync_settings import SyncSettings
from govscore.data_models.governance import LinkStatus, SocialLinkCheck
from govscore.services.rationale_fetcher import RationaleFetcher, verify_hash
from govscore.utils.batching import gather_bounded
from govscore.utils.logger import logger
from govscore.utils.retry import RetryPolicy

DelegateLink = Tuple[str, str]
MetadataAnchor = Tuple[str, str]


def group_broken_links(checks: Iterable[SocialLinkCheck]) -> Dict[str, FrozenSet[str]]:
    """Broken link URIs per delegate."""
    broken = defaultdict(set)
    for check in checks:
        if check.status is LinkStatus.BROKEN:
            broken[check.delegate_id].add(check.uri)
    return {delegate_id: frozenset(uris) for delegate_id, uris in broken.items()}


class ProfileVerifier:
    """HEAD-checks profile links and hash-verifies metadata anchors."""

    def __init__(
        self,
        timeout: float = None,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        timeout = timeout or LINK_CHECK_TIMEOUT_SECONDS
        self.client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": LINK_CHECK_USER_AGENT},
            follow_redirects=True,
            transport=transport,
        )
        self.documents = RationaleFetcher(
            timeout=timeout,
            max_bytes=METADATA_MAX_CONTENT_BYTES,
            retry_policy=retry_policy,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()
        await self.documents.aclose()

    async def check_link(self, delegate_id: str, uri: str) -> SocialLinkCheck:
        status, http_status = LinkStatus.BROKEN, None
        try:
            response = await self.client.head(uri)
            http_status = response.status_code
            if response.is_success:
                status = LinkStatus.VALID
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug("[Profile] HEAD %s failed: %s", uri, e)
        return SocialLinkCheck(
            delegate_id=delegate_id,
            uri=uri,
            status=status,
            http_status=http_status,
            last_checked_at=datetime.now(timezone.utc),
        )

    async def check_links(self, links: Sequence[DelegateLink], concurrency: int = None) -> List[SocialLinkCheck]:
        concurrency = concurrency or SyncSettings.get_profile_concurrency()
        outcomes = await gather_bounded(links, lambda link: self.check_link(*link), concurrency)
        checks = []
        for (delegate_id, uri), outcome in zip(links, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("[Profile] Link check %s for %s failed unexpectedly: %s", uri, delegate_id, outcome)
                continue
            checks.append(outcome)
        broken = sum(1 for c in checks if c.status is LinkStatus.BROKEN)
        logger.info("[Profile] checked %d links, %d broken", len(checks), broken)
        return checks

    async def verify_metadata(self, anchor_url: str, anchor_hash: str) -> Optional[bool]:
        """Whether the anchor document matches its declared hash; None when it could not be fetched."""
        raw = await self.documents.fetch_document(anchor_url)
        if raw is None:
            return None
        return verify_hash(raw, anchor_hash)

    async def verify_many(self, anchors: Dict[str, MetadataAnchor], concurrency: int = None) -> Dict[str, bool]:
        """Verification outcome per delegate; anchors that could not be fetched are left out."""
        concurrency = concurrency or SyncSettings.get_profile_concurrency()
        delegate_ids = list(anchors)
        outcomes = await gather_bounded(
            delegate_ids, lambda delegate_id: self.verify_metadata(*anchors[delegate_id]), concurrency
        )
        results: Dict[str, bool] = {}
        for delegate_id, outcome in zip(delegate_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("[Profile] Metadata check for %s failed unexpectedly: %s", delegate_id, outcome)
            elif outcome is not None:
                results[delegate_id] = outcome
                if not outcome:
                    logger.warning("[Profile] Metadata hash mismatch for %s", delegate_id)
        return results
