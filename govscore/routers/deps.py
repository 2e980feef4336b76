import threading
from typing import List, Optional

from govscore.data_models.governance import Delegate
from govscore.services.delegate_cache import DelegateCache
from govscore.services.store import GovernanceStore
from govscore.services.store_factory import get_store
from govscore.sync.orchestrator import SyncOrchestrator
from govscore.upstream.client import UpstreamClient
from govscore.utils.logger import logger

# Global cache instance for lazy initialization
_delegate_cache: Optional[DelegateCache] = None
_cache_lock = threading.Lock()


async def compute_delegates_live() -> List[Delegate]:
    """Score every delegate straight from the upstream API. Slow; used only when the snapshot is empty."""
    async with UpstreamClient() as client:
        return await SyncOrchestrator(client, get_store()).score_live()


def get_governance_store() -> GovernanceStore:
    return get_store()


def get_delegate_cache() -> DelegateCache:
    """Get or create the delegate cache with lazy initialization."""
    global _delegate_cache

    if _delegate_cache is None:
        with _cache_lock:
            # Double-check pattern to avoid race conditions
            if _delegate_cache is None:
                logger.info("[Cache] Initializing delegate cache")
                _delegate_cache = DelegateCache(get_store(), live_loader=compute_delegates_live)
    return _delegate_cache


def set_delegate_cache(cache: Optional[DelegateCache]) -> None:
    global _delegate_cache

    with _cache_lock:
        _delegate_cache = cache
