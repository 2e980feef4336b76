"""
Freshness-aware read path over the persisted delegate snapshot.

Availability wins over freshness: a stale snapshot is logged and served,
and only an empty (or unreadable) snapshot falls back to the slow live
computation. Triggering a new sync is left to the external scheduler.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from govscore.config.settings import CACHE_FRESHNESS_MINUTES
from govscore.data_models.governance import Delegate
from govscore.exceptions import GovScoreError, LiveScoringError
from govscore.services.store import GovernanceStore
from govscore.utils.logger import logger

LiveLoader = Callable[[], Awaitable[List[Delegate]]]


class DelegateCache:
    """Serves delegates from the store, falling back to a live loader when the snapshot is empty"""

    def __init__(
        self,
        store: GovernanceStore,
        live_loader: Optional[LiveLoader] = None,
        freshness_window: timedelta = None,
    ):
        self.store = store
        self.live_loader = live_loader
        self.freshness_window = freshness_window or timedelta(minutes=CACHE_FRESHNESS_MINUTES)
        self._last_read_at: Optional[datetime] = None
        self._last_updated_at: Optional[datetime] = None
        self._stale = False
        self._fallback_count = 0
        self._lock = asyncio.Lock()

    @staticmethod
    def _latest_update(delegates: List[Delegate]) -> Optional[datetime]:
        stamps = [d.updated_at for d in delegates if d.updated_at is not None]
        return max(stamps) if stamps else None

    def _is_older_than_window(self, updated_at: Optional[datetime], now: datetime) -> bool:
        if updated_at is None:
            return True
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return now - updated_at > self.freshness_window

    async def _load_live(self, reason: str) -> List[Delegate]:
        self._fallback_count += 1
        if self.live_loader is None:
            logger.warning("[Cache] %s and no live loader configured; returning nothing", reason)
            return []
        logger.warning("[Cache] %s; computing delegates live", reason)
        try:
            delegates = await self.live_loader()
        except GovScoreError:
            raise
        except Exception as e:
            logger.error("[Cache] Live scoring failed: %s", e, exc_info=True)
            raise LiveScoringError(f"Live delegate scoring failed: {e}") from e
        return sorted(delegates, key=lambda d: d.score, reverse=True)

    async def get_all(self) -> List[Delegate]:
        """Delegates ordered by score descending, stale or not."""
        async with self._lock:
            now = datetime.now(timezone.utc)
            self._last_read_at = now
            try:
                delegates = await asyncio.to_thread(self.store.get_delegates)
            except Exception as e:
                logger.error("[Cache] Store read failed: %s", e, exc_info=True)
                return await self._load_live("store read failed")

            if not delegates:
                return await self._load_live("persisted snapshot is empty")

            self._last_updated_at = self._latest_update(delegates)
            self._stale = self._is_older_than_window(self._last_updated_at, now)
            if self._stale:
                logger.warning(
                    "[Cache] Serving stale snapshot: last update %s is older than %s",
                    self._last_updated_at, self.freshness_window,
                )
            return delegates

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """Staleness of the snapshot seen by the last read; a cache never read counts as stale."""
        if self._last_read_at is None:
            return True
        return self._is_older_than_window(self._last_updated_at, now or datetime.now(timezone.utc))

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "last_read_at": self._last_read_at.isoformat() if self._last_read_at else None,
            "last_updated_at": self._last_updated_at.isoformat() if self._last_updated_at else None,
            "stale": self._stale,
            "fallback_count": self._fallback_count,
            "freshness_window_seconds": int(self.freshness_window.total_seconds()),
        }
