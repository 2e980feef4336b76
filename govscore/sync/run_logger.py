"""Exactly one SyncRun row per sync: opened at start, closed by finalize."""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from govscore.data_models.governance import SyncRun, SyncType
from govscore.services.store import GovernanceStore
from govscore.utils.logger import logger

MAX_ERROR_MESSAGE_LENGTH = 2000


class SyncRunLogger:

    def __init__(self, store: GovernanceStore, sync_type: SyncType):
        self.store = store
        self.run = SyncRun(sync_type=sync_type, started_at=datetime.now(timezone.utc))

    def start(self) -> SyncRun:
        self.run.id = self.store.start_sync_run(self.run)
        logger.info("[Sync] Run %s (%s) started", self.run.id, self.run.sync_type.value)
        return self.run

    def finalize(
        self,
        success: bool,
        metrics: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> SyncRun:
        if self.run.id is None:
            raise RuntimeError("finalize() called before start()")
        finished = datetime.now(timezone.utc)
        self.run.finished_at = finished
        self.run.duration_ms = int((finished - self.run.started_at).total_seconds() * 1000)
        self.run.success = success
        self.run.error_message = error_message[:MAX_ERROR_MESSAGE_LENGTH] if error_message else None
        self.run.metrics = dict(metrics or {})
        self.store.finish_sync_run(self.run)

        log = logger.info if success else logger.error
        log(
            "[Sync] Run %s (%s) finished in %dms, success=%s",
            self.run.id, self.run.sync_type.value, self.run.duration_ms, success,
        )
        return self.run
