import threading
from typing import Optional

from govscore.config.database_config import is_database_configured
from govscore.config.sync_settings import SyncSettings
from govscore.services.store import GovernanceStore, InMemoryGovernanceStore
from govscore.utils.logger import logger

_store: Optional[GovernanceStore] = None
_store_lock = threading.Lock()


def get_store() -> GovernanceStore:
    """Global store: Postgres when a database is configured, otherwise in-memory."""
    global _store

    with _store_lock:
        if _store is None:
            batch_size = SyncSettings.get_write_batch_size()
            if is_database_configured():
                from govscore.services.postgres_store import PostgresGovernanceStore

                store = PostgresGovernanceStore(batch_size=batch_size)
                store.ensure_schema()
                _store = store
            else:
                logger.warning("No database configured; using in-memory governance store")
                _store = InMemoryGovernanceStore(batch_size=batch_size)
        return _store


def set_store(store: Optional[GovernanceStore]) -> None:
    """Replace the global store (tests and embedding applications)."""
    global _store

    with _store_lock:
        _store = store
