import os
import yaml
from pathlib import Path
from typing import Any, Dict, List

from govscore.utils.logger import logger


class SyncSettings:
    """Batch sizes, concurrency caps and pacing delays for the sync pipeline."""

    _config = None
    _config_path = Path(__file__).parent / "sync_config.yaml"

    @classmethod
    def _load_config(cls) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if cls._config is None:
            try:
                with open(cls._config_path, 'r') as f:
                    cls._config = yaml.safe_load(f)
                if cls._config is None:
                    raise ValueError("Configuration file is empty or invalid")
            except FileNotFoundError:
                raise FileNotFoundError(f"Configuration file not found at {cls._config_path}. Please ensure sync_config.yaml exists.")
            except yaml.YAMLError as e:
                raise ValueError(f"Error parsing YAML configuration file: {e}")
            logger.debug("SyncSettings: loaded %s", cls._config_path)
        return cls._config

    @classmethod
    def _get(cls, section: str, key: str, env_var: str = None):
        if env_var and os.environ.get(env_var):
            return type(cls._load_config()[section][key])(os.environ[env_var])
        return cls._load_config()[section][key]

    # Upstream
    @classmethod
    def get_upstream_batch_size(cls) -> int:
        return cls._get('upstream', 'batch_size', 'SYNC_UPSTREAM_BATCH_SIZE')

    @classmethod
    def get_vote_concurrency(cls) -> int:
        return cls._get('upstream', 'vote_concurrency', 'SYNC_VOTE_CONCURRENCY')

    @classmethod
    def get_inter_batch_delay(cls) -> float:
        """Delay between upstream batches, in seconds."""
        return cls._get('upstream', 'inter_batch_delay_ms', 'SYNC_INTER_BATCH_DELAY_MS') / 1000

    @classmethod
    def get_retry_config(cls) -> Dict[str, int]:
        return dict(cls._load_config()['upstream']['retry'])

    # Writes
    @classmethod
    def get_write_batch_size(cls) -> int:
        return cls._get('writes', 'batch_size', 'SYNC_WRITE_BATCH_SIZE')

    @classmethod
    def get_max_error_rate(cls) -> float:
        return cls._get('writes', 'max_error_rate')

    # Secondary stage
    @classmethod
    def get_delegator_concurrency(cls) -> int:
        return cls._get('secondary', 'delegator_concurrency')

    @classmethod
    def is_score_history_enabled(cls) -> bool:
        return bool(cls._get('secondary', 'score_history_enabled'))

    # Backfill
    @classmethod
    def get_backfill_update_concurrency(cls) -> int:
        return cls._get('backfill', 'update_concurrency')

    @classmethod
    def get_backfill_delegate_delay(cls) -> float:
        return cls._get('backfill', 'delegate_delay_ms') / 1000

    # Rationales / summaries
    @classmethod
    def get_rationale_concurrency(cls) -> int:
        return cls._get('rationales', 'concurrency')

    @classmethod
    def get_rationale_max_per_sync(cls) -> int:
        return cls._get('rationales', 'max_per_sync', 'SYNC_RATIONALE_MAX_PER_SYNC')

    @classmethod
    def get_summary_concurrency(cls) -> int:
        return cls._get('summaries', 'concurrency')

    @classmethod
    def get_summary_max_per_sync(cls) -> int:
        return cls._get('summaries', 'max_per_sync', 'SYNC_SUMMARY_MAX_PER_SYNC')

    # Profile verification
    @classmethod
    def get_profile_concurrency(cls) -> int:
        return cls._get('profiles', 'concurrency')

    @classmethod
    def get_link_checks_max_per_sync(cls) -> int:
        return cls._get('profiles', 'link_checks_max_per_sync', 'SYNC_LINK_CHECKS_MAX_PER_SYNC')

    @classmethod
    def get_link_recheck_days(cls) -> int:
        return cls._get('profiles', 'link_recheck_days')

    @classmethod
    def get_metadata_checks_max_per_sync(cls) -> int:
        return cls._get('profiles', 'metadata_checks_max_per_sync')

    # Alignment
    @classmethod
    def get_alignment_shift_prefs(cls) -> List[str]:
        return list(cls._load_config()['alignment']['shift_prefs'])
