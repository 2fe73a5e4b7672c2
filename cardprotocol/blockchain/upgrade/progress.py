import logging
from typing import Dict, Optional

from ..storage.db import StorageDB
from .types import MigrationProgress

logger = logging.getLogger(__name__)

PROGRESS_PREFIX = "migration:"


class ProgressStore:
    """
    Per-contract migration progress.

    Backed by StorageDB when one is given so an interrupted run can be
    resumed by a later process; otherwise kept in memory.
    """

    def __init__(self, db: Optional[StorageDB] = None):
        self.db = db
        self._memory: Dict[str, str] = {}

    def load(self, contract_id: str) -> Optional[MigrationProgress]:
        raw = self._get(PROGRESS_PREFIX + contract_id)
        if raw is None:
            return None
        return MigrationProgress.model_validate_json(raw)

    def save(self, progress: MigrationProgress):
        self._set(PROGRESS_PREFIX + progress.contract_id, progress.model_dump_json())
        logger.debug(f"Saved migration progress for {progress.contract_id}: {len(progress.processed)} key(s) processed")

    def discard(self, contract_id: str):
        key = PROGRESS_PREFIX + contract_id
        if self.db:
            self.db.delete_state(key)
        else:
            self._memory.pop(key, None)
        logger.debug(f"Discarded migration progress for {contract_id}")

    def in_progress(self) -> Dict[str, MigrationProgress]:
        if self.db:
            raw = self.db.get_state_by_prefix(PROGRESS_PREFIX)
        else:
            raw = dict(self._memory)
        return {
            key[len(PROGRESS_PREFIX):]: MigrationProgress.model_validate_json(value)
            for key, value in raw.items()
        }

    def _get(self, key: str) -> Optional[str]:
        if self.db:
            return self.db.get_state(key)
        return self._memory.get(key)

    def _set(self, key: str, value: str):
        if self.db:
            self.db.set_state(key, value)
        else:
            self._memory[key] = value
