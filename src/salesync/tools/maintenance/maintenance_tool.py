"""Data management operations that must keep the aggregates consistent."""

from __future__ import annotations

import loguru
from loguru import logger

from salesync.adapters.db.facade import DB
from salesync.tools.sync.services import AggregateRecomputer


class MaintenanceLogger:
    """Handles all logging for MaintenanceTool."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def key_removed(self, key_id: str) -> None:
        self._logger.bind(api_key_id=key_id).info("Removed API key {}", key_id)

    def key_reset(self, key_id: str, deleted: int) -> None:
        self._logger.bind(api_key_id=key_id, records=deleted).info(
            "Cleared {} records for {}; next sync refetches everything", deleted, key_id
        )

    def all_reset(self, deleted: int) -> None:
        self._logger.bind(records=deleted).info(
            "Cleared all synced data ({} records)", deleted
        )


class MaintenanceTool:
    def __init__(self, db: DB, aggregates: AggregateRecomputer) -> None:
        self._db = db
        self._aggregates = aggregates
        self._logger = MaintenanceLogger()

    def remove_key(self, key_id: str) -> bool:
        """
        Remove an API key with everything synced for it.

        Args:
            key_id: Key to remove

        Returns:
            True if the key existed
        """
        if not self._db.remove_api_key(key_id):
            return False
        self._aggregates.recompute_all()
        self._logger.key_removed(key_id)
        return True

    def reset_key(self, key_id: str) -> int:
        """
        Clear one key's sales, tasks and highwatermark, keeping the key.

        The next sync rediscovers and refetches the key's full history.

        Returns:
            Number of sales records deleted
        """
        deleted = self._db.clear_data_for_key(key_id)
        self._aggregates.recompute_all()
        self._logger.key_reset(key_id, deleted)
        return deleted

    def reset_all(self) -> int:
        """Clear every key's synced data, aggregates included."""
        deleted = self._db.clear_all_data()
        self._logger.all_reset(deleted)
        return deleted
