# Sync/conflict.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from loguru import logger

from .models import timestamp_or_zero

APPLY_REMOTE = "apply_remote"
KEEP_LOCAL = "keep_local"


class ConflictResolver(ABC):
    """Abstract base class for conflict resolution strategies."""

    @abstractmethod
    def resolve(self, local_row_data: Optional[Dict[str, Any]], remote_record: Dict[str, Any]) -> str:
        """
        Determines the outcome when an incoming record meets the stored one.

        Args:
            local_row_data: The record currently held by the deciding party (the server's row on push,
                            the device's row on pull), or None if it has none.
            remote_record: The incoming record.

        Returns:
            'apply_remote': the incoming record replaces the stored one.
            'keep_local': the stored record stays and is the authoritative answer.
        """
        pass

    def merge(self, local_row_data: Optional[Dict[str, Any]], remote_record: Dict[str, Any]) -> Dict[str, Any]:
        """Builds the record that is written when the remote side wins."""
        if local_row_data is None:
            return dict(remote_record)
        merged = {**local_row_data, **remote_record}
        # Partial records never clear sync metadata already on the stored row
        if remote_record.get("updated_at") is None and local_row_data.get("updated_at") is not None:
            merged["updated_at"] = local_row_data["updated_at"]
        # Tombstones are never cleared
        if not remote_record.get("deleted_at") and local_row_data.get("deleted_at"):
            merged["deleted_at"] = local_row_data["deleted_at"]
        return merged


class LastWriteWinsStrategy(ConflictResolver):
    """
    Last-writer-wins with deletion priority.

    The incoming record wins when its deleted_at is later than the stored one, or failing that when
    its updated_at is later. Missing timestamps count as 0. Ties keep the stored record.
    """

    def is_remote_newer(self, local_row_data: Dict[str, Any], remote_record: Dict[str, Any]) -> bool:
        remote_deleted = timestamp_or_zero(remote_record.get("deleted_at"), "deleted_at")
        local_deleted = timestamp_or_zero(local_row_data.get("deleted_at"), "deleted_at")
        if remote_deleted > local_deleted:
            return True
        remote_updated = timestamp_or_zero(remote_record.get("updated_at"), "updated_at")
        local_updated = timestamp_or_zero(local_row_data.get("updated_at"), "updated_at")
        return remote_updated > local_updated

    def resolve(self, local_row_data: Optional[Dict[str, Any]], remote_record: Dict[str, Any]) -> str:
        if local_row_data is None:
            return APPLY_REMOTE
        if self.is_remote_newer(local_row_data, remote_record):
            logger.debug(
                f"Conflict resolution: remote wins (remote updated={remote_record.get('updated_at')} "
                f"deleted={remote_record.get('deleted_at')}; local updated={local_row_data.get('updated_at')} "
                f"deleted={local_row_data.get('deleted_at')})")
            return APPLY_REMOTE
        logger.debug("Conflict resolution: stored record kept (remote not newer).")
        return KEEP_LOCAL
