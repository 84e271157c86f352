# Sync/local_store.py
# Description: The device's local copy of synchronized records, kept in a SyncRecordsDB.
from typing import Any, Dict, Iterable, Optional

from loguru import logger

from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import SyncRecordsDB
from .conflict import APPLY_REMOTE, ConflictResolver, LastWriteWinsStrategy
from .models import get_kind_spec, normalize_record, primary_key_of


class LocalRecordStore:
    """
    Wraps the device's record store. Pulled records merge by last-writer-wins; the
    authoritative records returned by a push replace whatever is stored locally.
    """

    def __init__(self, db: SyncRecordsDB, user_id: str, resolver: Optional[ConflictResolver] = None):
        self.db = db
        self.user_id = user_id
        self.resolver = resolver or LastWriteWinsStrategy()

    def get(self, kind, key) -> Optional[Dict[str, Any]]:
        return self.db.get_record(kind, self.user_id, tuple(str(k) for k in key))

    def _write(self, spec, existing: Optional[Dict[str, Any]], record: Dict[str, Any]) -> Dict[str, Any]:
        if existing is None:
            return self.db.insert_record(spec.kind, record)
        return self.db.update_record(spec.kind, record)

    def save_local(self, kind, record: Dict[str, Any]) -> Dict[str, Any]:
        """Stores a record edited on this device."""
        spec = get_kind_spec(kind)
        record = normalize_record(spec, record, self.user_id)
        with self.db.transaction():
            existing = self.db.get_record(spec.kind, self.user_id, primary_key_of(spec, record))
            return self._write(spec, existing, self.resolver.merge(existing, record))

    def apply_pulled(self, kind, records: Iterable[Dict[str, Any]]) -> int:
        """Merges pulled records. Returns how many replaced or created a local row."""
        spec = get_kind_spec(kind)
        applied = 0
        with self.db.transaction():
            for incoming in records:
                record = normalize_record(spec, incoming, self.user_id)
                existing = self.db.get_record(spec.kind, self.user_id, primary_key_of(spec, record))
                if self.resolver.resolve(existing, record) != APPLY_REMOTE:
                    continue
                self._write(spec, existing, self.resolver.merge(existing, record))
                applied += 1
        logger.debug(f"Applied {applied} pulled {spec.kind.value} record(s) locally.")
        return applied

    def apply_authoritative(self, kind, records: Iterable[Dict[str, Any]]) -> int:
        """Overwrites local rows with the server's authoritative versions."""
        spec = get_kind_spec(kind)
        count = 0
        with self.db.transaction():
            for incoming in records:
                record = normalize_record(spec, incoming, self.user_id)
                existing = self.db.get_record(spec.kind, self.user_id, primary_key_of(spec, record))
                self._write(spec, existing, record)
                count += 1
        return count
