# Sync/upsert.py
# Description: Server-side upsert engine. Every pushed record is looked up by its logical primary key
#   and is inserted, overwrites the stored row, or is discarded in favour of the stored row, following
#   the last-writer-wins rule in conflict.py. The returned record is always the authoritative one.
#
# Imports
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.core.config import settings
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import ConflictError, DatabaseError, SyncRecordsDB
from .conflict import KEEP_LOCAL, ConflictResolver, LastWriteWinsStrategy
from .exceptions import UpstreamStoreError, ValidationError
from .models import describe_key, get_kind_spec, normalize_record, now_ms, primary_key_of, timestamp_or_zero
#
########################################################################################################################

INSERTED = "inserted"
UPDATED = "updated"
KEPT = "kept"


@dataclass
class UpsertOutcome:
    record: Dict[str, Any]
    action: str
    attempts: int = 1


@dataclass
class RecordFailure:
    index: int
    key: Dict[str, Any]
    error: str
    # True when the record store failed; False when the record itself was rejected
    store_failure: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"index": self.index, "key": self.key, "error": self.error}


@dataclass
class KindPushResult:
    kind: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[RecordFailure] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.errors) and not self.records


class UpsertEngine:
    """Applies pushed records for one user, one record at a time."""

    def __init__(self, db: SyncRecordsDB, resolver: Optional[ConflictResolver] = None,
                 batch_size: Optional[int] = None, max_attempts: Optional[int] = None,
                 clock: Callable[[], int] = now_ms):
        self.db = db
        self.resolver = resolver or LastWriteWinsStrategy()
        self.batch_size = batch_size or settings["SYNC_BATCH_SIZE"]
        self.max_attempts = max_attempts or settings["SYNC_UPSERT_MAX_ATTEMPTS"]
        self.clock = clock

    def upsert(self, user_id: str, kind, incoming: Dict[str, Any]) -> Dict[str, Any]:
        """Returns the authoritative record after conflict resolution."""
        return self.upsert_with_outcome(user_id, kind, incoming).record

    def upsert_with_outcome(self, user_id: str, kind, incoming: Dict[str, Any]) -> UpsertOutcome:
        spec = get_kind_spec(kind)
        record = normalize_record(spec, incoming, user_id)
        key = primary_key_of(spec, record)

        for attempt in range(1, self.max_attempts + 1):
            try:
                existing = self.db.get_record(spec.kind, user_id, key)
                if existing is None:
                    if record.get("updated_at") is None:
                        record["updated_at"] = self.clock()
                    try:
                        created = self.db.insert_record(spec.kind, record)
                    except ConflictError:
                        logger.warning(f"[{user_id}] Concurrent insert for {spec.kind.value} {key}; re-resolving "
                                       f"(attempt {attempt}/{self.max_attempts}).")
                        continue
                    logger.debug(f"[{user_id}] Inserted {spec.kind.value} {key}.")
                    return UpsertOutcome(created, INSERTED, attempt)

                if self.resolver.resolve(existing, record) == KEEP_LOCAL:
                    logger.debug(f"[{user_id}] Server copy of {spec.kind.value} {key} kept; client write discarded.")
                    return UpsertOutcome(existing, KEPT, attempt)

                merged = self.resolver.merge(existing, record)
                expected = (timestamp_or_zero(existing.get("updated_at")),
                            timestamp_or_zero(existing.get("deleted_at")))
                try:
                    updated = self.db.update_record(spec.kind, merged, expected=expected)
                except ConflictError:
                    logger.warning(f"[{user_id}] {spec.kind.value} {key} changed underneath us; re-resolving "
                                   f"(attempt {attempt}/{self.max_attempts}).")
                    continue
                logger.debug(f"[{user_id}] Client copy of {spec.kind.value} {key} won; server row overwritten.")
                return UpsertOutcome(updated, UPDATED, attempt)

            except DatabaseError as e:
                logger.error(f"[{user_id}] Record store error upserting {spec.kind.value} {key}: {e}")
                raise UpstreamStoreError.from_kind_errors({spec.kind.value: str(e)}) from e

        raise UpstreamStoreError.from_kind_errors(
            {spec.kind.value: f"write for {key} kept losing to concurrent writers after {self.max_attempts} attempts"})

    def upsert_batch(self, user_id: str, kind, records: List[Dict[str, Any]]) -> KindPushResult:
        """
        Upserts every record independently. A failing record is reported in the result's errors and
        does not stop the others. Records are walked in chunks of batch_size.
        """
        spec = get_kind_spec(kind)
        result = KindPushResult(kind=spec.kind.value)
        for start in range(0, len(records), self.batch_size):
            chunk = records[start:start + self.batch_size]
            for offset, incoming in enumerate(chunk):
                index = start + offset
                try:
                    result.records.append(self.upsert(user_id, spec.kind, incoming))
                except (ValidationError, UpstreamStoreError) as e:
                    key = describe_key(spec, incoming) if isinstance(incoming, dict) else {}
                    logger.warning(f"[{user_id}] {spec.kind.value} record #{index} {key} rejected: {e}")
                    if isinstance(e, UpstreamStoreError):
                        failure = RecordFailure(index, key, e.errors_by_kind.get(spec.kind.value, e.message), True)
                    else:
                        failure = RecordFailure(index, key, e.message)
                    result.errors.append(failure)
        logger.info(f"[{user_id}] Push {spec.kind.value}: {len(result.records)} applied, {len(result.errors)} failed.")
        return result

#
# End of Sync/upsert.py
########################################################################################################################
