# Sync/models.py
# Description: Record model shared by the server engines and the device client.
#   Every synchronized kind is described once by a typed KindSpec: its wire name, its store table,
#   the fields making up its logical primary key and the fields used for deduplication and scoping.
#
# Imports
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from .exceptions import ValidationError
#
########################################################################################################################
#
# Types:


class SyncKind(str, Enum):
    BOOKS = "books"
    CONFIGS = "configs"
    NOTES = "notes"
    SESSIONS = "sessions"
    GOALS = "goals"

    @classmethod
    def parse(cls, value: str) -> "SyncKind":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(k.value for k in cls)
            raise ValidationError(f'Invalid "type" value \'{value}\'. Expected one of: {allowed}') from None


@dataclass(frozen=True)
class KeyField:
    """One component of a logical primary key: the record field and the store column holding it."""
    field: str
    column: str


@dataclass(frozen=True)
class KindSpec:
    kind: SyncKind
    table: str
    primary_key: Tuple[KeyField, ...]
    # Record fields identifying a row for deduplication of unioned pull results
    dedupe_fields: Tuple[str, ...] = ()
    # Whether records of this kind carry book_hash/meta_hash and can be narrowed by a scope filter
    book_scoped: bool = True

    @property
    def key_columns(self) -> Tuple[str, ...]:
        return tuple(k.column for k in self.primary_key)

    @property
    def key_fields(self) -> Tuple[str, ...]:
        return tuple(k.field for k in self.primary_key)


KIND_SPECS: Dict[SyncKind, KindSpec] = {
    SyncKind.BOOKS: KindSpec(
        kind=SyncKind.BOOKS,
        table="books",
        primary_key=(KeyField("book_hash", "book_hash"),),
    ),
    SyncKind.CONFIGS: KindSpec(
        kind=SyncKind.CONFIGS,
        table="book_configs",
        primary_key=(KeyField("book_hash", "book_hash"),),
    ),
    SyncKind.NOTES: KindSpec(
        kind=SyncKind.NOTES,
        table="book_notes",
        primary_key=(KeyField("book_hash", "book_hash"), KeyField("id", "note_id")),
        dedupe_fields=("id",),
    ),
    SyncKind.SESSIONS: KindSpec(
        kind=SyncKind.SESSIONS,
        table="reading_sessions",
        primary_key=(KeyField("id", "record_id"),),
    ),
    SyncKind.GOALS: KindSpec(
        kind=SyncKind.GOALS,
        table="reading_goals",
        primary_key=(KeyField("id", "record_id"),),
        book_scoped=False,
    ),
}

ALL_KINDS: Tuple[SyncKind, ...] = tuple(SyncKind)


def get_kind_spec(kind) -> KindSpec:
    if not isinstance(kind, SyncKind):
        kind = SyncKind.parse(kind)
    return KIND_SPECS[kind]


@dataclass(frozen=True)
class ChangeScope:
    """Optional narrowing of a pull to one logical book: book_hash OR meta_hash."""
    book: Optional[str] = None
    meta_hash: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.book and not self.meta_hash


#
# Timestamp helpers
########################################################################################################################

def now_ms() -> int:
    return int(time.time() * 1000)


# Timestamps are stored in signed 64-bit SQLite INTEGER columns
MAX_EPOCH_MS = 2 ** 63 - 1
MIN_EPOCH_MS = -(2 ** 63)


def _checked_ms(number, field_name: str, raw: Any) -> int:
    if isinstance(number, float) and not math.isfinite(number):
        raise ValidationError(f"Invalid {field_name}: {raw!r}")
    ms = int(number)
    if not MIN_EPOCH_MS <= ms <= MAX_EPOCH_MS:
        raise ValidationError(f"Invalid {field_name}: {raw!r} is out of range")
    return ms


def to_epoch_ms(value: Any, field_name: str = "timestamp") -> Optional[int]:
    """
    Normalizes a wire timestamp to integer epoch milliseconds.

    Accepts epoch milliseconds (int/float or numeric string), ISO 8601 strings
    (a trailing 'Z' is read as UTC, naive values are assumed UTC) and datetimes.
    Returns None for None/empty values.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, (int, float)):
        return _checked_ms(value, field_name, value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, str):
        text = value.strip()
        try:
            # Integer strings keep full precision
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                number = None
        if number is not None:
            return _checked_ms(number, field_name, value)
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning(f"Could not parse {field_name} string: {value}")
            raise ValidationError(f"Invalid {field_name}: {value!r}") from None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return _checked_ms(dt.timestamp() * 1000, field_name, value)
    raise ValidationError(f"Invalid {field_name}: {value!r}")


def timestamp_or_zero(value: Any, field_name: str = "timestamp") -> int:
    ts = to_epoch_ms(value, field_name)
    return ts if ts is not None else 0


#
# Record helpers
########################################################################################################################

def primary_key_of(spec: KindSpec, record: Dict[str, Any]) -> Tuple[str, ...]:
    """Returns the logical primary key values of a record, raising ValidationError when one is missing."""
    values = []
    for key in spec.primary_key:
        value = record.get(key.field)
        if value is None or value == "":
            raise ValidationError(f"{spec.kind.value} record is missing primary key field '{key.field}'")
        values.append(str(value))
    return tuple(values)


def describe_key(spec: KindSpec, record: Dict[str, Any]) -> Dict[str, Any]:
    return {key.field: record.get(key.field) for key in spec.primary_key}


def normalize_record(spec: KindSpec, record: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    """
    Returns a copy of an incoming record scoped to user_id, with its sync timestamps
    converted to epoch milliseconds. Primary key values are coerced to strings.
    """
    if not isinstance(record, dict):
        raise ValidationError(f"{spec.kind.value} records must be JSON objects, got {type(record).__name__}")
    normalized = dict(record)
    normalized["user_id"] = user_id
    for key in spec.primary_key:
        if normalized.get(key.field) is not None:
            normalized[key.field] = str(normalized[key.field])
    normalized["updated_at"] = to_epoch_ms(record.get("updated_at"), "updated_at")
    normalized["deleted_at"] = to_epoch_ms(record.get("deleted_at"), "deleted_at")
    primary_key_of(spec, normalized)
    return normalized


def record_change_time(record: Dict[str, Any]) -> int:
    """The later of a record's updated_at and deleted_at, in epoch ms."""
    return max(timestamp_or_zero(record.get("updated_at"), "updated_at"),
               timestamp_or_zero(record.get("deleted_at"), "deleted_at"))


def max_change_time(records: Iterable[Dict[str, Any]]) -> int:
    """Max updated_at/deleted_at across records; 0 when there are none."""
    max_time = 0
    for rec in records:
        max_time = max(max_time, record_change_time(rec))
    return max_time

#
# End of Sync/models.py
########################################################################################################################
