# Sync_Records_DB.py
# Description: SQLite record store for synchronized library data (books, configs, notes, sessions, goals).
#   Used by the server as the per-user record store and by devices as their local copy.
#
# Imports
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
#
# Third-Party Libraries
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.core.Sync.models import (
    KIND_SPECS,
    ChangeScope,
    KindSpec,
    get_kind_spec,
    primary_key_of,
    timestamp_or_zero,
)
#
########################################################################################################################
#
# Functions:


# --- Custom Exceptions ---
class DatabaseError(Exception):
    """Base exception for SyncRecordsDB related errors."""
    pass


class SchemaError(DatabaseError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


class ConflictError(DatabaseError):
    """Unique constraint violation or a failed conditional (compare-and-swap) write."""

    def __init__(self, message="Conflict detected.", entity: Optional[str] = None, entity_id: Any = None):
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity:
            details.append(f"Entity: {self.entity}")
        if self.entity_id:
            details.append(f"ID: {self.entity_id}")
        return f"{base} ({', '.join(details)})" if details else base


class SyncRecordsDB:
    _SCHEMA_NAME = "shelfsync_records"
    _CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[str, Path], client_id: str = "server"):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise DatabaseError(f"Failed to create database directory {self.db_path.parent}: {e}") from e

        logger.info(f"Initializing SyncRecordsDB for path: {self.db_path_str} [Client ID: {self.client_id}]")
        self._local = threading.local()
        try:
            self._initialize_schema()
        except SchemaError as e:
            logger.critical(f"FATAL: Schema check failed for {self.db_path_str}: {e}")
            self.close_connection()
            raise
        except (DatabaseError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            self.close_connection()
            raise DatabaseError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection for {self.db_path_str} became unusable. Reopening.")
                conn = None

        if not conn:
            try:
                # isolation_level=None: autocommit outside explicit transactions
                conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=15, isolation_level=None)
                conn.row_factory = sqlite3.Row
                if not self.is_memory_db:
                    conn.execute("PRAGMA journal_mode=WAL;")
                self._local.conn = conn
                logger.debug(f"Opened SQLite connection to {self.db_path_str} for thread {threading.get_ident()}")
            except sqlite3.Error as e:
                self._local.conn = None
                raise DatabaseError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return conn

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def close_connection(self):
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                if conn.in_transaction:
                    logger.warning(f"Connection to {self.db_path_str} closed inside a transaction. Rolling back.")
                    conn.rollback()
                conn.close()
                logger.debug(f"Closed connection for thread {threading.get_ident()} to {self.db_path_str}.")
            except sqlite3.Error as e:
                logger.warning(f"Error during SQLite connection close for {self.db_path_str}: {e}")
            finally:
                self._local.conn = None

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Sequence[Any]] = None, *, script: bool = False) -> sqlite3.Cursor:
        conn = self.get_connection()
        try:
            cursor = conn.cursor()
            if script:
                cursor.executescript(query)
            else:
                cursor.execute(query, tuple(params or ()))
            return cursor
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity constraint violation: {query[:200]}... Error: {e}")
            if "unique constraint failed" in str(e).lower():
                raise ConflictError(message=f"Unique constraint violation: {e}") from e
            raise DatabaseError(f"Database constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:200]}... Error: {e}")
            raise DatabaseError(f"Query execution failed: {e}") from e

    def transaction(self) -> 'TransactionContextManager':
        return TransactionContextManager(self)

    # --- Schema ---
    def _table_columns(self, spec: KindSpec) -> List[str]:
        columns = ["user_id", *spec.key_columns]
        if spec.book_scoped:
            for col in ("book_hash", "meta_hash"):
                if col not in columns:
                    columns.append(col)
        return columns

    def _table_ddl(self, spec: KindSpec) -> str:
        key_cols = set(spec.key_columns)
        col_defs = []
        for col in self._table_columns(spec):
            not_null = " NOT NULL" if col == "user_id" or col in key_cols else ""
            col_defs.append(f"{col} TEXT{not_null}")
        unique_cols = ", ".join(["user_id", *spec.key_columns])
        return f"""
CREATE TABLE IF NOT EXISTS {spec.table} (
    row_id INTEGER PRIMARY KEY AUTOINCREMENT,
    {', '.join(col_defs)},
    updated_at INTEGER NOT NULL DEFAULT 0,
    deleted_at INTEGER,
    data TEXT NOT NULL,
    UNIQUE ({unique_cols})
);
CREATE INDEX IF NOT EXISTS idx_{spec.table}_user_updated ON {spec.table} (user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_{spec.table}_user_deleted ON {spec.table} (user_id, deleted_at);
"""

    def _initialize_schema(self):
        conn = self.get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS db_schema_version (
                schema_name TEXT PRIMARY KEY NOT NULL,
                version INTEGER NOT NULL
            )""")
        row = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ?",
                           (self._SCHEMA_NAME,)).fetchone()
        current_version = row["version"] if row else 0
        if current_version > self._CURRENT_SCHEMA_VERSION:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_version}) is newer than supported "
                f"({self._CURRENT_SCHEMA_VERSION}).")
        if current_version == self._CURRENT_SCHEMA_VERSION:
            logger.debug(f"Schema '{self._SCHEMA_NAME}' is up to date (v{current_version}) for {self.db_path_str}.")
            return

        logger.info(f"Applying schema v{self._CURRENT_SCHEMA_VERSION} for '{self._SCHEMA_NAME}' to {self.db_path_str}")
        script = "".join(self._table_ddl(spec) for spec in KIND_SPECS.values())
        with self.transaction() as conn:
            for statement in script.split(";"):
                if statement.strip():
                    conn.execute(statement)
            conn.execute("INSERT OR REPLACE INTO db_schema_version (schema_name, version) VALUES (?, ?)",
                         (self._SCHEMA_NAME, self._CURRENT_SCHEMA_VERSION))

    # --- Row Helpers ---
    @staticmethod
    def _row_to_record(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        try:
            return json.loads(row["data"])
        except (TypeError, json.JSONDecodeError) as e:
            raise DatabaseError(f"Corrupt record payload in row {row['row_id']}: {e}") from e

    def _column_values(self, spec: KindSpec, record: Dict[str, Any]) -> Dict[str, Any]:
        values: Dict[str, Any] = {"user_id": record.get("user_id")}
        if not values["user_id"]:
            raise InputError(f"{spec.kind.value} record has no user_id")
        for key, value in zip(spec.primary_key, primary_key_of(spec, record)):
            values[key.column] = value
        if spec.book_scoped:
            values.setdefault("book_hash", record.get("book_hash"))
            values["meta_hash"] = record.get("meta_hash")
        values["updated_at"] = timestamp_or_zero(record.get("updated_at"), "updated_at")
        deleted_at = record.get("deleted_at")
        values["deleted_at"] = timestamp_or_zero(deleted_at, "deleted_at") if deleted_at else None
        values["data"] = json.dumps(record, default=str)
        return values

    @staticmethod
    def _key_clause(spec: KindSpec) -> str:
        return " AND ".join(["user_id = ?", *(f"{col} = ?" for col in spec.key_columns)])

    # --- Record Operations ---
    def get_record(self, kind, user_id: str, key: Tuple[str, ...]) -> Optional[Dict[str, Any]]:
        """Fetches the record with the exact (user, primary key) match, or None."""
        spec = get_kind_spec(kind)
        if len(key) != len(spec.primary_key):
            raise InputError(f"{spec.kind.value} key must have {len(spec.primary_key)} parts, got {len(key)}")
        cursor = self.execute_query(
            f"SELECT row_id, data FROM {spec.table} WHERE {self._key_clause(spec)} LIMIT 1",
            (user_id, *key))
        return self._row_to_record(cursor.fetchone())

    def list_records(self, kind, user_id: str, since: Optional[int] = None, scope: Optional[ChangeScope] = None,
                     limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """
        Lists a user's records newest-updated_at first.

        since: exclusive lower bound matched against updated_at OR deleted_at.
        scope: book_hash = book OR meta_hash = meta_hash (kinds without book fields ignore it).
        """
        spec = get_kind_spec(kind)
        if limit <= 0 or offset < 0:
            raise InputError(f"Invalid pagination: limit={limit}, offset={offset}")
        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]

        if scope is not None and not scope.is_empty and spec.book_scoped:
            scope_clauses = []
            if scope.book:
                scope_clauses.append("book_hash = ?")
                params.append(scope.book)
            if scope.meta_hash:
                scope_clauses.append("meta_hash = ?")
                params.append(scope.meta_hash)
            clauses.append(f"({' OR '.join(scope_clauses)})")

        if since is not None:
            clauses.append("(updated_at > ? OR deleted_at > ?)")
            params.extend([since, since])

        query = (f"SELECT row_id, data FROM {spec.table} WHERE {' AND '.join(clauses)} "
                 f"ORDER BY updated_at DESC, row_id DESC LIMIT ? OFFSET ?")
        params.extend([limit, offset])
        cursor = self.execute_query(query, params)
        return [self._row_to_record(row) for row in cursor.fetchall()]

    def count_records(self, kind, user_id: str, include_deleted: bool = True) -> int:
        spec = get_kind_spec(kind)
        query = f"SELECT COUNT(*) AS n FROM {spec.table} WHERE user_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        return self.execute_query(query, (user_id,)).fetchone()["n"]

    def insert_record(self, kind, record: Dict[str, Any]) -> Dict[str, Any]:
        """Inserts a new record. Raises ConflictError when (user, key) already exists."""
        spec = get_kind_spec(kind)
        values = self._column_values(spec, record)
        cols = list(values.keys())
        try:
            self.execute_query(
                f"INSERT INTO {spec.table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
                [values[c] for c in cols])
        except ConflictError as e:
            raise ConflictError(f"{spec.kind.value} record already exists", entity=spec.table,
                                entity_id=primary_key_of(spec, record)) from e
        return json.loads(values["data"])

    def update_record(self, kind, record: Dict[str, Any],
                      expected: Optional[Tuple[int, int]] = None) -> Dict[str, Any]:
        """
        Overwrites the stored record with the same (user, key).

        expected: optional (updated_at, deleted_at) last read by the caller; the write only lands
        if the row still carries those values, otherwise ConflictError is raised.
        """
        spec = get_kind_spec(kind)
        values = self._column_values(spec, record)
        key_values = [values["user_id"], *(values[c] for c in spec.key_columns)]
        settable = [c for c in values if c != "user_id" and c not in spec.key_columns]
        where = self._key_clause(spec)
        params = [values[c] for c in settable] + key_values
        if expected is not None:
            where += " AND updated_at = ? AND COALESCE(deleted_at, 0) = ?"
            params.extend([expected[0], expected[1]])

        cursor = self.execute_query(
            f"UPDATE {spec.table} SET {', '.join(f'{c} = ?' for c in settable)} WHERE {where}", params)
        if cursor.rowcount == 0:
            raise ConflictError(f"{spec.kind.value} record changed or vanished before the write landed",
                                entity=spec.table, entity_id=primary_key_of(spec, record))
        return json.loads(values["data"])

    def soft_delete_record(self, kind, user_id: str, key: Tuple[str, ...], deleted_at: int) -> Optional[Dict[str, Any]]:
        """Marks a record deleted at deleted_at (also its new updated_at). Already-deleted rows are left alone."""
        with self.transaction():
            current = self.get_record(kind, user_id, key)
            if current is None or current.get("deleted_at"):
                return current
            current["deleted_at"] = deleted_at
            current["updated_at"] = max(deleted_at, timestamp_or_zero(current.get("updated_at")))
            return self.update_record(kind, current)


class TransactionContextManager:
    def __init__(self, db_instance: SyncRecordsDB):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.conn = self.db.get_connection()
        if not self.conn.in_transaction:
            self.conn.execute("BEGIN IMMEDIATE")
            self.is_outermost_transaction = True
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.is_outermost_transaction:
            return False
        if exc_type:
            logger.error(f"Transaction failed, rolling back on thread {threading.get_ident()}: "
                         f"{exc_type.__name__} - {exc_val}")
            try:
                self.conn.rollback()
            except sqlite3.Error as rb_err:
                logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}")
        else:
            try:
                self.conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Commit failed on thread {threading.get_ident()}: {e}")
                raise DatabaseError(f"Commit failed: {e}") from e
        return False

#
# End of Sync_Records_DB.py
########################################################################################################################
