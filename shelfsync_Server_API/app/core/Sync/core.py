# Sync/core.py
# Description: Device-side orchestration. For each kind: pull what changed since the kind's checkpoint,
#   merge it locally, then push the local queue and adopt the server's authoritative answers.
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import DatabaseError
from .exceptions import AuthenticationError, StateError, SyncError
from .local_store import LocalRecordStore
from .models import ALL_KINDS, SyncKind, max_change_time, now_ms
from .state import SyncStateManager, startup_checkpoint
from .transport import SyncTransport


@dataclass
class KindSyncState:
    """Last observed outcome of syncing one kind on this device."""
    kind: str
    last_error: Optional[str] = None
    last_attempt_at: Optional[int] = None
    last_success_at: Optional[int] = None
    pulled: int = 0
    pushed: int = 0
    skipped: int = 0


class SyncManager:
    """Orchestrates pulls and pushes for every kind on one device."""

    def __init__(self,
                 transport: SyncTransport,
                 state_manager: SyncStateManager,
                 local_store: LocalRecordStore,
                 kinds: Iterable[SyncKind] = ALL_KINDS,
                 clock: Callable[[], int] = now_ms):
        self.transport = transport
        self.state_manager = state_manager
        self.local_store = local_store
        self.kinds = [SyncKind(k) for k in kinds]
        self.clock = clock
        # Single-flight per kind: a sync request for a busy kind is skipped, never queued
        self._busy: Dict[SyncKind, threading.Lock] = {k: threading.Lock() for k in self.kinds}
        self.status: Dict[SyncKind, KindSyncState] = {k: KindSyncState(kind=k.value) for k in self.kinds}
        self.needs_login = False
        logger.info(f"SyncManager initialized for kinds: {[k.value for k in self.kinds]}")

    def initialize_checkpoints(self, now: Optional[int] = None):
        """Applies the startup checkpoint policy to every kind. Call once when the device starts."""
        now = self.clock() if now is None else now
        for kind in self.kinds:
            stored = self.state_manager.get_checkpoint(kind)
            adjusted = startup_checkpoint(stored, now)
            self.state_manager.set_checkpoint(kind, adjusted)
            logger.info(f"Startup checkpoint for {kind.value}: {stored} -> {adjusted}")

    def mark_logged_in(self):
        self.needs_login = False

    def is_busy(self, kind: SyncKind) -> bool:
        return self._busy[SyncKind(kind)].locked()

    # --- Single Steps ---

    def queue_record(self, kind: SyncKind, record: Dict[str, Any]) -> Dict[str, Any]:
        """Saves a local edit and queues it for the next push. updated_at is stamped when absent."""
        kind = SyncKind(kind)
        record = dict(record)
        if record.get("updated_at") is None:
            record["updated_at"] = self.clock()
        stored = self.local_store.save_local(kind, record)
        self.state_manager.enqueue(kind, stored)
        return stored

    def pull(self, kind: SyncKind, book: Optional[str] = None, meta_hash: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Pulls changes for one kind since its checkpoint and merges them locally.

        Unscoped pulls advance the checkpoint to the newest change seen (never backwards,
        unchanged when nothing came back). Scoped pulls only cover one book and leave it alone.
        """
        kind = SyncKind(kind)
        since = self.state_manager.get_checkpoint(kind)
        response = self.transport.pull(since, kind=kind.value, book=book, meta_hash=meta_hash)
        records = response.get(kind.value) or []
        applied = self.local_store.apply_pulled(kind, records)
        if records and not (book or meta_hash):
            checkpoint = self.state_manager.advance_checkpoint(kind, max_change_time(records))
            logger.info(f"Pulled {len(records)} {kind.value} record(s) ({applied} applied); checkpoint {checkpoint}")
        else:
            logger.info(f"Pulled {len(records)} {kind.value} record(s) ({applied} applied)")
        self.status[kind].pulled += len(records)
        return records

    def push(self, kind: SyncKind) -> List[Dict[str, Any]]:
        """
        Pushes the queued records of one kind. Confirmed records leave the queue; records named in
        the response's errors stay queued for the next cycle. Returns the authoritative records.
        """
        kind = SyncKind(kind)
        queued = self.state_manager.get_queue(kind)
        if not queued:
            logger.debug(f"No queued {kind.value} records to push.")
            return []

        response = self.transport.push({kind.value: queued})

        authoritative = response.get(kind.value) or []
        failed_indices = {err.get("index") for err in (response.get("errors") or {}).get(kind.value, [])}
        confirmed = [rec for i, rec in enumerate(queued) if i not in failed_indices]
        if failed_indices:
            logger.warning(f"{len(failed_indices)} {kind.value} record(s) failed on the server and stay queued.")

        self.local_store.apply_authoritative(kind, authoritative)
        self.state_manager.remove_from_queue(kind, confirmed)
        self.status[kind].pushed += len(confirmed)
        return authoritative

    # --- Cycles ---

    def sync_kind(self, kind: SyncKind) -> bool:
        """
        Runs pull then push for one kind. Returns True when the cycle completed, False when it was
        skipped (kind busy) or failed with a transient error recorded in status.

        Raises:
            AuthenticationError: the credential was refused; needs_login is set.
        """
        kind = SyncKind(kind)
        lock = self._busy[kind]
        state = self.status[kind]
        if not lock.acquire(blocking=False):
            logger.info(f"Sync for {kind.value} already in progress. Skipping this request.")
            state.skipped += 1
            return False

        state.last_attempt_at = self.clock()
        try:
            self.pull(kind)
            self.push(kind)
        except AuthenticationError as e:
            state.last_error = e.message
            self.needs_login = True
            logger.error(f"Sync for {kind.value} stopped: {e.message}. A new login is required.")
            raise
        except (SyncError, DatabaseError) as e:
            if isinstance(e, StateError):
                logger.error(f"Local sync state unusable while syncing {kind.value}: {e}")
            else:
                logger.warning(f"Sync for {kind.value} failed ({type(e).__name__}): {e}. Retrying next cycle.")
            state.last_error = str(e)
            return False
        finally:
            lock.release()

        state.last_error = None
        state.last_success_at = self.clock()
        return True

    def sync_all(self) -> Dict[str, bool]:
        """One cycle over every kind. An authentication failure stops the cycle."""
        results: Dict[str, bool] = {}
        if self.needs_login:
            logger.warning("Skipping sync cycle: a new login is required.")
            return results
        for kind in self.kinds:
            try:
                results[kind.value] = self.sync_kind(kind)
            except AuthenticationError:
                break
        logger.info(f"Sync cycle finished: {results}")
        return results
