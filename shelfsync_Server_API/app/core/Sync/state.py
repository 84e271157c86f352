# Sync/state.py
# Description: Persistent device sync state: one checkpoint per kind and the queue of local records awaiting push.
import json
import os
import threading
from typing import Any, Dict, Iterable, List

from loguru import logger

from shelfsync_Server_API.app.core.config import DEFAULT_STATE_FILE
from .exceptions import StateError
from .models import SyncKind, get_kind_spec, primary_key_of, record_change_time

ONE_DAY_IN_MS = 24 * 60 * 60 * 1000
# Checkpoints older than this are discarded on startup and the kind is fully resynced
STALE_CHECKPOINT_MS = 3 * ONE_DAY_IN_MS


def startup_checkpoint(checkpoint: int, now: int) -> int:
    """
    Adjusts a persisted checkpoint when the device starts.

    Older than three days: 0 (full resync). Otherwise rolled back one day, never below 0,
    so records whose timestamps trail the checkpoint slightly are fetched again.
    """
    if checkpoint <= 0 or now - checkpoint > STALE_CHECKPOINT_MS:
        return 0
    return max(0, checkpoint - ONE_DAY_IN_MS)


class SyncStateManager:
    """Manages persistent sync state using a JSON file."""

    def __init__(self, state_file_path: str = DEFAULT_STATE_FILE):
        self.state_file_path = state_file_path
        self._lock = threading.RLock()
        logger.info(f"Sync state manager initialized with file: {self.state_file_path}")

    def _load_state(self) -> Dict[str, Any]:
        if not os.path.exists(self.state_file_path):
            return {}
        try:
            with open(self.state_file_path, 'r', encoding='utf-8') as f:
                state = json.load(f)
        except (IOError, json.JSONDecodeError) as e:
            logger.error(f"Error loading sync state from {self.state_file_path}: {e}")
            raise StateError(f"Failed to load sync state: {e}") from e
        if not isinstance(state, dict):
            raise StateError(f"Sync state file {self.state_file_path} does not hold a JSON object")
        return state

    def _save_state(self, state: Dict[str, Any]):
        tmp_path = f"{self.state_file_path}.tmp"
        try:
            os.makedirs(os.path.dirname(self.state_file_path) or '.', exist_ok=True)
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_path, self.state_file_path)
        except (IOError, OSError) as e:
            logger.error(f"Error saving sync state to {self.state_file_path}: {e}")
            raise StateError(f"Failed to save sync state: {e}") from e

    # --- Checkpoints ---

    def get_checkpoint(self, kind: SyncKind) -> int:
        with self._lock:
            value = self._load_state().get("checkpoints", {}).get(SyncKind(kind).value, 0)
        return int(value or 0)

    def set_checkpoint(self, kind: SyncKind, value: int):
        with self._lock:
            state = self._load_state()
            state.setdefault("checkpoints", {})[SyncKind(kind).value] = int(value)
            self._save_state(state)
        logger.debug(f"Checkpoint for {SyncKind(kind).value} set to {value}")

    def advance_checkpoint(self, kind: SyncKind, candidate: int) -> int:
        """Moves the checkpoint forward to candidate; never moves it backwards. Returns the stored value."""
        with self._lock:
            current = self.get_checkpoint(kind)
            if candidate > current:
                self.set_checkpoint(kind, candidate)
                return candidate
            return current

    # --- Push Queue ---

    def get_queue(self, kind: SyncKind) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load_state().get("queue", {}).get(SyncKind(kind).value, []))

    def enqueue(self, kind: SyncKind, record: Dict[str, Any]):
        """Queues a record for push. A queued record with the same key is replaced by the newer version."""
        spec = get_kind_spec(kind)
        key = primary_key_of(spec, record)
        with self._lock:
            state = self._load_state()
            queue = state.setdefault("queue", {}).setdefault(spec.kind.value, [])
            queue[:] = [r for r in queue if primary_key_of(spec, r) != key]
            queue.append(record)
            self._save_state(state)
        logger.debug(f"Queued {spec.kind.value} {key}; {len(queue)} record(s) pending.")

    def remove_from_queue(self, kind: SyncKind, pushed: Iterable[Dict[str, Any]]) -> int:
        """
        Drops queued records confirmed by a push. A record re-queued with a newer change
        time while the push was in flight stays queued. Returns how many were removed.
        """
        spec = get_kind_spec(kind)
        confirmed = {primary_key_of(spec, r): record_change_time(r) for r in pushed}
        if not confirmed:
            return 0
        with self._lock:
            state = self._load_state()
            queue = state.get("queue", {}).get(spec.kind.value, [])
            remaining = []
            for rec in queue:
                key = primary_key_of(spec, rec)
                if key in confirmed and record_change_time(rec) <= confirmed[key]:
                    continue
                remaining.append(rec)
            removed = len(queue) - len(remaining)
            state.setdefault("queue", {})[spec.kind.value] = remaining
            self._save_state(state)
        logger.debug(f"Removed {removed} confirmed {spec.kind.value} record(s) from the queue.")
        return removed

    def queue_size(self, kind: SyncKind) -> int:
        return len(self.get_queue(kind))

#
# End of Sync/state.py
########################################################################################################################
