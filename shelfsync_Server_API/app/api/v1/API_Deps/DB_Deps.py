# DB_Deps.py
# Description: Manages the per-user sync record store instances.
#
# Imports
import threading
from pathlib import Path
from typing import Optional

# 3rd-party Libraries
from cachetools import LRUCache
from fastapi import Depends
from loguru import logger

# Local Imports
from shelfsync_Server_API.app.core.AuthNZ.User_DB_Handling import User, get_request_user
from shelfsync_Server_API.app.core.config import settings
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import DatabaseError, SyncRecordsDB
from shelfsync_Server_API.app.core.Sync.exceptions import UpstreamStoreError

#######################################################################################################################

USER_DB_BASE_DIR: Path = settings["USER_DB_BASE_DIR"]
SYNC_DB_FILENAME = "sync_records.sqlite"

# --- Global Cache for User DB Instances ---
MAX_CACHED_DB_INSTANCES = 100

# Keyed by user id
_user_db_instances: LRUCache = LRUCache(maxsize=MAX_CACHED_DB_INSTANCES)
_user_db_lock = threading.Lock()  # Protects access to _user_db_instances

#######################################################################################################################

# --- Helper Functions ---

def _get_db_path_for_user(user_id: str) -> Path:
    """Returns the record store file for a user, creating the user's directory when needed."""
    user_dir = USER_DB_BASE_DIR / str(user_id)
    try:
        user_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create database directory for user_id {user_id} at {user_dir}: {e}")
        raise IOError(f"Could not initialize storage directory for user {user_id}.") from e
    return user_dir / SYNC_DB_FILENAME


def get_sync_db_for_user_id(user_id: str) -> SyncRecordsDB:
    """Returns the cached SyncRecordsDB for user_id, opening it on first use."""
    with _user_db_lock:
        db_instance: Optional[SyncRecordsDB] = _user_db_instances.get(user_id)
        if db_instance:
            logger.debug(f"Using cached SyncRecordsDB instance for user_id: {user_id}")
            return db_instance

        db_path: Optional[Path] = None
        try:
            db_path = _get_db_path_for_user(user_id)
            logger.info(f"Initializing SyncRecordsDB for user {user_id} at path: {db_path}")
            db_instance = SyncRecordsDB(db_path=db_path, client_id="server")
        except (DatabaseError, IOError) as e:
            log_path = db_path or f"directory for user_id {user_id}"
            logger.error(f"Failed to initialize record store for user {user_id} at {log_path}: {e}")
            raise UpstreamStoreError(f"Could not initialize record store: {e}") from e

        _user_db_instances[user_id] = db_instance
        return db_instance


# --- Main Dependency Function ---

async def get_sync_db_for_user(current_user: User = Depends(get_request_user)) -> SyncRecordsDB:
    """
    FastAPI dependency returning the record store of the authenticated user.

    Raises:
        AuthenticationError: via get_request_user.
        UpstreamStoreError: the store could not be opened.
    """
    return get_sync_db_for_user_id(current_user.id)


def close_all_cached_dbs():
    """Drops every cached instance. Connections are thread-local, so only the caller's thread is closed."""
    with _user_db_lock:
        for user_id, db_instance in list(_user_db_instances.items()):
            try:
                db_instance.close_connection()
            except Exception as e:
                logger.error(f"Error closing record store for user {user_id}: {e}")
        _user_db_instances.clear()
    logger.info("Closed all cached sync record stores.")

#
# End of DB_Deps.py
#######################################################################################################################
