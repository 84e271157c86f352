# Sync/run_client.py
# Description: Command-line runner for the device sync client (shelfsync-client).
#
# Imports
import argparse
import sys
import time
from typing import List, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.core.config import load_client_config
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import DatabaseError, SyncRecordsDB
from .core import SyncManager
from .local_store import LocalRecordStore
from .models import ALL_KINDS, SyncKind
from .state import SyncStateManager
from .transport import SyncClient
#
########################################################################################################################


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shelfsync-client", description="Synchronize a local library with a shelfsync server.")
    parser.add_argument("--config", help="INI file with a [Sync] section.")
    parser.add_argument("--kind", action="append", choices=[k.value for k in ALL_KINDS],
                        help="Kind to sync; repeat for several. Defaults to all kinds.")
    parser.add_argument("--loop", action="store_true", help="Keep syncing every interval_seconds.")
    parser.add_argument("--log-level", default="INFO")
    return parser


def build_manager(client_config: dict, kinds: Optional[List[str]] = None) -> SyncManager:
    token = client_config.get("token")
    transport = SyncClient(client_config["server_url"], token_provider=lambda: token,
                           timeout=client_config["timeout_seconds"])
    local_db = SyncRecordsDB(client_config["local_db_path"], client_id=client_config["user_id"])
    return SyncManager(
        transport=transport,
        state_manager=SyncStateManager(client_config["state_file"]),
        local_store=LocalRecordStore(local_db, client_config["user_id"]),
        kinds=[SyncKind(k) for k in kinds] if kinds else ALL_KINDS,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    try:
        client_config = load_client_config(args.config)
        manager = build_manager(client_config, args.kind)
    except (FileNotFoundError, DatabaseError) as e:
        logger.error(f"Could not start sync client: {e}")
        return 2

    manager.initialize_checkpoints()
    while True:
        results = manager.sync_all()
        if manager.needs_login:
            logger.error("Server refused the credential. Update the token and run again.")
            return 1
        if not args.loop:
            return 0 if results and all(results.values()) else 1
        time.sleep(client_config["interval_seconds"])


if __name__ == "__main__":
    sys.exit(main())

#
# End of Sync/run_client.py
########################################################################################################################
