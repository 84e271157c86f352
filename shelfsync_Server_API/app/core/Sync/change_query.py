# Sync/change_query.py
# Description: Server-side change query engine. Returns every record of one kind changed or
#   tombstoned after a checkpoint, walking the record store page by page.
#
# Imports
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.core.config import settings
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import DatabaseError, SyncRecordsDB
from .exceptions import UpstreamStoreError
from .models import ChangeScope, KindSpec, get_kind_spec
#
########################################################################################################################


@dataclass
class ChangeQueryResult:
    kind: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    # False when the page walk was cancelled before the store ran out of rows
    complete: bool = True
    pages_fetched: int = 0


class ChangeQueryEngine:
    """Answers "what changed for this user and kind since <checkpoint>"."""

    def __init__(self, db: SyncRecordsDB, page_size: Optional[int] = None):
        self.db = db
        self.page_size = page_size or settings["SYNC_PAGE_SIZE"]

    def query_changes(self, user_id: str, kind, since: int, scope: Optional[ChangeScope] = None,
                      cancel_event: Optional[threading.Event] = None) -> ChangeQueryResult:
        """
        Collects all records with updated_at > since or deleted_at > since, newest first.

        Pages are requested sequentially with a fixed page size and a growing offset until a
        page comes back short. Setting cancel_event stops further page requests; the result is
        then flagged incomplete.

        Raises:
            UpstreamStoreError: the record store failed; errors_by_kind names the kind.
        """
        spec = get_kind_spec(kind)
        result = ChangeQueryResult(kind=spec.kind.value)
        offset = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"[{user_id}] Change query for {spec.kind.value} cancelled after "
                               f"{result.pages_fetched} page(s); returning partial result.")
                result.complete = False
                break
            logger.debug(f"[{user_id}] Querying {spec.table} since={since} offset={offset} scope={scope}")
            try:
                page = self.db.list_records(spec.kind, user_id, since=since, scope=scope,
                                            limit=self.page_size, offset=offset)
            except DatabaseError as e:
                logger.error(f"[{user_id}] Record store error querying {spec.kind.value}: {e}")
                raise UpstreamStoreError.from_kind_errors({spec.kind.value: str(e)}) from e
            result.pages_fetched += 1
            result.records.extend(page)
            if len(page) < self.page_size:
                break
            offset += self.page_size

        if spec.dedupe_fields:
            result.records = self._dedupe(spec, result.records)
        logger.info(f"[{user_id}] {spec.kind.value}: {len(result.records)} change(s) since {since} "
                    f"in {result.pages_fetched} page(s).")
        return result

    @staticmethod
    def _dedupe(spec: KindSpec, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        seen = set()
        unique = []
        for rec in records:
            key = "|".join(str(rec[f]) for f in spec.dedupe_fields if rec.get(f))
            if key and key in seen:
                continue
            seen.add(key)
            unique.append(rec)
        return unique

#
# End of Sync/change_query.py
########################################################################################################################
