# shelfsync_Server_API/app/api/v1/endpoints/sync.py
# Description: FastAPI endpoint for the incremental sync protocol.
#   GET  /sync  -> pull every record of the requested kind(s) changed after a checkpoint.
#   POST /sync  -> push local records; each one is upserted and the authoritative version returned.
#
# Imports
import asyncio
import threading
from typing import Any, Dict, List, Optional, Tuple
#
# 3rd-party imports
from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
#
# Local Imports
from shelfsync_Server_API.app.api.v1.API_Deps.DB_Deps import get_sync_db_for_user
from shelfsync_Server_API.app.api.v1.schemas.sync_server_models import (
    ErrorResponse,
    SyncPullResponse,
    SyncPushPayload,
    SyncPushResponse,
)
from shelfsync_Server_API.app.core.AuthNZ.User_DB_Handling import User, get_request_user
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import SyncRecordsDB
from shelfsync_Server_API.app.core.Sync.change_query import ChangeQueryEngine
from shelfsync_Server_API.app.core.Sync.exceptions import SyncError, UpstreamStoreError
from shelfsync_Server_API.app.core.Sync.exceptions import ValidationError as SyncValidationError
from shelfsync_Server_API.app.core.Sync.models import ALL_KINDS, ChangeScope, SyncKind, to_epoch_ms
from shelfsync_Server_API.app.core.Sync.upsert import KindPushResult, UpsertEngine
#
#######################################################################################################################
#
# Functions:

router = APIRouter()

NO_CACHE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

_ERROR_RESPONSES = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse, "description": "Malformed parameters or body."},
    status.HTTP_403_FORBIDDEN: {"model": ErrorResponse, "description": "Missing or invalid bearer token."},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse, "description": "Record store failure."},
}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def parse_pull_params(since: Optional[str], kind: Optional[str]) -> Tuple[int, List[SyncKind]]:
    """
    Validates the pull query parameters.

    Returns the checkpoint in epoch ms and the kinds to query (all kinds when none is named).
    Raises ValidationError when since is missing or unparseable, or the kind is unknown.
    """
    since = _blank_to_none(since)
    if since is None:
        raise SyncValidationError('Missing required "since" parameter (epoch milliseconds)')
    try:
        since_ms = to_epoch_ms(since, "since")
    except SyncValidationError:
        raise SyncValidationError(f'Invalid "since" value \'{since}\'') from None
    if since_ms < 0:
        raise SyncValidationError(f'Invalid "since" value \'{since}\'')

    kind = _blank_to_none(kind)
    kinds = [SyncKind.parse(kind)] if kind else list(ALL_KINDS)
    return since_ms, kinds


class ServerSyncProcessor:
    """
    Runs one pull or push for one user against that user's record store.
    Methods are blocking and meant to be called through asyncio.to_thread.
    """

    def __init__(self, db: SyncRecordsDB, user_id: str):
        self.db = db
        self.user_id = user_id
        self.query_engine = ChangeQueryEngine(db)
        self.upsert_engine = UpsertEngine(db)

    def pull(self, since: int, kinds: List[SyncKind], scope: Optional[ChangeScope] = None,
             cancel_event: Optional[threading.Event] = None) -> Dict[str, Optional[List[Dict[str, Any]]]]:
        """All-or-nothing: any kind failing (or being cut short) fails the whole pull."""
        body: Dict[str, Optional[List[Dict[str, Any]]]] = {k.value: None for k in ALL_KINDS}
        errors_by_kind: Dict[str, str] = {}

        for kind in kinds:
            try:
                result = self.query_engine.query_changes(self.user_id, kind, since, scope=scope,
                                                         cancel_event=cancel_event)
            except UpstreamStoreError as e:
                errors_by_kind.update(e.errors_by_kind or {kind.value: e.message})
                continue
            if not result.complete:
                errors_by_kind[kind.value] = "query cancelled before all pages were read"
                continue
            body[kind.value] = result.records

        if errors_by_kind:
            logger.error(f"[{self.user_id}] Pull failed for {list(errors_by_kind)}; returning no partial data.")
            raise UpstreamStoreError.from_kind_errors(errors_by_kind)
        return body

    def push(self, payload: SyncPushPayload) -> Dict[str, Any]:
        """Per-record resilient: failing records are reported under 'errors', the rest are applied."""
        body: Dict[str, Any] = {k.value: None for k in ALL_KINDS}
        results: List[KindPushResult] = []

        for kind in ALL_KINDS:
            records = getattr(payload, kind.value)
            if records is None:
                continue
            result = self.upsert_engine.upsert_batch(self.user_id, kind, records)
            body[kind.value] = result.records
            results.append(result)

        submitted = sum(len(r.records) + len(r.errors) for r in results)
        failures = [(r.kind, f) for r in results for f in r.errors]
        store_failures = [(k, f) for k, f in failures if f.store_failure]
        # Nothing landed and the store is to blame: the whole push is worth retrying
        if submitted and store_failures and len(failures) == submitted:
            errors_by_kind: Dict[str, str] = {}
            for kind_name, failure in store_failures:
                errors_by_kind.setdefault(kind_name, failure.error)
            raise UpstreamStoreError.from_kind_errors(errors_by_kind)

        if failures:
            errors: Dict[str, List[Dict[str, Any]]] = {}
            for kind_name, failure in failures:
                errors.setdefault(kind_name, []).append(failure.to_dict())
            body["errors"] = errors
        return body


#######################################################################################################################
#
# Endpoints:

@router.get("",
            summary="Pull records changed since a checkpoint",
            response_model=SyncPullResponse,
            responses=_ERROR_RESPONSES)
async def pull_changes(
    since: Optional[str] = Query(None, description="Checkpoint in epoch milliseconds (exclusive)."),
    kind: Optional[str] = Query(None, alias="type", description="One of books, configs, notes, sessions, goals."),
    book: Optional[str] = Query(None, description="Restrict to records with this book_hash."),
    meta_hash: Optional[str] = Query(None, description="Restrict to records with this meta_hash."),
    current_user: User = Depends(get_request_user),
    db: SyncRecordsDB = Depends(get_sync_db_for_user),
):
    since_ms, kinds = parse_pull_params(since, kind)
    scope = ChangeScope(book=_blank_to_none(book), meta_hash=_blank_to_none(meta_hash))
    logger.info(f"[{current_user.id}] Pull since={since_ms} kinds={[k.value for k in kinds]} scope={scope}")

    processor = ServerSyncProcessor(db, current_user.id)
    cancel_event = threading.Event()
    try:
        body = await asyncio.to_thread(processor.pull, since_ms, kinds, scope, cancel_event)
    except asyncio.CancelledError:
        # Request abandoned; stop the worker from reading further pages
        cancel_event.set()
        raise
    return JSONResponse(content=body, headers=NO_CACHE_HEADERS)


@router.post("",
             summary="Push local records and receive their authoritative versions",
             response_model=SyncPushResponse,
             responses=_ERROR_RESPONSES)
async def push_changes(
    payload: SyncPushPayload,
    current_user: User = Depends(get_request_user),
    db: SyncRecordsDB = Depends(get_sync_db_for_user),
):
    counts = {k.value: len(getattr(payload, k.value)) for k in ALL_KINDS if getattr(payload, k.value) is not None}
    logger.info(f"[{current_user.id}] Push received: {counts}")

    processor = ServerSyncProcessor(db, current_user.id)
    body = await asyncio.to_thread(processor.push, payload)
    if body.get("errors"):
        failed = {k: len(v) for k, v in body["errors"].items()}
        logger.warning(f"[{current_user.id}] Push completed with per-record failures: {failed}")
    return JSONResponse(content=body, headers=NO_CACHE_HEADERS)


#######################################################################################################################
#
# Exception Handlers:

async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    status_code = exc.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.message}, headers=NO_CACHE_HEADERS)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors())
    logger.info(f"{request.method} {request.url.path} rejected (400): {details}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST,
                        content={"error": f"Invalid request: {details}"}, headers=NO_CACHE_HEADERS)


def add_sync_exception_handlers(app: FastAPI) -> None:
    """Renders sync errors as {"error": message} with the status each error class carries."""
    app.add_exception_handler(SyncError, sync_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)

#
# End of sync.py
#######################################################################################################################
