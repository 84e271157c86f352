# sync_server_models.py
# Description: Request/response models for the /sync endpoint and the record kinds it carries.
#
# Imports
from typing import Any, Dict, List, Optional, Union
#
# 3rd-party Libraries
from pydantic import BaseModel, ConfigDict, Field
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# Timestamps arrive as epoch milliseconds or ISO 8601 strings; responses always use epoch milliseconds
Timestamp = Union[int, float, str]


# --- Record Models ---

class SyncRecordBase(BaseModel):
    """Envelope shared by every synchronized record. Unknown fields are carried through untouched."""
    user_id: Optional[str] = Field(None, description="Owning user. Always overwritten with the authenticated user.")
    updated_at: Optional[Timestamp] = Field(None, description="Last modification instant (epoch ms).")
    deleted_at: Optional[Timestamp] = Field(None, description="Soft-delete marker (epoch ms); null when live.")

    model_config = ConfigDict(extra="allow")


class BookRecord(SyncRecordBase):
    book_hash: str
    meta_hash: Optional[str] = None
    format: Optional[str] = None
    title: Optional[str] = None
    source_title: Optional[str] = None
    author: Optional[str] = None
    group_id: Optional[str] = None
    group_name: Optional[str] = None
    tags: Optional[List[str]] = None
    progress: Optional[List[int]] = None
    reading_status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[Timestamp] = None
    uploaded_at: Optional[Timestamp] = None

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "book_hash": "9f2c1e",
                "meta_hash": "a71b03",
                "format": "EPUB",
                "title": "Moby-Dick",
                "author": "Herman Melville",
                "progress": [120, 635],
                "updated_at": 1718000000000,
                "deleted_at": None,
            }
        },
    )


class BookConfigRecord(SyncRecordBase):
    book_hash: str
    meta_hash: Optional[str] = None
    location: Optional[str] = None
    xpointer: Optional[str] = None
    progress: Optional[List[int]] = None
    search_config: Optional[Dict[str, Any]] = None
    view_settings: Optional[Dict[str, Any]] = None
    created_at: Optional[Timestamp] = None


class BookNoteRecord(SyncRecordBase):
    book_hash: str
    meta_hash: Optional[str] = None
    id: str
    type: Optional[str] = Field(None, description="'bookmark', 'annotation' or 'excerpt'.")
    cfi: Optional[str] = None
    text: Optional[str] = None
    style: Optional[str] = None
    color: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[Timestamp] = None

    model_config = ConfigDict(
        extra="allow",
        json_schema_extra={
            "example": {
                "book_hash": "9f2c1e",
                "id": "note-1",
                "type": "annotation",
                "cfi": "epubcfi(/6/4!/4/2/1:0)",
                "text": "Call me Ishmael.",
                "note": "opening line",
                "updated_at": 1718000000000,
            }
        },
    )


class ReadingSessionRecord(SyncRecordBase):
    id: str
    book_hash: Optional[str] = None
    meta_hash: Optional[str] = None
    start_time: Optional[Timestamp] = None
    end_time: Optional[Timestamp] = None
    duration: Optional[int] = Field(None, description="Session length in seconds.")
    start_progress: Optional[float] = None
    end_progress: Optional[float] = None
    start_page: Optional[int] = None
    end_page: Optional[int] = None
    pages_read: Optional[int] = None
    created_at: Optional[Timestamp] = None


class ReadingGoalRecord(SyncRecordBase):
    id: str
    type: Optional[str] = Field(None, description="'daily', 'weekly', 'monthly' or 'yearly'.")
    target: Optional[int] = None
    unit: Optional[str] = Field(None, description="'minutes', 'pages' or 'books'.")
    start_date: Optional[str] = None
    active: Optional[bool] = None
    created_at: Optional[Timestamp] = None


# --- Request / Response Models ---

class SyncPushPayload(BaseModel):
    """
    Request body for POST /sync. Every key is optional; records are validated one by one by the
    upsert engine so that a malformed record fails alone instead of rejecting the whole push.
    """
    books: Optional[List[Any]] = None
    configs: Optional[List[Any]] = None
    notes: Optional[List[Any]] = None
    sessions: Optional[List[Any]] = None
    goals: Optional[List[Any]] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "notes": [
                    {"book_hash": "9f2c1e", "id": "note-1", "type": "bookmark", "cfi": "epubcfi(/6/4!/4)",
                     "note": "", "updated_at": 1718000000000}
                ]
            }
        }
    )


class SyncPullResponse(BaseModel):
    """Response body for GET /sync. Requested kinds are lists (possibly empty); the others are null."""
    books: Optional[List[BookRecord]] = None
    configs: Optional[List[BookConfigRecord]] = None
    notes: Optional[List[BookNoteRecord]] = None
    sessions: Optional[List[ReadingSessionRecord]] = None
    goals: Optional[List[ReadingGoalRecord]] = None


class RecordError(BaseModel):
    index: int = Field(..., description="Position of the failing record in the submitted list.")
    key: Dict[str, Any] = Field(default_factory=dict, description="Primary key fields of the failing record.")
    error: str


class SyncPushResponse(BaseModel):
    """Authoritative records per pushed kind, plus per-record failures when any occurred."""
    books: Optional[List[BookRecord]] = None
    configs: Optional[List[BookConfigRecord]] = None
    notes: Optional[List[BookNoteRecord]] = None
    sessions: Optional[List[ReadingSessionRecord]] = None
    goals: Optional[List[ReadingGoalRecord]] = None
    errors: Optional[Dict[str, List[RecordError]]] = None


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Human-readable error message.")

    model_config = ConfigDict(json_schema_extra={"example": {"error": "Not authenticated"}})

#
# End of sync_server_models.py
########################################################################################################################
