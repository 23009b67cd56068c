"""
Source File & Search — Pydantic Request/Response Schemas

Covers:
  - Upload acceptance (202) and the structured error bodies (400, 404, 409, 413, 503)
  - Status-by-hash lookups polled by clients after an upload
  - File listing / activation
  - Search requests and ranked results

Design decisions:
  - content_hash is SHA-256 of the raw file bytes, computed server-side.
  - status is the async pipeline state, separate from the HTTP status.
  - file ids are server-generated integers; never client-supplied.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Processing pipeline state machine
# ---------------------------------------------------------------------------

class FileStatus(str, Enum):
    """
    Maps to source_files.status.
    Transitions: processing → completed | failed (both terminal)
    """
    PROCESSING = "processing"   # accepted, worker extracting + chunking + embedding
    COMPLETED  = "completed"    # every passage persisted, searchable
    FAILED     = "failed"       # unrecoverable pipeline error

    @property
    def is_terminal(self) -> bool:
        return self is not FileStatus.PROCESSING

    def can_transition_to(self, target: "FileStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[FileStatus, frozenset[FileStatus]] = {
    FileStatus.PROCESSING: frozenset({FileStatus.COMPLETED, FileStatus.FAILED}),
    FileStatus.COMPLETED:  frozenset(),
    FileStatus.FAILED:     frozenset(),
}


class LookupStatus(str, Enum):
    """Status reported by a hash lookup; adds not_found to FileStatus."""
    NOT_FOUND  = "not_found"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Upload: 202 Accepted
# ---------------------------------------------------------------------------

class UploadAcceptedResponse(BaseModel):
    """
    Returned immediately after a successful upload.
    HTTP 202 — the bytes are stored but processing is async.
    """
    file_id:       int        = Field(..., description="Server-generated source file id")
    content_hash:  str        = Field(..., description="SHA-256 hex digest of the uploaded file")
    status:        FileStatus = Field(
        FileStatus.PROCESSING,
        description="Async pipeline state — poll /files/status?hash= for updates",
    )
    display_name:  str        = Field(..., description="Sanitized display name")
    size_bytes:    int        = Field(..., description="File size in bytes")


# ---------------------------------------------------------------------------
# Status lookups
# ---------------------------------------------------------------------------

class FileStatusResponse(BaseModel):
    """Polled by clients to track async processing progress."""
    exists:        bool
    status:        LookupStatus
    file_id:       Optional[int] = None
    display_name:  Optional[str] = None
    passage_count: int           = Field(0, description="Passages persisted for this file")
    error_code:    Optional[str] = None
    error_message: Optional[str] = None


class HashCheckResponse(BaseModel):
    exists: bool


# ---------------------------------------------------------------------------
# File administration
# ---------------------------------------------------------------------------

class SourceFileResponse(BaseModel):
    id:            int
    display_name:  str
    content_hash:  str
    status:        FileStatus
    active:        bool
    owner_id:      str
    scope_id:      Optional[UUID] = None
    passage_count: int = 0
    error_code:    Optional[str] = None
    created_at:    Optional[datetime] = None
    updated_at:    Optional[datetime] = None


class FileStatistics(BaseModel):
    active_files_count:   int = 0
    total_passages_count: int = 0


class FileListResponse(BaseModel):
    files:      list[SourceFileResponse]
    total:      int
    page:       int
    limit:      int
    statistics: FileStatistics


class SetActiveRequest(BaseModel):
    active: bool


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class SearchRequest(BaseModel):
    query:     str            = Field(..., min_length=1, max_length=4000)
    limit:     int            = Field(5, ge=1, le=50)
    threshold: float          = Field(0.5, ge=-1.0, le=1.0)
    scope:     Optional[str]  = Field(None, description="Scope name; unknown names are rejected")

    @field_validator("query")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value


class SearchHitResponse(BaseModel):
    passage_id:     int
    source_file_id: int
    content:        str
    similarity:     float


class SearchResponse(BaseModel):
    query:   str
    results: list[SearchHitResponse]
    count:   int


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   Optional[str] = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str           = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: Optional[str]     = Field(None, description="Trace ID for log correlation")


class ApiErrors:
    """Factories for every documented error case (keeps route handlers thin)."""

    @staticmethod
    def invalid_upload(message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_UPLOAD",
            message=message,
            details=[ErrorDetail(field="file", message=message, code="INVALID_UPLOAD")],
        )

    @staticmethod
    def invalid_query(message: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="INVALID_QUERY",
            message=message,
            details=[ErrorDetail(field="query", message=message, code="INVALID_QUERY")],
        )

    @staticmethod
    def duplicate_content(content_hash: str, existing_id: Optional[int]) -> ErrorResponse:
        return ErrorResponse(
            error_code="DUPLICATE_CONTENT",
            message="This file has already been uploaded.",
            details=[
                ErrorDetail(
                    field="file",
                    message=(
                        f"A file with hash '{content_hash}' already exists "
                        f"(file_id: {existing_id}). "
                        "To re-ingest, delete the existing file first."
                    ),
                    code="DUPLICATE_CONTENT",
                )
            ],
        )

    @staticmethod
    def file_not_found(file_id: int) -> ErrorResponse:
        return ErrorResponse(
            error_code="FILE_NOT_FOUND",
            message=f"Source file '{file_id}' was not found.",
        )

    @staticmethod
    def scope_not_found(scope_name: str) -> ErrorResponse:
        return ErrorResponse(
            error_code="SCOPE_NOT_FOUND",
            message=f"Scope '{scope_name}' does not exist.",
        )

    @staticmethod
    def upstream_unavailable(code: str, request_id: Optional[str] = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=code.upper(),
            message="A backing service is temporarily unavailable. Please retry.",
            request_id=request_id,
        )

    @staticmethod
    def internal_error(request_id: Optional[str] = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
