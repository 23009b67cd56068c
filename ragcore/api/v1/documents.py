"""
Source File API Router

  POST   /api/v1/files/upload            accept a file (202 / 400 / 409 / 413)
  GET    /api/v1/files/status?hash=      processing status by content hash
  GET    /api/v1/files/check-hash?hash=  pre-upload existence check
  GET    /api/v1/files                   list with statistics
  PATCH  /api/v1/files/{file_id}/active  activate / deactivate
  DELETE /api/v1/files/{file_id}         delete passages, then the file

Domain errors raised by the services are mapped to the ErrorResponse
envelope by the exception handlers in ragcore.main.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, File, Form, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from ragcore.api.dependencies import AuthenticatedCaller, CurrentCaller, Files, Ingestion
from ragcore.core.config import settings
from ragcore.registry.base import SourceFileRecord
from ragcore.schemas.documents import (
    ApiErrors,
    ErrorResponse,
    FileListResponse,
    FileStatistics,
    FileStatusResponse,
    HashCheckResponse,
    SetActiveRequest,
    SourceFileResponse,
    UploadAcceptedResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/files",
    tags=["Source Files"],
)


def _to_response(record: SourceFileRecord) -> SourceFileResponse:
    return SourceFileResponse(
        id=record.id,
        display_name=record.display_name,
        content_hash=record.content_hash,
        status=record.status,
        active=record.active,
        owner_id=record.owner_id,
        scope_id=record.scope_id,
        passage_count=record.passage_count,
        error_code=record.error_code,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


# ---------------------------------------------------------------------------
# POST /files/upload
# ---------------------------------------------------------------------------

@router.post(
    "/upload",
    response_model=UploadAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Upload a file for ingestion",
    description=(
        "Accepts PDF, DOCX, TXT or MD files. Returns 202 immediately; processing "
        "is asynchronous. Poll GET /files/status?hash=<sha256> for progress."
    ),
    responses={
        202: {"model": UploadAcceptedResponse, "description": "File accepted for processing"},
        400: {"model": ErrorResponse, "description": "Empty file, unsupported type or hash mismatch"},
        401: {"model": ErrorResponse, "description": "Missing caller identity"},
        409: {"model": ErrorResponse, "description": "Identical content already uploaded"},
        413: {"model": ErrorResponse, "description": "File exceeds the upload limit"},
    },
)
async def upload_file(
    request:   Request,
    caller:    AuthenticatedCaller,
    service:   Ingestion,
    file:      UploadFile = File(..., description="Source document"),
    file_hash: Optional[str] = Form(None, description="Optional client-computed SHA-256"),
) -> JSONResponse:
    # Guard: reject oversized requests before reading body
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > settings.max_upload_bytes + 4096:
        return JSONResponse(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            content=ApiErrors.invalid_upload(
                f"Upload exceeds the {settings.max_upload_bytes:,} byte limit."
            ).model_dump(mode="json"),
        )

    data = await file.read()
    receipt = await service.accept_upload(
        data,
        file.filename or "upload",
        owner_id=caller.user_id,
        scope_id=caller.scope_id,
        expected_hash=file_hash,
    )

    body = UploadAcceptedResponse(
        file_id=receipt.file_id,
        content_hash=receipt.content_hash,
        status=receipt.status,
        display_name=receipt.display_name,
        size_bytes=receipt.size_bytes,
    )
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content=body.model_dump(mode="json"),
        headers={
            "X-File-ID": str(receipt.file_id),
            "Location":  f"/api/v1/files/status?hash={receipt.content_hash}",
        },
    )


# ---------------------------------------------------------------------------
# GET /files/status?hash=
# ---------------------------------------------------------------------------

@router.get(
    "/status",
    response_model=FileStatusResponse,
    summary="Poll processing status by content hash",
    responses={404: {"model": FileStatusResponse, "description": "No file with this hash"}},
)
async def get_file_status(
    service: Ingestion,
    hash:    str = Query(..., min_length=64, max_length=64, description="SHA-256 hex digest"),
) -> JSONResponse:
    view = await service.status_by_hash(hash)
    body = FileStatusResponse(
        exists=view.exists,
        status=view.status,
        file_id=view.file_id,
        display_name=view.display_name,
        passage_count=view.passage_count,
        error_code=view.error_code,
        error_message=view.error_message,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if view.exists else status.HTTP_404_NOT_FOUND,
        content=body.model_dump(mode="json"),
    )


@router.get(
    "/check-hash",
    response_model=HashCheckResponse,
    summary="Check whether identical content was already uploaded",
)
async def check_hash(
    service: Ingestion,
    hash:    str = Query(..., min_length=64, max_length=64, description="SHA-256 hex digest"),
) -> HashCheckResponse:
    return HashCheckResponse(exists=await service.hash_exists(hash))


# ---------------------------------------------------------------------------
# File administration
# ---------------------------------------------------------------------------

@router.get("", response_model=FileListResponse, summary="List source files with statistics")
async def list_files(
    caller:  CurrentCaller,
    service: Files,
    page:    int = Query(1, ge=1),
    limit:   int = Query(20, ge=1, le=100),
) -> FileListResponse:
    listing = await service.list_files(caller.scope_id, page=page, limit=limit)
    return FileListResponse(
        files=[_to_response(r) for r in listing.items],
        total=listing.total,
        page=listing.page,
        limit=listing.limit,
        statistics=FileStatistics(
            active_files_count=listing.active_files_count,
            total_passages_count=listing.total_passages_count,
        ),
    )


@router.patch(
    "/{file_id}/active",
    response_model=SourceFileResponse,
    summary="Activate or deactivate a file for search",
    responses={404: {"model": ErrorResponse}},
)
async def set_file_active(
    file_id: int,
    payload: SetActiveRequest,
    caller:  CurrentCaller,
    service: Files,
) -> SourceFileResponse:
    record = await service.set_active(file_id, payload.active, caller.scope_id)
    return _to_response(record)


@router.delete(
    "/{file_id}",
    status_code=status.HTTP_200_OK,
    summary="Delete a file and all of its passages",
    responses={404: {"model": ErrorResponse}},
)
async def delete_file(
    file_id: int,
    caller:  CurrentCaller,
    service: Files,
) -> dict:
    removed = await service.delete_file(file_id, caller.scope_id)
    return {"deleted": True, "file_id": file_id, "passages_removed": removed}
