"""
Composed FastAPI Dependencies

Caller identity comes from the (external) auth layer, which forwards:
  X-User-ID    — owner recorded on uploaded files (required for writes)
  X-Tenant-ID  — scope id; when present every file operation is confined to it

Route handlers import from here; tests override the service providers with
app.dependency_overrides.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status

from ragcore.core.dependencies import (
    get_file_service,
    get_ingestion_service,
    get_search_service,
)
from ragcore.schemas.documents import ErrorResponse
from ragcore.services.files import FileService
from ragcore.services.ingestion import IngestionService
from ragcore.services.search import SearchService


@dataclass(frozen=True)
class Caller:
    user_id:  Optional[str]
    scope_id: Optional[UUID]


def get_caller(
    x_user_id:   Annotated[Optional[str], Header()] = None,
    x_tenant_id: Annotated[Optional[str], Header()] = None,
) -> Caller:
    scope_id: Optional[UUID] = None
    if x_tenant_id:
        try:
            scope_id = UUID(x_tenant_id)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ErrorResponse(
                    error_code="INVALID_TENANT",
                    message="X-Tenant-ID must be a UUID.",
                ).model_dump(),
            )
    return Caller(user_id=(x_user_id or "").strip() or None, scope_id=scope_id)


def require_user(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if not caller.user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=ErrorResponse(
                error_code="UNAUTHORIZED",
                message="Missing X-User-ID header.",
            ).model_dump(),
        )
    return caller


CurrentCaller = Annotated[Caller, Depends(get_caller)]
AuthenticatedCaller = Annotated[Caller, Depends(require_user)]
Ingestion = Annotated[IngestionService, Depends(get_ingestion_service)]
Files = Annotated[FileService, Depends(get_file_service)]
Search = Annotated[SearchService, Depends(get_search_service)]
