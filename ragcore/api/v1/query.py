"""
Search API Router

  POST /api/v1/search   query → passages ranked by cosine similarity

Only passages of active, completed files are returned. An unknown scope name
is a 404; an unavailable embedding provider or store is a 503.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from ragcore.api.dependencies import Search
from ragcore.schemas.documents import (
    ApiErrors,
    ErrorResponse,
    SearchHitResponse,
    SearchRequest,
    SearchResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Search"])


@router.post(
    "/search",
    response_model=SearchResponse,
    summary="Semantic search over ingested passages",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse, "description": "Unknown scope"},
        503: {"model": ErrorResponse, "description": "Embedding provider or store unavailable"},
    },
)
async def search(payload: SearchRequest, service: Search) -> SearchResponse:
    try:
        hits = await service.search_documents(
            payload.query,
            limit=payload.limit,
            threshold=payload.threshold,
            scope_name=payload.scope,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ApiErrors.invalid_query(str(exc)).model_dump(),
        )

    return SearchResponse(
        query=payload.query,
        results=[
            SearchHitResponse(
                passage_id=hit.passage.id,
                source_file_id=hit.passage.source_file_id,
                content=hit.passage.content,
                similarity=hit.similarity,
            )
            for hit in hits
        ],
        count=len(hits),
    )
