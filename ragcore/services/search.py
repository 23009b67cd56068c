"""
Search Service — query string → ranked passages.

  1. Validate the query and clamp the limit
  2. Resolve the optional scope name (unknown → ScopeNotFoundError)
  3. Embed the query (one gateway call per search; nothing is cached)
  4. Filtered vector search over active, completed source files

Gateway and store errors propagate to the caller unchanged.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from ragcore.core.config import Settings, settings
from ragcore.processing.embeddings import EmbeddingGateway
from ragcore.services.scopes import ScopeResolver
from ragcore.vectorstore.base import SearchHit, VectorStoreBase

logger = logging.getLogger(__name__)


class SearchService:

    def __init__(
        self,
        gateway:      EmbeddingGateway,
        vector_store: VectorStoreBase,
        scopes:       ScopeResolver,
        config:       Settings = settings,
    ) -> None:
        self._gateway = gateway
        self._store   = vector_store
        self._scopes  = scopes
        self._cfg     = config

    async def search_documents(
        self,
        query:      str,
        limit:      Optional[int] = None,
        threshold:  Optional[float] = None,
        scope_name: Optional[str] = None,
    ) -> list[SearchHit]:
        if not query or not query.strip():
            raise ValueError("query must not be blank")

        limit = self._cfg.search_default_limit if limit is None else limit
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        limit = min(limit, self._cfg.search_max_limit)
        threshold = self._cfg.search_default_threshold if threshold is None else threshold

        scope_id = await self._scopes.resolve(scope_name) if scope_name else None

        t0 = time.monotonic()
        query_embedding = await self._gateway.embed_one(query)
        hits = await self._store.search(
            query_embedding,
            limit=limit,
            threshold=threshold,
            scope_id=scope_id,
            require_active=True,
        )

        logger.info(
            "Search | scope=%s limit=%d threshold=%.2f hits=%d top=%.3f elapsed_ms=%.0f",
            scope_name or "-", limit, threshold, len(hits),
            hits[0].similarity if hits else 0.0,
            (time.monotonic() - t0) * 1000,
        )
        return hits
