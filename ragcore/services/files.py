"""
File administration: listing with statistics, activation, deletion.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from ragcore.registry.base import SourceFileRecord, SourceFileRegistry, check_scope
from ragcore.vectorstore.base import VectorStoreBase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileListing:
    items:                list[SourceFileRecord]
    total:                int
    page:                 int
    limit:                int
    active_files_count:   int
    total_passages_count: int


class FileService:

    def __init__(self, registry: SourceFileRegistry, vector_store: VectorStoreBase) -> None:
        self._registry = registry
        self._store    = vector_store

    async def list_files(
        self,
        scope_id: Optional[UUID] = None,
        page:     int = 1,
        limit:    int = 20,
    ) -> FileListing:
        page = max(1, page)
        limit = max(1, min(limit, 100))
        result = await self._registry.list_files(scope_id, offset=(page - 1) * limit, limit=limit)
        return FileListing(
            items=result.items,
            total=result.total,
            page=page,
            limit=limit,
            active_files_count=await self._registry.count_active(scope_id),
            total_passages_count=await self._store.count(scope_id),
        )

    async def set_active(
        self,
        file_id:  int,
        active:   bool,
        scope_id: Optional[UUID] = None,
    ) -> SourceFileRecord:
        record = await self._registry.set_active(file_id, active, scope_id)
        logger.info("Source file %s | file=%s", "activated" if active else "deactivated", file_id)
        return record

    async def delete_file(self, file_id: int, scope_id: Optional[UUID] = None) -> int:
        """Delete the file's passages, then the file. Returns passages removed."""
        check_scope(await self._registry.get(file_id), file_id, scope_id)
        removed = await self._store.delete_by_source_file(file_id)
        await self._registry.delete(file_id)
        logger.info("Source file deleted | file=%s passages=%d", file_id, removed)
        return removed
