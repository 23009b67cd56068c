"""
In-memory Source File Registry.

Used by the test-suite and by single-process local runs
(VECTOR_STORE_BACKEND=memory). Every mutation runs under one asyncio.Lock,
which plays the role of the UNIQUE(content_hash) constraint: of two concurrent
creates with the same hash exactly one succeeds.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from ragcore.core.exceptions import DuplicateContentError, SourceFileNotFoundError
from ragcore.registry.base import (
    SourceFilePage,
    SourceFileRecord,
    SourceFileRegistry,
    check_scope,
    check_transition,
)
from ragcore.schemas.documents import FileStatus

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemorySourceFileRegistry(SourceFileRegistry):

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._rows: dict[int, SourceFileRecord] = {}
        self._by_hash: dict[str, int] = {}

    async def create(
        self,
        *,
        display_name: str,
        content_hash: str,
        owner_id:     str,
        scope_id:     Optional[UUID] = None,
        storage_key:  Optional[str] = None,
    ) -> SourceFileRecord:
        async with self._lock:
            existing_id = self._by_hash.get(content_hash)
            if existing_id is not None:
                raise DuplicateContentError(content_hash, existing_id)

            now = _now()
            record = SourceFileRecord(
                id=next(self._ids),
                display_name=display_name,
                content_hash=content_hash,
                status=FileStatus.PROCESSING,
                owner_id=owner_id,
                scope_id=scope_id,
                storage_key=storage_key,
                created_at=now,
                updated_at=now,
            )
            self._rows[record.id] = record
            self._by_hash[content_hash] = record.id

        logger.debug("Source file registered | id=%s hash=%s", record.id, content_hash)
        return record

    async def get(self, file_id: int) -> Optional[SourceFileRecord]:
        return self._rows.get(file_id)

    async def get_by_hash(self, content_hash: str) -> Optional[SourceFileRecord]:
        file_id = self._by_hash.get(content_hash)
        return self._rows.get(file_id) if file_id is not None else None

    async def transition(
        self,
        file_id:       int,
        target:        FileStatus,
        *,
        passage_count: Optional[int] = None,
        error_code:    Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> SourceFileRecord:
        async with self._lock:
            record = self._rows.get(file_id)
            if record is None:
                raise SourceFileNotFoundError(file_id)
            check_transition(record, target)

            changes: dict = {"status": target, "updated_at": _now()}
            if passage_count is not None:
                changes["passage_count"] = passage_count
            if target is FileStatus.FAILED:
                changes["error_code"] = error_code
                changes["error_message"] = error_message
            updated = replace(record, **changes)
            self._rows[file_id] = updated
        return updated

    async def clear_storage_key(self, file_id: int) -> None:
        async with self._lock:
            record = self._rows.get(file_id)
            if record is not None:
                self._rows[file_id] = replace(record, storage_key=None, updated_at=_now())

    async def set_active(
        self,
        file_id:  int,
        active:   bool,
        scope_id: Optional[UUID] = None,
    ) -> SourceFileRecord:
        async with self._lock:
            record = check_scope(self._rows.get(file_id), file_id, scope_id)
            updated = replace(record, active=active, updated_at=_now())
            self._rows[file_id] = updated
        return updated

    async def delete(self, file_id: int) -> None:
        async with self._lock:
            record = self._rows.pop(file_id, None)
            if record is None:
                raise SourceFileNotFoundError(file_id)
            self._by_hash.pop(record.content_hash, None)

    async def list_files(
        self,
        scope_id: Optional[UUID] = None,
        offset:   int = 0,
        limit:    int = 20,
    ) -> SourceFilePage:
        rows = [r for r in self._rows.values() if scope_id is None or r.scope_id == scope_id]
        rows.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return SourceFilePage(items=rows[offset : offset + limit], total=len(rows))

    async def count_active(self, scope_id: Optional[UUID] = None) -> int:
        return sum(
            1 for r in self._rows.values()
            if r.active and (scope_id is None or r.scope_id == scope_id)
        )

    async def list_stale(self, older_than: datetime) -> list[SourceFileRecord]:
        return [
            r for r in self._rows.values()
            if r.status is FileStatus.PROCESSING and r.updated_at < older_than
        ]

    # ------------------------------------------------------------------
    # Synchronous lookup for the in-memory vector store's filters
    # ------------------------------------------------------------------

    def snapshot(self, file_id: int) -> Optional[SourceFileRecord]:
        return self._rows.get(file_id)
