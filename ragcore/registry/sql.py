"""
PostgreSQL Source File Registry (SQLAlchemy async).

Dedup relies on UNIQUE(source_files.content_hash): the pre-check in the
ingestion service is only a fast path, and a concurrent insert of the same
hash surfaces here as IntegrityError → DuplicateContentError.

Status transitions are a single conditional UPDATE
(`... WHERE id = :id AND status = 'processing'`), so two workers finishing the
same file cannot both win.
"""

from __future__ import annotations

import logging
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ragcore.core.exceptions import (
    DuplicateContentError,
    InvalidStatusTransitionError,
    PersistenceError,
    SourceFileNotFoundError,
)
from ragcore.db.session import get_session
from ragcore.models.documents import SourceFile
from ragcore.registry.base import (
    SourceFilePage,
    SourceFileRecord,
    SourceFileRegistry,
    check_scope,
)
from ragcore.schemas.documents import FileStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def to_record(row: SourceFile) -> SourceFileRecord:
    return SourceFileRecord(
        id=row.id,
        display_name=row.display_name,
        content_hash=row.content_hash,
        status=FileStatus(row.status),
        owner_id=row.owner_id,
        active=row.active,
        scope_id=row.scope_id,
        storage_key=row.storage_key,
        passage_count=row.passage_count,
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlSourceFileRegistry(SourceFileRegistry):

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    async def create(
        self,
        *,
        display_name: str,
        content_hash: str,
        owner_id:     str,
        scope_id:     Optional[UUID] = None,
        storage_key:  Optional[str] = None,
    ) -> SourceFileRecord:
        row = SourceFile(
            display_name=display_name,
            content_hash=content_hash,
            status=FileStatus.PROCESSING.value,
            owner_id=owner_id,
            active=True,
            scope_id=scope_id,
            storage_key=storage_key,
            passage_count=0,
        )
        try:
            async with self._session() as session:
                session.add(row)
                await session.flush()
                await session.refresh(row)
                record = to_record(row)
        except IntegrityError as exc:
            # Race: another upload committed the same hash first
            existing = await self.get_by_hash(content_hash)
            if existing is not None:
                logger.warning("Duplicate hash on insert | hash=%s existing=%s", content_hash, existing.id)
                raise DuplicateContentError(content_hash, existing.id) from exc
            raise PersistenceError(f"Could not register source file: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not register source file: {exc}") from exc

        logger.debug("Source file registered | id=%s hash=%s", record.id, content_hash)
        return record

    async def get(self, file_id: int) -> Optional[SourceFileRecord]:
        async with self._session() as session:
            row = await session.get(SourceFile, file_id)
            return to_record(row) if row is not None else None

    async def get_by_hash(self, content_hash: str) -> Optional[SourceFileRecord]:
        async with self._session() as session:
            row = await session.scalar(
                select(SourceFile).where(SourceFile.content_hash == content_hash)
            )
            return to_record(row) if row is not None else None

    async def transition(
        self,
        file_id:       int,
        target:        FileStatus,
        *,
        passage_count: Optional[int] = None,
        error_code:    Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> SourceFileRecord:
        if not FileStatus.PROCESSING.can_transition_to(target):
            current = await self.get(file_id)
            if current is None:
                raise SourceFileNotFoundError(file_id)
            raise InvalidStatusTransitionError(file_id, current.status.value, target.value)

        values: dict = {"status": target.value, "updated_at": func.now()}
        if passage_count is not None:
            values["passage_count"] = passage_count
        if target is FileStatus.FAILED:
            values["error_code"] = error_code
            values["error_message"] = error_message

        stmt = (
            update(SourceFile)
            .where(
                SourceFile.id == file_id,
                SourceFile.status == FileStatus.PROCESSING.value,
            )
            .values(**values)
            .returning(SourceFile)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is not None:
                return to_record(row)

        current = await self.get(file_id)
        if current is None:
            raise SourceFileNotFoundError(file_id)
        raise InvalidStatusTransitionError(file_id, current.status.value, target.value)

    async def clear_storage_key(self, file_id: int) -> None:
        async with self._session() as session:
            await session.execute(
                update(SourceFile)
                .where(SourceFile.id == file_id)
                .values(storage_key=None, updated_at=func.now())
            )

    async def set_active(
        self,
        file_id:  int,
        active:   bool,
        scope_id: Optional[UUID] = None,
    ) -> SourceFileRecord:
        async with self._session() as session:
            row = await session.get(SourceFile, file_id, with_for_update=True)
            check_scope(to_record(row) if row is not None else None, file_id, scope_id)
            row.active = active
            await session.flush()
            await session.refresh(row)
            return to_record(row)

    async def delete(self, file_id: int) -> None:
        async with self._session() as session:
            result = await session.execute(delete(SourceFile).where(SourceFile.id == file_id))
            if result.rowcount == 0:
                raise SourceFileNotFoundError(file_id)

    async def list_files(
        self,
        scope_id: Optional[UUID] = None,
        offset:   int = 0,
        limit:    int = 20,
    ) -> SourceFilePage:
        conditions = [SourceFile.scope_id == scope_id] if scope_id is not None else []
        async with self._session() as session:
            total = await session.scalar(
                select(func.count()).select_from(SourceFile).where(*conditions)
            )
            rows = (
                await session.scalars(
                    select(SourceFile)
                    .where(*conditions)
                    .order_by(SourceFile.created_at.desc(), SourceFile.id.desc())
                    .offset(offset)
                    .limit(limit)
                )
            ).all()
        return SourceFilePage(items=[to_record(r) for r in rows], total=total or 0)

    async def count_active(self, scope_id: Optional[UUID] = None) -> int:
        stmt = select(func.count()).select_from(SourceFile).where(SourceFile.active.is_(True))
        if scope_id is not None:
            stmt = stmt.where(SourceFile.scope_id == scope_id)
        async with self._session() as session:
            return (await session.scalar(stmt)) or 0

    async def list_stale(self, older_than: datetime) -> list[SourceFileRecord]:
        async with self._session() as session:
            rows = (
                await session.scalars(
                    select(SourceFile).where(
                        SourceFile.status == FileStatus.PROCESSING.value,
                        SourceFile.updated_at < older_than,
                    )
                )
            ).all()
        return [to_record(r) for r in rows]
