"""
Source File Registry — Abstract Base

Persists one row per accepted upload. The registry owns two invariants:

  - content_hash is unique: create() raises DuplicateContentError when the
    hash is already registered, including when two creates race.
  - status only moves forward: processing → completed | failed. Terminal rows
    reject every transition with InvalidStatusTransitionError.

Backends: SQL (PostgreSQL via SQLAlchemy) and in-memory (tests, local dev).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import UUID

from ragcore.core.exceptions import InvalidStatusTransitionError, SourceFileNotFoundError
from ragcore.schemas.documents import FileStatus


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceFileRecord:
    """Read-only snapshot of a source_files row."""
    id:            int
    display_name:  str
    content_hash:  str
    status:        FileStatus
    owner_id:      str
    active:        bool = True
    scope_id:      Optional[UUID] = None
    storage_key:   Optional[str] = None
    passage_count: int = 0
    error_code:    Optional[str] = None
    error_message: Optional[str] = None
    created_at:    Optional[datetime] = None
    updated_at:    Optional[datetime] = None


@dataclass(frozen=True)
class SourceFilePage:
    items: list[SourceFileRecord]
    total: int


def check_transition(record: SourceFileRecord, target: FileStatus) -> None:
    if not record.status.can_transition_to(target):
        raise InvalidStatusTransitionError(record.id, record.status.value, target.value)


def check_scope(record: Optional[SourceFileRecord], file_id: int, scope_id: Optional[UUID]) -> SourceFileRecord:
    """Missing rows and rows outside the caller's scope look the same."""
    if record is None or (scope_id is not None and record.scope_id != scope_id):
        raise SourceFileNotFoundError(file_id)
    return record


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class SourceFileRegistry(ABC):

    @abstractmethod
    async def create(
        self,
        *,
        display_name: str,
        content_hash: str,
        owner_id:     str,
        scope_id:     Optional[UUID] = None,
        storage_key:  Optional[str] = None,
    ) -> SourceFileRecord:
        """Insert a row with status=processing. Raises DuplicateContentError."""

    @abstractmethod
    async def get(self, file_id: int) -> Optional[SourceFileRecord]:
        ...

    @abstractmethod
    async def get_by_hash(self, content_hash: str) -> Optional[SourceFileRecord]:
        ...

    @abstractmethod
    async def transition(
        self,
        file_id:       int,
        target:        FileStatus,
        *,
        passage_count: Optional[int] = None,
        error_code:    Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> SourceFileRecord:
        """
        Move a processing row to `target`.
        Raises SourceFileNotFoundError or InvalidStatusTransitionError.
        """

    @abstractmethod
    async def clear_storage_key(self, file_id: int) -> None:
        """Forget the transient upload object once its bytes are released."""

    @abstractmethod
    async def set_active(
        self,
        file_id:  int,
        active:   bool,
        scope_id: Optional[UUID] = None,
    ) -> SourceFileRecord:
        ...

    @abstractmethod
    async def delete(self, file_id: int) -> None:
        ...

    @abstractmethod
    async def list_files(
        self,
        scope_id: Optional[UUID] = None,
        offset:   int = 0,
        limit:    int = 20,
    ) -> SourceFilePage:
        """Newest first."""

    @abstractmethod
    async def count_active(self, scope_id: Optional[UUID] = None) -> int:
        ...

    @abstractmethod
    async def list_stale(self, older_than: datetime) -> list[SourceFileRecord]:
        """Rows still processing whose last update is before `older_than`."""
