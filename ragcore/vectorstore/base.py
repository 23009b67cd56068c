"""
Vector Store — Abstract Base

Every backend (pgvector, in-memory) implements this interface. The rest of
the application only speaks this protocol, so backends are swappable without
changing ingestion or search code.

Contract (enforced by ALL implementations):
  - Passages are immutable: there is insert, search, count and
    delete-by-source-file, and nothing else.
  - insert() is all-or-nothing. Either every record of the call becomes
    readable or none does (PersistenceError).
  - search() returns hits with similarity = 1 - cosine_distance strictly
    above `threshold`, ordered by similarity desc then passage id asc, and
    only from completed source files (active ones when require_active).
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence
from uuid import UUID


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PassageRecord:
    """A passage to insert; ids are assigned by the store."""
    source_file_id: int
    content:        str
    embedding:      Sequence[float]


@dataclass(frozen=True)
class StoredPassage:
    id:             int
    source_file_id: int
    content:        str


@dataclass(frozen=True)
class SearchHit:
    passage:    StoredPassage
    similarity: float


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------

class VectorStoreBase(ABC):

    def __init__(self, dimensions: int) -> None:
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    # ------------------------------------------------------------------
    # Validation shared by every backend
    # ------------------------------------------------------------------

    def _validate_records(self, records: Sequence[PassageRecord]) -> None:
        for idx, record in enumerate(records):
            if not record.content or not record.content.strip():
                raise ValueError(f"Passage {idx} has empty content")
            self._validate_vector(record.embedding, f"Passage {idx} embedding")

    def _validate_vector(self, vector: Sequence[float], label: str = "Query embedding") -> None:
        if len(vector) != self._dimensions:
            raise ValueError(
                f"{label} has {len(vector)} dimensions, expected {self._dimensions}"
            )
        if not all(math.isfinite(x) for x in vector):
            raise ValueError(f"{label} contains non-finite values")

    @staticmethod
    def _validate_limit(limit: int) -> None:
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def insert(self, records: Sequence[PassageRecord]) -> list[int]:
        """Insert every record atomically; returns the new ids in input order."""

    @abstractmethod
    async def search(
        self,
        query_embedding: Sequence[float],
        limit:           int,
        threshold:       float,
        scope_id:        Optional[UUID] = None,
        require_active:  bool = True,
    ) -> list[SearchHit]:
        """Filtered nearest-neighbour search by cosine similarity."""

    @abstractmethod
    async def delete_by_source_file(self, source_file_id: int) -> int:
        """Delete ALL passages of a source file; returns the number removed."""

    @abstractmethod
    async def count_by_source_file(self, source_file_id: int) -> int:
        ...

    @abstractmethod
    async def count(self, scope_id: Optional[UUID] = None) -> int:
        """Total passages, optionally restricted to one scope."""
