"""
Vector Store & Registry Factory

Selects the backend pair (pgvector + SQL registry | memory + memory registry)
from config. The rest of the app only imports these accessors, never the
concrete classes.

The memory backend keeps one process-wide registry/store pair so that the
store's visibility filters see the same rows the registry writes.
"""

from __future__ import annotations

from typing import Optional

from ragcore.core.config import settings
from ragcore.registry.base import SourceFileRegistry
from ragcore.vectorstore.base import VectorStoreBase

_registry: Optional[SourceFileRegistry] = None
_store: Optional[VectorStoreBase] = None


def _build() -> tuple[SourceFileRegistry, VectorStoreBase]:
    backend = settings.vector_store_backend.lower()

    if backend == "pgvector":
        from ragcore.registry.sql import SqlSourceFileRegistry
        from ragcore.vectorstore.pgvector_store import PgVectorStore
        return SqlSourceFileRegistry(), PgVectorStore()

    if backend == "memory":
        from ragcore.registry.memory import MemorySourceFileRegistry
        from ragcore.vectorstore.memory_store import MemoryVectorStore
        registry = MemorySourceFileRegistry()
        return registry, MemoryVectorStore(registry, settings.embedding_dimensions)

    raise ValueError(
        f"Unknown vector store backend: '{backend}'. "
        f"Valid options: 'pgvector', 'memory'"
    )


def _ensure() -> None:
    global _registry, _store
    if _registry is None or _store is None:
        _registry, _store = _build()


def get_vector_store() -> VectorStoreBase:
    _ensure()
    return _store


def get_source_file_registry() -> SourceFileRegistry:
    _ensure()
    return _registry


def reset_backends() -> None:
    """Drop cached instances (tests, settings reload)."""
    global _registry, _store
    _registry = None
    _store = None
