"""
SQLAlchemy ORM Models — Scopes, Source Files & Passages

Using SQLAlchemy mapped classes (2.x style) for full async support.

Dedup: source_files.content_hash (SHA-256 of the raw upload) is UNIQUE, so two
concurrent uploads of the same bytes race on the constraint and exactly one
row survives.

Passages carry a pgvector embedding with an HNSW index built for cosine
distance; the search path orders by ``embedding <=> :query`` so the planner
can use it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ragcore.core.config import settings


# ---------------------------------------------------------------------------
# Declarative base: shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Scope: tenant/partition key, looked up by name only
# ---------------------------------------------------------------------------

class Scope(Base):
    __tablename__ = "scopes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<Scope id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# SourceFile: one uploaded document
# ---------------------------------------------------------------------------

class SourceFile(Base):
    """
    Tracks a single uploaded file from acceptance to indexed passages.

    State machine (status column):
        processing — accepted, worker extracting + chunking + embedding
        completed  — every passage persisted, visible to search
        failed     — unrecoverable error (see error_code / error_message)
    """

    __tablename__ = "source_files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('processing', 'completed', 'failed')",
            name="source_files_status_check",
        ),
        Index("idx_source_files_scope_id", "scope_id"),
        Index("idx_source_files_status",   "status", "updated_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)

    display_name: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        comment="SHA-256 hex digest of the raw upload",
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="processing",
        server_default="processing",
    )
    owner_id: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    scope_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("scopes.id", ondelete="SET NULL"),
        nullable=True,
    )

    storage_key: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Transient upload object; cleared once the bytes are released",
    )
    passage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    passages: Mapped[list["Passage"]] = relationship(
        back_populates="source_file",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<SourceFile id={self.id} status={self.status} "
            f"active={self.active} name={self.display_name!r}>"
        )


# ---------------------------------------------------------------------------
# Passage: one embedded chunk, immutable once written
# ---------------------------------------------------------------------------

class Passage(Base):
    __tablename__ = "passages"
    __table_args__ = (
        CheckConstraint("length(content) > 0", name="passages_content_not_empty"),
        Index("idx_passages_source_file_id", "source_file_id"),
        Index(
            "idx_passages_embedding_hnsw",
            "embedding",
            postgresql_using="hnsw",
            postgresql_with={
                "m": settings.hnsw_m,
                "ef_construction": settings.hnsw_ef_construction,
            },
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    source_file_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("source_files.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    source_file: Mapped[SourceFile] = relationship(back_populates="passages")

    def __repr__(self) -> str:
        return f"<Passage id={self.id} source_file={self.source_file_id} len={len(self.content)}>"
