"""
Source File Ingestion Service

Acceptance (API process, synchronous):
  1. Validate size and extension
  2. Compute SHA-256 of the raw bytes (optionally checked against a client hash)
  3. Reject duplicates (source_files.content_hash)
  4. Store the bytes in S3 under a unique transient key
  5. Insert the source_files row (status=processing)
  6. Publish the processing task to Celery

Processing (Celery worker):
  7. Fetch + extract text, releasing the transient bytes on every exit path
  8. Empty text → failed(empty_content)
  9. Chunk → embed → insert passages (one transaction) → completed

Invariants enforced here:
  - A file is completed only once every one of its passages is persisted.
  - Any failure after acceptance leaves the file failed with zero passages.
  - The UNIQUE(content_hash) constraint is the final dedup guard; the
    SELECT-then-INSERT race surfaces from the registry as DuplicateContentError.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Optional
from uuid import UUID

from ragcore.core.config import Settings, settings
from ragcore.core.exceptions import (
    DuplicateContentError,
    EmbeddingGatewayError,
    EmptyContentError,
    ExtractionError,
    InvalidStatusTransitionError,
    RagCoreError,
    SourceFileNotFoundError,
    StaleProcessingError,
    TaskDispatchError,
    UploadValidationError,
)
from ragcore.processing.chunking import SemanticChunker
from ragcore.processing.embeddings import EmbeddingGateway
from ragcore.processing.extractor import TextExtractor
from ragcore.registry.base import SourceFileRecord, SourceFileRegistry
from ragcore.schemas.documents import FileStatus, LookupStatus
from ragcore.storage.s3 import S3StorageService, build_upload_key
from ragcore.vectorstore.base import PassageRecord, VectorStoreBase

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_MAX_ERROR_MESSAGE = 1000


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def compute_sha256(data: bytes) -> str:
    """Return SHA-256 hex digest of file bytes."""
    return hashlib.sha256(data).hexdigest()


def normalize_hash(value: str) -> str:
    normalized = (value or "").strip().lower()
    if not _SHA256_RE.match(normalized):
        raise UploadValidationError("content hash must be a 64-character SHA-256 hex digest")
    return normalized


def sanitize_filename(filename: str) -> str:
    """
    Strip path components and replace unsafe characters.
    Returns only the basename with OS-safe characters.
    """
    basename = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    safe = re.sub(r"[^a-zA-Z0-9._\-]", "_", basename)
    return safe[:200] or "upload"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UploadReceipt:
    file_id:      int
    content_hash: str
    display_name: str
    size_bytes:   int
    status:       FileStatus


class IngestionOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED    = "failed"
    SKIPPED   = "skipped"      # already terminal (redelivered task)
    NOT_FOUND = "not_found"    # row deleted before the worker ran


@dataclass(frozen=True)
class IngestionResult:
    file_id:       int
    outcome:       IngestionOutcome
    passage_count: int = 0
    error_code:    Optional[str] = None


@dataclass(frozen=True)
class FileStatusView:
    exists:        bool
    status:        LookupStatus
    file_id:       Optional[int] = None
    display_name:  Optional[str] = None
    passage_count: int = 0
    error_code:    Optional[str] = None
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class IngestionService:
    """
    Coordinates the source-file lifecycle. All collaborators are injected so
    the API process and the worker can wire different backends.
    """

    def __init__(
        self,
        registry:     SourceFileRegistry,
        vector_store: VectorStoreBase,
        storage:      S3StorageService,
        publisher:    "TaskPublisher",
        extractor:    TextExtractor,
        chunker:      SemanticChunker,
        gateway:      EmbeddingGateway,
        config:       Settings = settings,
    ) -> None:
        self._registry  = registry
        self._store     = vector_store
        self._storage   = storage
        self._publisher = publisher
        self._extractor = extractor
        self._chunker   = chunker
        self._gateway   = gateway
        self._cfg       = config

    # ------------------------------------------------------------------
    # Acceptance
    # ------------------------------------------------------------------

    async def accept_upload(
        self,
        data:          bytes,
        filename:      str,
        owner_id:      str,
        scope_id:      Optional[UUID] = None,
        expected_hash: Optional[str] = None,
    ) -> UploadReceipt:
        # ---- Step 1: Validate -----------------------------------------
        if not data:
            raise UploadValidationError("The uploaded file is empty.")
        if len(data) > self._cfg.max_upload_bytes:
            raise UploadValidationError(
                f"Received {len(data):,} bytes; limit is {self._cfg.max_upload_bytes:,} bytes.",
                status_code=413,
            )

        display_name = sanitize_filename(filename)
        ext = os.path.splitext(display_name)[1].lower()
        if ext not in self._cfg.allowed_extensions:
            raise UploadValidationError(
                f"File type '{ext or display_name}' is not supported. "
                f"Allowed: {', '.join(self._cfg.allowed_extensions)}."
            )

        # ---- Step 2: Checksum -----------------------------------------
        content_hash = compute_sha256(data)
        if expected_hash and normalize_hash(expected_hash) != content_hash:
            raise UploadValidationError("Client-supplied hash does not match the uploaded bytes.")

        logger.info(
            "Ingest start | owner=%s file=%s size=%d sha256=%s",
            owner_id, display_name, len(data), content_hash,
        )

        # ---- Step 3: Duplicate check ----------------------------------
        existing = await self._registry.get_by_hash(content_hash)
        if existing is not None:
            logger.info("Duplicate rejected | sha256=%s existing=%s", content_hash, existing.id)
            raise DuplicateContentError(content_hash, existing.id)

        # ---- Step 4: Transient storage --------------------------------
        storage_key = build_upload_key(display_name, self._cfg.s3_upload_prefix)
        await self._storage.put_object(
            storage_key,
            data,
            metadata={"content_hash": content_hash},
        )

        # ---- Step 5: Register -----------------------------------------
        try:
            record = await self._registry.create(
                display_name=display_name,
                content_hash=content_hash,
                owner_id=owner_id,
                scope_id=scope_id,
                storage_key=storage_key,
            )
        except Exception:
            await self._delete_blob(storage_key)
            raise

        # ---- Step 6: Dispatch -----------------------------------------
        status = FileStatus.PROCESSING
        try:
            await self._publisher.publish_ingestion_task(record.id)
        except Exception as exc:
            logger.error("Failed to publish processing task | file=%s error=%s", record.id, exc)
            await self._fail(record.id, TaskDispatchError(f"Could not queue processing: {exc}"))
            await self._release_blob(record.id, storage_key)
            status = FileStatus.FAILED

        return UploadReceipt(
            file_id=record.id,
            content_hash=content_hash,
            display_name=display_name,
            size_bytes=len(data),
            status=status,
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, file_id: int) -> IngestionResult:
        record = await self._registry.get(file_id)
        if record is None:
            logger.warning("Source file not found, skipping | file=%s", file_id)
            return IngestionResult(file_id, IngestionOutcome.NOT_FOUND)
        if record.status.is_terminal:
            logger.info("Source file already %s, skipping | file=%s", record.status.value, file_id)
            return IngestionResult(
                file_id, IngestionOutcome.SKIPPED, passage_count=record.passage_count
            )

        try:
            async with self._transient_upload(record) as data:
                text = await self._extractor.extract(data, record.display_name)

            if not text or not text.strip():
                raise EmptyContentError("Extracted text is empty")

            passages = await self._chunker.chunk(text)
            if not passages:
                raise EmptyContentError("Chunking produced no passages")
            logger.info("Chunked | file=%s passages=%d", file_id, len(passages))

            vectors = await self._gateway.embed_many(passages)
            if len(vectors) != len(passages):
                raise EmbeddingGatewayError(
                    f"Expected {len(passages)} embeddings, got {len(vectors)}"
                )

            ids = await self._store.insert([
                PassageRecord(source_file_id=file_id, content=content, embedding=vector)
                for content, vector in zip(passages, vectors)
            ])
            await self._registry.transition(
                file_id, FileStatus.COMPLETED, passage_count=len(ids)
            )
        except Exception as exc:
            error_code = await self._fail(file_id, exc)
            if error_code is None:
                return IngestionResult(file_id, IngestionOutcome.NOT_FOUND)
            return IngestionResult(file_id, IngestionOutcome.FAILED, error_code=error_code)

        logger.info("Ingest complete | file=%s passages=%d", file_id, len(ids))
        return IngestionResult(file_id, IngestionOutcome.COMPLETED, passage_count=len(ids))

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def status_by_hash(self, content_hash: str) -> FileStatusView:
        record = await self._registry.get_by_hash(normalize_hash(content_hash))
        if record is None:
            return FileStatusView(exists=False, status=LookupStatus.NOT_FOUND)
        return FileStatusView(
            exists=True,
            status=LookupStatus(record.status.value),
            file_id=record.id,
            display_name=record.display_name,
            passage_count=record.passage_count,
            error_code=record.error_code,
            error_message=record.error_message,
        )

    async def hash_exists(self, content_hash: str) -> bool:
        return await self._registry.get_by_hash(normalize_hash(content_hash)) is not None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def fail_stale(self, older_than: Optional[datetime] = None) -> list[int]:
        """Fail files stuck in processing; their passages and bytes are released."""
        cutoff = older_than or (
            datetime.now(timezone.utc) - timedelta(minutes=self._cfg.stale_processing_minutes)
        )
        failed: list[int] = []
        for record in await self._registry.list_stale(cutoff):
            error_code = await self._fail(
                record.id,
                StaleProcessingError(f"No progress since {record.updated_at:%Y-%m-%d %H:%M:%S}"),
            )
            if record.storage_key:
                await self._release_blob(record.id, record.storage_key)
            if error_code is not None:
                failed.append(record.id)

        if failed:
            logger.warning("Stale source files failed | count=%d ids=%s", len(failed), failed)
        return failed

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transient_upload(self, record: SourceFileRecord) -> AsyncIterator[bytes]:
        """Yield the upload bytes; they are deleted however the block exits."""
        if not record.storage_key:
            raise ExtractionError("Upload bytes are no longer available")
        try:
            try:
                data = await self._storage.get_object(record.storage_key)
            except FileNotFoundError as exc:
                raise ExtractionError("Upload bytes are no longer available") from exc
            yield data
        finally:
            await self._release_blob(record.id, record.storage_key)

    async def _fail(self, file_id: int, exc: BaseException) -> Optional[str]:
        """
        Purge passages and move the file to failed. Returns the error code,
        or None when the file was deleted while it was being processed.
        """
        error_code = exc.code if isinstance(exc, RagCoreError) else "internal_error"
        message = str(exc)[:_MAX_ERROR_MESSAGE] or type(exc).__name__

        if isinstance(exc, RagCoreError):
            logger.warning("Ingest failed | file=%s code=%s error=%s", file_id, error_code, message)
        else:
            logger.error("Ingest failed | file=%s error=%s", file_id, message, exc_info=exc)

        try:
            removed = await self._store.delete_by_source_file(file_id)
            if removed:
                logger.info("Passages purged | file=%s removed=%d", file_id, removed)
        except Exception:
            logger.exception("Passage purge failed | file=%s", file_id)

        try:
            await self._registry.transition(
                file_id,
                FileStatus.FAILED,
                error_code=error_code,
                error_message=message,
            )
        except InvalidStatusTransitionError as err:
            logger.warning("Failure not recorded, file already %s | file=%s", err.current, file_id)
        except SourceFileNotFoundError:
            logger.warning("Failure not recorded, file deleted during processing | file=%s", file_id)
            return None
        return error_code

    async def _release_blob(self, file_id: int, storage_key: str) -> None:
        await self._delete_blob(storage_key)
        try:
            await self._registry.clear_storage_key(file_id)
        except Exception:
            logger.exception("Could not clear storage key | file=%s", file_id)

    async def _delete_blob(self, storage_key: str) -> None:
        try:
            await self._storage.delete_object(storage_key)
        except Exception:
            logger.exception("Transient upload not deleted | key=%s", storage_key)


# ---------------------------------------------------------------------------
# Task publisher
# ---------------------------------------------------------------------------

class TaskPublisher:
    """
    Sends the processing task to the Celery broker.
    Import is deferred so the broker connection is not required at module load time.
    """

    async def publish_ingestion_task(self, file_id: int) -> None:
        """
        Dispatch process_source_file to the Celery worker.
        Runs in a thread executor to avoid blocking the async event loop.
        """
        from ragcore.workers.tasks import process_source_file

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: process_source_file.apply_async(kwargs={"file_id": file_id}),
        )
        logger.info("Processing task published | file=%s", file_id)
