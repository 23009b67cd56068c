"""
Domain exceptions.

Every error raised by the core carries a stable ``code``. The ingestion
coordinator stores that code on a failed Source File, and the HTTP layer uses
it as the ``error_code`` of the response envelope.
"""

from __future__ import annotations

from typing import Optional


class RagCoreError(RuntimeError):
    """Base class for all ragcore errors."""

    code: str = "internal_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ExtractionError(RagCoreError):
    code = "extraction_error"


class EmptyContentError(RagCoreError):
    """Extraction succeeded but produced no text: nothing to index."""

    code = "empty_content"


class EmbeddingGatewayError(RagCoreError):
    code = "embedding_error"


class PersistenceError(RagCoreError):
    code = "persistence_error"


class TaskDispatchError(RagCoreError):
    """The broker refused the processing task."""

    code = "dispatch_error"


class StaleProcessingError(RagCoreError):
    code = "stale_processing"


class DuplicateContentError(RagCoreError):
    code = "duplicate_content"

    def __init__(self, content_hash: str, existing_file_id: Optional[int] = None) -> None:
        super().__init__(f"Content already ingested: {content_hash}")
        self.content_hash = content_hash
        self.existing_file_id = existing_file_id


class InvalidStatusTransitionError(RagCoreError):
    code = "invalid_status_transition"

    def __init__(self, file_id: int, current: str, target: str) -> None:
        super().__init__(f"Source file {file_id}: cannot move {current} -> {target}")
        self.file_id = file_id
        self.current = current
        self.target = target


class SourceFileNotFoundError(RagCoreError):
    code = "source_file_not_found"

    def __init__(self, file_id: int) -> None:
        super().__init__(f"Source file {file_id} not found")
        self.file_id = file_id


class ScopeNotFoundError(RagCoreError):
    code = "scope_not_found"

    def __init__(self, scope_name: str) -> None:
        super().__init__(f"Unknown scope: {scope_name}")
        self.scope_name = scope_name


class UploadValidationError(RagCoreError):
    code = "invalid_upload"

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code
