"""
Service wiring shared by the API process and the Celery worker.

FastAPI routes receive these through Depends(); tests replace them with
app.dependency_overrides.
"""

from __future__ import annotations

from functools import lru_cache

from ragcore.core.config import settings
from ragcore.processing.chunking import ChunkerConfig, SemanticChunker
from ragcore.processing.embeddings import EmbeddingGateway, get_embedding_gateway
from ragcore.processing.extractor import TextExtractor
from ragcore.services.files import FileService
from ragcore.services.ingestion import IngestionService, TaskPublisher
from ragcore.services.scopes import MappingScopeResolver, ScopeResolver
from ragcore.services.search import SearchService
from ragcore.storage.s3 import S3StorageService
from ragcore.vectorstore.factory import get_source_file_registry, get_vector_store


@lru_cache(maxsize=1)
def get_storage() -> S3StorageService:
    return S3StorageService()


@lru_cache(maxsize=1)
def get_publisher() -> TaskPublisher:
    return TaskPublisher()


@lru_cache(maxsize=1)
def get_scope_resolver() -> ScopeResolver:
    if settings.vector_store_backend.lower() == "memory":
        return MappingScopeResolver()
    from ragcore.services.scopes import SqlScopeResolver
    return SqlScopeResolver()


def get_gateway() -> EmbeddingGateway:
    return get_embedding_gateway()


def get_ingestion_service() -> IngestionService:
    gateway = get_gateway()
    return IngestionService(
        registry=get_source_file_registry(),
        vector_store=get_vector_store(),
        storage=get_storage(),
        publisher=get_publisher(),
        extractor=TextExtractor(),
        chunker=SemanticChunker(gateway, ChunkerConfig.from_settings()),
        gateway=gateway,
    )


def get_search_service() -> SearchService:
    return SearchService(
        gateway=get_gateway(),
        vector_store=get_vector_store(),
        scopes=get_scope_resolver(),
    )


def get_file_service() -> FileService:
    return FileService(registry=get_source_file_registry(), vector_store=get_vector_store())
