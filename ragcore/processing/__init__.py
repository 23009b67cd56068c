"""
Document Processing Package
════════════════════════════

The post-upload half of ingestion:

  Text Extraction → Semantic Chunking → Embedding

Modules
───────
  extractor.py  PDF / DOCX / plain-text extraction (pypdf, python-docx)
  chunking.py   Embedding-guided semantic chunker with fixed-window fallback
  embeddings.py Embedding gateway (OpenAI) with batching, retry and timeout

Every component is stateless and dependency-injected; heavy computation runs
in the Celery worker, never in the API process.
"""

from ragcore.processing.chunking import ChunkerConfig, SemanticChunker, cosine_similarity
from ragcore.processing.embeddings import (
    EmbeddingGateway,
    OpenAIEmbeddingGateway,
    get_embedding_gateway,
)
from ragcore.processing.extractor import TextExtractor

__all__ = [
    "ChunkerConfig",
    "SemanticChunker",
    "cosine_similarity",
    "EmbeddingGateway",
    "OpenAIEmbeddingGateway",
    "get_embedding_gateway",
    "TextExtractor",
]
