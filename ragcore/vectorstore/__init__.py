from ragcore.vectorstore.base import PassageRecord, SearchHit, StoredPassage, VectorStoreBase
from ragcore.vectorstore.factory import get_source_file_registry, get_vector_store

__all__ = [
    "VectorStoreBase",
    "PassageRecord",
    "StoredPassage",
    "SearchHit",
    "get_vector_store",
    "get_source_file_registry",
]
