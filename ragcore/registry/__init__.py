from ragcore.registry.base import SourceFilePage, SourceFileRecord, SourceFileRegistry
from ragcore.registry.memory import MemorySourceFileRegistry

__all__ = [
    "SourceFileRegistry",
    "SourceFileRecord",
    "SourceFilePage",
    "MemorySourceFileRegistry",
]
