"""
Status tracking and audit persistence for flush operations.
"""

from .store import FlushStore, InMemoryFlushStore

__all__ = ["FlushStore", "InMemoryFlushStore"]
