"""
Adapters layer - Persistence implementations of the repository protocols.
"""

from .memory_store import InMemoryStore
from .state_file import StateFile

__all__ = ["InMemoryStore", "StateFile"]
