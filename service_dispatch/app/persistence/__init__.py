"""
Pending-work persistence for the dispatch service.
"""

from .pending import InMemoryPendingWorkRepository, PendingWorkRepository
from .postgres import PostgresPendingWorkRepository

__all__ = ["InMemoryPendingWorkRepository", "PendingWorkRepository", "PostgresPendingWorkRepository"]
