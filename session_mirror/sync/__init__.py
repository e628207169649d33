"""
Reconciliation of the local mirror with the remote service.

Provides model number allocation, session ownership resolution and the
SessionManager that drives both under a reader/writer lock.
"""

from .allocator import ModelAllocation, allocate_model_numbers
from .locks import ReadWriteLock
from .manager import SessionManager, open_manager
from .resolver import apply_preferred_model, find_owned_session, resolve_session

__all__ = [
    "SessionManager",
    "open_manager",
    "ModelAllocation",
    "allocate_model_numbers",
    "resolve_session",
    "apply_preferred_model",
    "find_owned_session",
    "ReadWriteLock",
]
