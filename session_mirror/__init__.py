"""
Session Mirror

Local durable mirror of a remote assistant service's sessions and models.

Provides:
- A four-table JSON store (user -> session, sessions, models, user -> model)
- Stable short numbers for models that recycle numbers of vanished models
- Per-user session ownership (owned, orphaned, other)
- A reconciliation manager serialized by a reader/writer lock

Usage:

    >>> from session_mirror import MirrorConfig, configure_logging, open_manager
    >>> config = MirrorConfig.from_yaml()
    >>> configure_logging(config.log_level, config.log_output, config.log_format == "json")
    >>> async with await open_manager(config) as manager:
    ...     await manager.initialize()
    ...     session_id = await manager.get_or_create_session(user_id=42)
    ...     sessions = await manager.list_user_sessions(user_id=42)
"""

from .config import MirrorConfig

# Exceptions
from .exceptions import (
    ChildSessionError,
    ConfigError,
    PermissionDeniedError,
    RemoteServiceError,
    SessionMirrorError,
    SessionNotFoundError,
    StorageIOError,
    SyncError,
)
from .local import FileMirrorStore
from .logging_utils import configure_logging, get_mirror_logger

# Core types
from .protocol import (
    MirrorStore,
    ModelPreference,
    ModelRecord,
    ProviderCatalog,
    RemoteMessage,
    RemoteModel,
    RemoteProvider,
    RemoteSession,
    RemoteSessionService,
    SessionHints,
    SessionRecord,
    SessionStatus,
)
from .remote import RemoteClient
from .sync import SessionManager, allocate_model_numbers, open_manager

__all__ = [
    # Manager
    "SessionManager",
    "open_manager",
    "allocate_model_numbers",
    # Collaborators
    "MirrorStore",
    "FileMirrorStore",
    "RemoteSessionService",
    "RemoteClient",
    # Records
    "SessionRecord",
    "SessionStatus",
    "ModelRecord",
    "ModelPreference",
    "RemoteSession",
    "SessionHints",
    "RemoteMessage",
    "RemoteModel",
    "RemoteProvider",
    "ProviderCatalog",
    # Configuration and logging
    "MirrorConfig",
    "configure_logging",
    "get_mirror_logger",
    # Exceptions
    "SessionMirrorError",
    "SessionNotFoundError",
    "PermissionDeniedError",
    "ChildSessionError",
    "StorageIOError",
    "RemoteServiceError",
    "SyncError",
    "ConfigError",
]

__version__ = "0.1.0"
