"""
Custom exceptions for the session mirror.

Policy failures (missing session, foreign session, sub-agent session) are
distinct types so the delivery layer can render each one differently.
"""


class SessionMirrorError(Exception):
    """Base exception for all session mirror errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SessionNotFoundError(SessionMirrorError):
    """Raised when a session is not known locally."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class PermissionDeniedError(SessionMirrorError):
    """User does not own the session they are operating on."""

    def __init__(self, user_id: int, session_id: str, reason: str):
        details = {"user_id": user_id, "session_id": session_id, "reason": reason}
        super().__init__(
            f"Permission denied for user {user_id} on session {session_id}: {reason}",
            details,
        )
        self.user_id = user_id
        self.session_id = session_id
        self.reason = reason


class ChildSessionError(SessionMirrorError):
    """Raised when a destructive operation targets a sub-agent session."""

    def __init__(self, session_id: str, parent_id: str):
        super().__init__(
            f"Session {session_id} is a sub-agent session (parent: {parent_id})",
            {"session_id": session_id, "parent_id": parent_id},
        )
        self.session_id = session_id
        self.parent_id = parent_id


class StorageIOError(SessionMirrorError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class RemoteServiceError(SessionMirrorError):
    """Raised when a call to the remote assistant service fails.

    Carries the name of the remote operation so callers can tell which step
    of a larger operation failed.
    """

    def __init__(
        self,
        operation: str,
        status: int | None = None,
        reason: str | None = None,
        cause: Exception | None = None,
    ):
        details: dict = {"operation": operation}
        if status is not None:
            details["status"] = status
        if reason:
            details["reason"] = reason
        if cause:
            details["cause"] = str(cause)

        message = f"Remote {operation} failed"
        if status is not None:
            message += f" (status {status})"
        if reason:
            message += f": {reason}"
        elif cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.operation = operation
        self.status = status
        self.reason = reason
        self.cause = cause

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class SyncError(SessionMirrorError):
    """Raised when a synchronization pass fails."""

    def __init__(self, message: str, cause: Exception | None = None):
        details: dict = {}
        if cause:
            details["cause"] = str(cause)
        super().__init__(message, details)
        self.cause = cause


class ConfigError(SessionMirrorError):
    """Raised when configuration is missing or invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field, "reason": reason})
        self.field = field
        self.reason = reason
