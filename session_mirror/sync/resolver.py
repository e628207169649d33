"""
Session ownership resolution.

Turns a remote session plus the locally cached record (if any) into the
record to persist, from the point of view of one requesting user.
"""

from dataclasses import replace
from datetime import UTC, datetime

from ..protocol import (
    DEFAULT_SESSION_NAME,
    ModelPreference,
    RemoteSession,
    SessionRecord,
)


def resolve_session(
    remote: RemoteSession,
    existing: SessionRecord | None,
    requester_id: int,
    now: datetime | None = None,
) -> SessionRecord:
    """Produce the local record for ``remote`` as seen by ``requester_id``.

    New records take their owner, name and model from the session's embedded
    hints. Existing records keep their owner; their name and model follow the
    remote copy whenever it supplies a non-empty, different value.

    Args:
        remote: Session as reported by the remote service
        existing: Locally cached record, or None on first sight
        requester_id: User on whose behalf the operation runs (0 for sync passes)
        now: Timestamp to stamp; defaults to the current time

    Returns:
        A new SessionRecord with ``status`` computed for the requester
    """
    now = now or datetime.now(UTC)
    hints = remote.hints

    if existing is None:
        record = SessionRecord(
            session_id=remote.id,
            owner_user_id=hints.owner_user_id,
            name=remote.title or hints.name or DEFAULT_SESSION_NAME,
            created_at=now,
            last_used_at=now,
            provider_id=hints.provider_id,
            model_id=hints.model_id,
        )
    else:
        record = replace(existing, last_used_at=now)
        if remote.title and remote.title != record.name:
            record.name = remote.title
        if hints.provider_id and hints.provider_id != record.provider_id:
            record.provider_id = hints.provider_id
        if hints.model_id and hints.model_id != record.model_id:
            record.model_id = hints.model_id

    record.refresh_status(requester_id)
    return record


def apply_preferred_model(record: SessionRecord, preference: ModelPreference | None) -> bool:
    """Bind ``preference`` to a record that has no complete model yet.

    Returns:
        True if the record was changed
    """
    if record.has_model or preference is None or not preference.is_complete:
        return False
    record.provider_id = preference.provider_id.strip()
    record.model_id = preference.model_id.strip()
    return True


def find_owned_session(sessions: list[RemoteSession], user_id: int) -> RemoteSession | None:
    """Return the first top-level remote session tagged with ``user_id``."""
    if user_id == 0:
        return None
    for session in sessions:
        if not session.is_child and session.hints.owner_user_id == user_id:
            return session
    return None
