"""
Session manager: reconciles the local mirror with the remote service.

Every operation that mutates the mirror (including both sync passes) holds
the manager's lock exclusively for its whole duration, remote calls
included, so the store never sees interleaved partial updates. Pure lookups
hold the lock in shared mode.

Cancellation follows asyncio: cancelling the calling task (or wrapping the
call in ``asyncio.timeout``) aborts at the next await. Per-item writes that
already happened inside a loop stay in place.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from ..config import MirrorConfig
from ..exceptions import (
    ChildSessionError,
    PermissionDeniedError,
    RemoteServiceError,
    SessionMirrorError,
    SessionNotFoundError,
    StorageIOError,
    SyncError,
)
from ..local.store import FileMirrorStore
from ..protocol import (
    DEFAULT_SESSION_NAME,
    MirrorStore,
    ModelPreference,
    ModelRecord,
    RemoteModel,
    RemoteSessionService,
    SessionRecord,
    SessionStatus,
    model_key,
)
from ..remote.client import RemoteClient
from .allocator import allocate_model_numbers
from .locks import ReadWriteLock
from .resolver import apply_preferred_model, find_owned_session, resolve_session

logger = logging.getLogger(__name__)

# Tag written into the metadata of sessions this library creates
CREATED_VIA = "session_mirror"


def _catalog_order(model: RemoteModel) -> tuple[str, str, str]:
    return (model.provider_id.lower(), model.name.lower(), model.id)


class SessionManager:
    """Local mirror of remote sessions and models with per-user ownership.

    The manager owns no data itself: records live in the injected
    ``MirrorStore`` and the remote service is reached through the injected
    ``RemoteSessionService``.

    Example:
        >>> store = await FileMirrorStore.open("mirror-state.json")
        >>> manager = SessionManager(store, RemoteClient("http://127.0.0.1:4096"))
        >>> await manager.initialize()
        >>> session_id = await manager.get_or_create_session(user_id=42)
    """

    def __init__(self, store: MirrorStore, remote: RemoteSessionService):
        """Initialize the manager.

        Args:
            store: Persistent store for the four mirror tables
            remote: Client of the remote assistant service
        """
        self.store = store
        self.remote = remote
        self._lock = ReadWriteLock()

    async def __aenter__(self) -> SessionManager:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # Synchronization passes
    # =========================================================================

    async def initialize(self) -> None:
        """Synchronize sessions, then models.

        Raises:
            SyncError: If either pass fails; the model pass is skipped when the
                session pass fails
        """
        logger.info("Initializing session mirror: synchronizing sessions and models")
        try:
            await self.sync_sessions()
        except SessionMirrorError as e:
            raise SyncError("Failed to synchronize sessions", e) from e

        try:
            await self.sync_models()
        except SessionMirrorError as e:
            raise SyncError("Failed to synchronize models", e) from e

        logger.info("Session mirror initialization completed")

    async def sync_sessions(self) -> int:
        """Seed or refresh a record for every remote session and drop the rest.

        Ownership is not assigned here: records are resolved for requester 0,
        so owners come only from the sessions' embedded metadata.

        Returns:
            Number of remote sessions processed
        """
        async with self._lock.write():
            remote_sessions = await self.remote.list_sessions()

            seen: set[str] = set()
            for remote in remote_sessions:
                existing = await self.store.get_session(remote.id)
                await self.store.put_session(resolve_session(remote, existing, 0))
                seen.add(remote.id)

            for record in await self.store.list_sessions():
                if record.session_id in seen:
                    continue
                logger.debug(f"Removing session gone from remote: {record.session_id}")
                await self.store.delete_session(record.session_id)

            logger.info(f"Synchronized {len(remote_sessions)} sessions from remote")
            return len(remote_sessions)

    async def sync_models(self) -> list[ModelRecord]:
        """Mirror the models of connected providers and (re)number them.

        Returns:
            The available model records, in catalog order
        """
        async with self._lock.write():
            catalog = await self.remote.list_providers()
            models = sorted(catalog.connected_models(), key=_catalog_order)

            existing: dict[str, ModelRecord] = {}
            for record in await self.store.list_models():
                if record.key:
                    existing[record.key] = record

            available: dict[str, RemoteModel] = {}
            for model in models:
                key = model_key(model.provider_id, model.id)
                if key and key not in available:
                    available[key] = model

            allocation = allocate_model_numbers(
                {key: record.number for key, record in existing.items()},
                list(available),
            )

            records: list[ModelRecord] = []
            for key, model in available.items():
                record = ModelRecord(
                    id=model.id,
                    provider_id=model.provider_id,
                    name=model.name,
                    family=model.family,
                    status=model.status,
                    release_date=model.release_date,
                    number=allocation.numbers[key],
                )
                if existing.get(key) != record:
                    await self.store.put_model(record)
                records.append(record)

            for key in allocation.removed:
                stale = existing[key]
                logger.debug(f"Removing model gone from catalog: {key} (number {stale.number})")
                await self.store.delete_model(stale.provider_id, stale.id)

            logger.info(f"Synchronized {len(records)} available models from connected providers")
            return records

    # =========================================================================
    # Current session
    # =========================================================================

    async def get_or_create_session(self, user_id: int) -> str:
        """Return the user's current session, adopting or creating one if needed.

        Order of preference:
        1. the mapped current session, when it is still cached
        2. a top-level remote session whose metadata names this user as owner
        3. a new remote session tagged with the user and their preferred model

        Raises:
            RemoteServiceError: If the remote listing or creation fails
            StorageIOError: If the mapping cannot be persisted
        """
        async with self._lock.write():
            now = datetime.now(UTC)

            current_id = await self.store.get_user_session(user_id)
            if current_id:
                record = await self.store.get_session(current_id)
                if record is not None:
                    record.last_used_at = now
                    record.message_count += 1
                    await self._apply_user_default_model(record, user_id)
                    record.refresh_status(user_id)
                    await self.store.put_session(record)
                    return current_id
                logger.info(f"Current session {current_id} of user {user_id} is no longer cached")

            remote_sessions = await self.remote.list_sessions()
            owned = find_owned_session(remote_sessions, user_id)
            if owned is not None:
                existing = await self.store.get_session(owned.id)
                record = resolve_session(owned, existing, user_id, now)
                record.owner_user_id = user_id
                record.message_count += 1
                await self._apply_user_default_model(record, user_id)
                record.refresh_status(user_id)
                await self.store.put_session(record)
                await self.store.put_user_session(user_id, owned.id)
                logger.info(f"Using existing remote session {owned.id} for user {user_id}")
                return owned.id

            logger.info(f"Creating new remote session for user {user_id}")
            preference = await self._resolve_preferred_model(user_id)
            created = await self.remote.create_session(
                DEFAULT_SESSION_NAME,
                self._session_metadata(user_id, None, preference),
            )

            record = SessionRecord(
                session_id=created.id,
                owner_user_id=user_id,
                name=created.title or DEFAULT_SESSION_NAME,
                created_at=now,
                last_used_at=now,
                message_count=1,
                provider_id=created.hints.provider_id,
                model_id=created.hints.model_id,
            )
            apply_preferred_model(record, preference)
            record.refresh_status(user_id)
            await self.store.put_session(record)
            await self.store.put_user_session(user_id, created.id)

            logger.info(f"Created new session {created.id} for user {user_id}")
            return created.id

    async def get_user_session(self, user_id: int) -> str | None:
        """Return the user's current session id without touching the remote."""
        async with self._lock.read():
            return await self.store.get_user_session(user_id)

    async def set_user_session(self, user_id: int, session_id: str) -> SessionRecord:
        """Make ``session_id`` the user's current session.

        An orphaned or unknown session is claimed by the user. The user's last
        model follows the session's bound model when it has one.

        Raises:
            PermissionDeniedError: If another user owns the session
        """
        async with self._lock.write():
            now = datetime.now(UTC)
            record = await self.store.get_session(session_id)
            if record is None:
                record = SessionRecord(session_id=session_id, created_at=now)
            elif record.status_for(user_id) is SessionStatus.OTHER:
                raise PermissionDeniedError(user_id, session_id, "session belongs to another user")

            record.owner_user_id = user_id
            record.last_used_at = now
            await self._apply_user_default_model(record, user_id)
            record.refresh_status(user_id)
            await self.store.put_session(record)
            await self.store.put_user_session(user_id, session_id)

            if record.has_model:
                try:
                    await self.store.put_user_last_model(user_id, record.provider_id, record.model_id)
                except StorageIOError as e:
                    logger.warning(f"Failed to update last model of user {user_id} while switching session: {e}")

            logger.info(f"User {user_id} switched to session {session_id}")
            return record

    # =========================================================================
    # Listing
    # =========================================================================

    async def list_user_sessions(self, user_id: int) -> list[SessionRecord]:
        """List top-level remote sessions with their status for ``user_id``.

        Local records of sessions gone from the remote are dropped first.
        Message counts are refreshed and missing models are recovered from the
        newest messages that name one.

        Raises:
            RemoteServiceError: If the remote listing fails; no cached view is
                returned in that case
        """
        async with self._lock.write():
            remote_sessions = await self.remote.list_sessions()
            remote_ids = {session.id for session in remote_sessions}

            for record in await self.store.list_sessions():
                if record.session_id not in remote_ids:
                    logger.debug(f"Removing session gone from remote for user {user_id}: {record.session_id}")
                    await self.store.delete_session(record.session_id)

            current_id = await self.store.get_user_session(user_id)
            records: list[SessionRecord] = []
            for remote in remote_sessions:
                if remote.is_child:
                    logger.debug(f"Skipping child session {remote.id} (parent: {remote.parent_id})")
                    continue

                existing = await self.store.get_session(remote.id)
                record = resolve_session(remote, existing, user_id)
                await self.store.put_session(record)

                if existing is None and record.status is SessionStatus.OWNED and not current_id:
                    await self.store.put_user_session(user_id, record.session_id)
                    current_id = record.session_id
                records.append(record)

            await self._refresh_runtime_info(records)
            return records

    async def _refresh_runtime_info(self, records: list[SessionRecord]) -> None:
        for record in records:
            try:
                messages = await self.remote.get_messages(record.session_id)
            except RemoteServiceError as e:
                logger.warning(f"Failed to fetch messages for session {record.session_id}: {e}")
                continue

            updated = False
            if record.message_count != len(messages):
                record.message_count = len(messages)
                updated = True

            for message in reversed(messages):
                if record.provider_id and record.model_id:
                    break
                if not record.provider_id and message.provider_id:
                    record.provider_id = message.provider_id
                    updated = True
                if not record.model_id and message.model_id:
                    record.model_id = message.model_id
                    updated = True

            if not updated:
                continue
            try:
                await self.store.put_session(record)
            except StorageIOError as e:
                logger.warning(f"Failed to store refreshed session {record.session_id}: {e}")

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def create_session(
        self,
        user_id: int,
        name: str,
        provider_id: str | None = None,
        model_id: str | None = None,
    ) -> str:
        """Create a named remote session and make it the user's current one.

        Without an explicit model the user's preferred model is used.

        Returns:
            Id of the new session
        """
        async with self._lock.write():
            if provider_id is None and model_id is None:
                preference = await self._resolve_preferred_model(user_id)
            else:
                preference = ModelPreference(provider_id or "", model_id or "")

            name = name.strip() or DEFAULT_SESSION_NAME
            created = await self.remote.create_session(
                name,
                self._session_metadata(user_id, name, preference),
            )

            now = datetime.now(UTC)
            record = SessionRecord(
                session_id=created.id,
                owner_user_id=user_id,
                name=name,
                created_at=now,
                last_used_at=now,
                provider_id=preference.provider_id if preference else "",
                model_id=preference.model_id if preference else "",
            )
            record.refresh_status(user_id)
            await self.store.put_session(record)

            if preference is not None and preference.is_complete:
                try:
                    await self.store.put_user_last_model(user_id, preference.provider_id, preference.model_id)
                except StorageIOError as e:
                    logger.warning(f"Failed to update last model of user {user_id}: {e}")

            await self.store.put_user_session(user_id, created.id)

            logger.info(
                f"Created new named session {created.id} ({name}) with model "
                f"{record.provider_id}/{record.model_id} for user {user_id}"
            )
            return created.id

    async def set_session_model(self, session_id: str, provider_id: str, model_id: str) -> SessionRecord:
        """Bind a model to a cached session.

        The session's owner, if any, gets it as current session and the model
        as last model.

        Raises:
            SessionNotFoundError: If the session is not cached
        """
        async with self._lock.write():
            record = await self.store.get_session(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)

            record.provider_id = provider_id
            record.model_id = model_id
            record.last_used_at = datetime.now(UTC)
            record.refresh_status(record.owner_user_id)
            await self.store.put_session(record)

            if record.owner_user_id != 0:
                try:
                    await self.store.put_user_session(record.owner_user_id, session_id)
                    await self.store.put_user_last_model(record.owner_user_id, provider_id, model_id)
                except StorageIOError as e:
                    logger.warning(f"Failed to update preferences of user {record.owner_user_id}: {e}")

            logger.info(f"Updated session {session_id} model to {provider_id}/{model_id}")
            return record

    async def rename_session(self, user_id: int, session_id: str, new_name: str) -> SessionRecord:
        """Rename a session owned by ``user_id``; orphans are claimed on rename.

        Raises:
            ValueError: If ``new_name`` is blank
            ChildSessionError: If the session is a sub-agent session
            SessionNotFoundError: If the session is not cached
            PermissionDeniedError: If another user owns the session
            RemoteServiceError: If the remote rename fails
        """
        new_name = new_name.strip()
        if not new_name:
            raise ValueError("Session name must not be empty")

        async with self._lock.write():
            record = await self.store.get_session(session_id)
            await self._ensure_top_level(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)

            status = record.status_for(user_id)
            if status is SessionStatus.OTHER:
                raise PermissionDeniedError(user_id, session_id, "session belongs to another user")
            if status is SessionStatus.ORPHANED:
                logger.info(f"Assigning orphaned session {session_id} to user {user_id}")
                record.owner_user_id = user_id

            await self.remote.rename_session(session_id, new_name, user_id)

            record.name = new_name
            record.last_used_at = datetime.now(UTC)
            record.refresh_status(user_id)
            await self.store.put_session(record)

            logger.info(f"Renamed session {session_id} to '{new_name}' for user {user_id}")
            return record

    async def delete_session(self, user_id: int, session_id: str) -> None:
        """Delete a session owned by ``user_id`` or orphaned.

        A session missing from the cache is still deleted remotely once its
        parent linkage has been checked.

        Raises:
            ChildSessionError: If the session is a sub-agent session
            PermissionDeniedError: If another user owns the session
            RemoteServiceError: If the remote delete fails
        """
        async with self._lock.write():
            record = await self.store.get_session(session_id)
            await self._ensure_top_level(session_id)

            if record is None:
                await self.remote.delete_session(session_id)
                logger.info(f"Deleted session {session_id} (not in local cache)")
                return

            if record.status_for(user_id) is SessionStatus.OTHER:
                raise PermissionDeniedError(user_id, session_id, "session belongs to another user")

            await self.remote.delete_session(session_id)
            await self.store.delete_session(session_id)
            logger.info(f"Deleted session {session_id} ('{record.name}')")

    async def cleanup_inactive_sessions(self, max_age: timedelta) -> list[str]:
        """Drop cached sessions unused for longer than ``max_age``."""
        async with self._lock.write():
            removed = await self.store.cleanup_inactive(max_age)
            if removed:
                logger.info(f"Cleaned up {len(removed)} inactive sessions")
            return removed

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_session(self, session_id: str, requester_id: int = 0) -> SessionRecord | None:
        """Return the cached record with its status computed for ``requester_id``."""
        async with self._lock.read():
            record = await self.store.get_session(session_id)
        if record is not None:
            record.refresh_status(requester_id)
        return record

    async def get_session_count(self) -> int:
        async with self._lock.read():
            return len(await self.store.list_sessions())

    async def list_models(self) -> list[ModelRecord]:
        """Return the model catalog ordered by number."""
        async with self._lock.read():
            models = await self.store.list_models()
        return sorted(models, key=lambda model: (model.number <= 0, model.number, model.key))

    async def get_model(self, provider_id: str, model_id: str) -> ModelRecord | None:
        async with self._lock.read():
            return await self.store.get_model(provider_id, model_id)

    async def find_model_by_number(self, number: int) -> ModelRecord | None:
        """Resolve a short model number back to its record."""
        if number <= 0:
            return None
        for model in await self.list_models():
            if model.number == number:
                return model
        return None

    async def get_user_last_model(self, user_id: int) -> ModelPreference | None:
        async with self._lock.read():
            return await self.store.get_user_last_model(user_id)

    async def set_user_last_model(self, user_id: int, provider_id: str, model_id: str) -> None:
        async with self._lock.write():
            await self.store.put_user_last_model(user_id, provider_id, model_id)

    async def close(self) -> None:
        """Flush the store and release the remote client."""
        async with self._lock.write():
            try:
                await self.store.close()
            finally:
                await self.remote.close()

    # =========================================================================
    # Helpers (caller holds the write lock)
    # =========================================================================

    async def _ensure_top_level(self, session_id: str) -> None:
        try:
            remote = await self.remote.get_session(session_id)
        except RemoteServiceError as e:
            logger.warning(f"Failed to fetch session {session_id}: {e}")
            return
        if remote.is_child:
            raise ChildSessionError(session_id, remote.parent_id)

    async def _apply_user_default_model(self, record: SessionRecord, user_id: int) -> None:
        if user_id == 0 or record.has_model:
            return
        preference = await self.store.get_user_last_model(user_id)
        if apply_preferred_model(record, preference):
            logger.info(
                f"Applied stored default model {record.provider_id}/{record.model_id} "
                f"to session {record.session_id} for user {user_id}"
            )

    async def _resolve_preferred_model(self, user_id: int) -> ModelPreference | None:
        """Remembered last model, else the model of the current session."""
        preference = await self.store.get_user_last_model(user_id)
        if preference is not None and preference.is_complete:
            return preference

        current_id = await self.store.get_user_session(user_id)
        if not current_id:
            return None
        record = await self.store.get_session(current_id)
        if record is None or not record.has_model:
            return None

        preference = ModelPreference(record.provider_id, record.model_id)
        try:
            await self.store.put_user_last_model(user_id, preference.provider_id, preference.model_id)
        except StorageIOError as e:
            logger.warning(f"Failed to persist recovered model {record.provider_id}/{record.model_id} for user {user_id}: {e}")
        else:
            logger.info(
                f"Recovered model of user {user_id} from session {current_id}: "
                f"{record.provider_id}/{record.model_id}"
            )
        return preference

    @staticmethod
    def _session_metadata(user_id: int, name: str | None, preference: ModelPreference | None) -> dict[str, Any]:
        metadata: dict[str, Any] = {"owner_user_id": user_id, "created_via": CREATED_VIA}
        if name:
            metadata["session_name"] = name
        if preference is not None:
            if preference.provider_id:
                metadata["provider_id"] = preference.provider_id
            if preference.model_id:
                metadata["model_id"] = preference.model_id
        return metadata


async def open_manager(config: MirrorConfig) -> SessionManager:
    """Build a manager over a file store and an HTTP remote client.

    Args:
        config: Validated configuration

    Returns:
        SessionManager; call ``initialize()`` before serving requests
    """
    store = await FileMirrorStore.open(config.state_file)
    remote = RemoteClient(config.remote_url, timeout=config.request_timeout)
    return SessionManager(store, remote)
