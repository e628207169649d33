"""
File-backed implementation of the mirror store.

All four tables live in one JSON document:

    {
      "user_sessions":    {"<user id>": "<session id>"},
      "sessions":         {"<session id>": {...SessionRecord...}},
      "models":           {"<provider>/<model>": {...ModelRecord...}},
      "user_last_models": {"<user id>": {"providerID": ..., "modelID": ...}}
    }

The document is loaded fully at startup and rewritten wholesale, atomically,
on every mutation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from ..config import DEFAULT_STATE_FILE
from ..exceptions import StorageIOError
from ..protocol import MirrorStore, ModelPreference, ModelRecord, SessionRecord, model_key
from .file_ops import migrate_legacy_state_file, read_json, write_json_atomic

logger = logging.getLogger(__name__)


def normalize_models(raw: dict[str, Any]) -> tuple[dict[str, ModelRecord], bool]:
    """Re-key a stored model table by composite (provider, model) key.

    Older state files keyed models by a bare or slash-joined id and may lack
    the provider field. A missing provider is derived from the stored key:
    the part before the record's own id when the key ends with it, otherwise
    everything before the last ``/``. When two entries collapse onto the same
    key, the one holding a valid (> 0) number wins.

    Args:
        raw: The ``models`` mapping as read from disk

    Returns:
        (models by composite key, whether anything had to be rewritten)
    """
    models: dict[str, ModelRecord] = {}
    changed = False

    for stored_key, value in raw.items():
        record = ModelRecord.from_dict(value or {})

        if not record.provider_id and "/" in stored_key:
            if record.id and stored_key.endswith("/" + record.id):
                record.provider_id = stored_key[: -len(record.id) - 1]
            else:
                provider_id, _, legacy_id = stored_key.rpartition("/")
                record.provider_id = provider_id
                if not record.id:
                    record.id = legacy_id
        if not record.id:
            record.id = stored_key

        key = record.key
        if not key:
            changed = True
            continue
        if key != stored_key:
            changed = True

        current = models.get(key)
        if current is not None:
            changed = True
            if current.number > 0 or record.number <= 0:
                continue
        models[key] = record

    return models, changed


class FileMirrorStore(MirrorStore):
    """JSON-file store for user mappings, sessions, models and preferences.

    Every mutating call holds the internal lock while it updates the maps and
    rewrites the file, so at most one write is in flight. Reads work on the
    in-memory maps and return copies.

    If a write fails the file keeps its previous content, the in-memory maps
    keep the attempted change, and the store is marked dirty so ``close()``
    retries the flush.
    """

    def __init__(self, path: Path | str):
        """Create an empty store bound to ``path``.

        Use ``FileMirrorStore.open()`` to also load existing data.

        Args:
            path: Location of the JSON state file
        """
        self.path = Path(path)
        self._lock = asyncio.Lock()
        self._user_sessions: dict[int, str] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._models: dict[str, ModelRecord] = {}
        self._user_last_models: dict[int, ModelPreference] = {}
        self._dirty = False

    @classmethod
    async def open(cls, path: Path | str, default_name: str = DEFAULT_STATE_FILE) -> FileMirrorStore:
        """Create a store and load the state file.

        An absent file yields an empty store. A legacy ``sessions.json`` next
        to a default-named state file is migrated first.

        Raises:
            StorageIOError: If the file exists but cannot be read or parsed
        """
        store = cls(path)
        migrate_legacy_state_file(store.path, default_name)
        await store.load()
        return store

    async def load(self) -> None:
        """Replace the in-memory tables with the content of the state file."""
        async with self._lock:
            data = await read_json(self.path)
            if data is None:
                logger.debug(f"No state file at {self.path}, starting empty")
                return

            try:
                user_sessions = {
                    int(user_id): str(session_id)
                    for user_id, session_id in (data.get("user_sessions") or {}).items()
                }
                sessions = {}
                for session_id, value in (data.get("sessions") or {}).items():
                    record = SessionRecord.from_dict({"session_id": session_id, **(value or {})})
                    sessions[record.session_id] = record
                models, models_changed = normalize_models(data.get("models") or {})
                user_last_models = {
                    int(user_id): ModelPreference.from_dict(value or {})
                    for user_id, value in (data.get("user_last_models") or {}).items()
                }
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise StorageIOError("parse_state", str(self.path), e) from e

            self._user_sessions = user_sessions
            self._sessions = sessions
            self._models = models
            self._user_last_models = user_last_models
            self._dirty = models_changed

            if models_changed:
                logger.info(f"Normalized legacy model keys in {self.path}")
            logger.debug(
                f"Loaded {len(sessions)} sessions, {len(models)} models, "
                f"{len(user_sessions)} user mappings from {self.path}"
            )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "user_sessions": {str(k): v for k, v in self._user_sessions.items()},
            "sessions": {k: v.to_dict() for k, v in self._sessions.items()},
            "models": {k: v.to_dict() for k, v in self._models.items()},
            "user_last_models": {str(k): v.to_dict() for k, v in self._user_last_models.items()},
        }

    async def _save_locked(self) -> None:
        # Caller must hold self._lock
        self._dirty = True
        await write_json_atomic(self.path, self._snapshot())
        self._dirty = False

    # =========================================================================
    # User -> current session
    # =========================================================================

    async def put_user_session(self, user_id: int, session_id: str) -> None:
        async with self._lock:
            self._user_sessions[user_id] = session_id
            await self._save_locked()

    async def get_user_session(self, user_id: int) -> str | None:
        return self._user_sessions.get(user_id)

    async def delete_user_session(self, user_id: int) -> None:
        async with self._lock:
            if self._user_sessions.pop(user_id, None) is None:
                return
            await self._save_locked()

    # =========================================================================
    # Sessions
    # =========================================================================

    async def put_session(self, record: SessionRecord) -> None:
        async with self._lock:
            self._sessions[record.session_id] = replace(record)
            await self._save_locked()

    async def get_session(self, session_id: str) -> SessionRecord | None:
        record = self._sessions.get(session_id)
        return replace(record) if record is not None else None

    async def delete_session(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)
            self._drop_mappings_to(session_id)
            await self._save_locked()

    async def list_sessions(self) -> list[SessionRecord]:
        return [replace(record) for record in self._sessions.values()]

    async def cleanup_inactive(self, max_age: timedelta) -> list[str]:
        async with self._lock:
            now = datetime.now(UTC)
            removed = [
                session_id
                for session_id, record in self._sessions.items()
                if now - record.last_used_at > max_age
            ]
            if not removed:
                return []

            for session_id in removed:
                del self._sessions[session_id]
                self._drop_mappings_to(session_id)
            await self._save_locked()
            return removed

    def _drop_mappings_to(self, session_id: str) -> None:
        for user_id in [u for u, s in self._user_sessions.items() if s == session_id]:
            del self._user_sessions[user_id]

    # =========================================================================
    # Models
    # =========================================================================

    async def put_model(self, record: ModelRecord) -> None:
        key = record.key
        if not key:
            raise StorageIOError("put_model", str(self.path), ValueError("model has no id"))
        async with self._lock:
            self._models[key] = replace(record)
            await self._save_locked()

    async def get_model(self, provider_id: str, model_id: str) -> ModelRecord | None:
        record = self._models.get(model_key(provider_id, model_id))
        return replace(record) if record is not None else None

    async def delete_model(self, provider_id: str, model_id: str) -> None:
        async with self._lock:
            if self._models.pop(model_key(provider_id, model_id), None) is None:
                return
            await self._save_locked()

    async def list_models(self) -> list[ModelRecord]:
        return [replace(record) for record in self._models.values()]

    # =========================================================================
    # User -> last model
    # =========================================================================

    async def put_user_last_model(self, user_id: int, provider_id: str, model_id: str) -> None:
        async with self._lock:
            self._user_last_models[user_id] = ModelPreference(provider_id, model_id)
            await self._save_locked()

    async def get_user_last_model(self, user_id: int) -> ModelPreference | None:
        return self._user_last_models.get(user_id)

    async def close(self) -> None:
        """Flush the tables if the last write did not reach the disk."""
        async with self._lock:
            if self._dirty:
                await self._save_locked()
