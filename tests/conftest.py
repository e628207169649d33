"""
Shared test configuration and fixtures.

Provides an in-memory stand-in for the remote assistant service plus store
and manager fixtures backed by a temporary state file.
"""

import logging
import tempfile
from collections.abc import AsyncIterator, Iterator
from itertools import count
from pathlib import Path
from typing import Any

import pytest

from session_mirror import FileMirrorStore, SessionManager
from session_mirror.exceptions import RemoteServiceError
from session_mirror.protocol import (
    ProviderCatalog,
    RemoteMessage,
    RemoteSession,
    RemoteSessionService,
)

logger = logging.getLogger(__name__)


class FakeRemoteService(RemoteSessionService):
    """
    In-memory remote service.

    Sessions are stored as raw payloads so tests exercise the same parsing
    as the HTTP client. Set ``fail`` to an operation name (or a set of
    names) to make that call raise RemoteServiceError.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, dict[str, Any]] = {}
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.catalog: dict[str, Any] = {"all": [], "connected": []}
        self.fail: set[str] = set()
        self.calls: list[tuple[str, Any]] = []
        self.closed = False
        self._ids = count(1)

    def _check(self, operation: str, argument: Any = None) -> None:
        self.calls.append((operation, argument))
        if operation in self.fail:
            raise RemoteServiceError(operation, 500, "injected failure")

    def add_session(
        self,
        session_id: str,
        title: str = "",
        parent_id: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {"id": session_id, "title": title}
        if parent_id:
            payload["parentID"] = parent_id
        if metadata is not None:
            payload["metadata"] = metadata
        self.sessions[session_id] = payload

    def add_message(self, session_id: str, provider_id: str = "", model_id: str = "", role: str = "assistant") -> None:
        messages = self.messages.setdefault(session_id, [])
        info = {"id": f"msg-{len(messages) + 1}", "role": role}
        if provider_id:
            info["providerID"] = provider_id
        if model_id:
            info["modelID"] = model_id
        messages.append({"info": info, "parts": []})

    def set_catalog(self, providers: dict[str, dict[str, str]], connected: list[str] | None = None) -> None:
        """Replace the provider catalog.

        Args:
            providers: Model names keyed by model id, per provider id
            connected: Connected provider ids (default: all of them)
        """
        self.catalog = {
            "all": [
                {
                    "id": provider_id,
                    "name": provider_id.title(),
                    "models": {
                        model_id: {"id": model_id, "providerID": provider_id, "name": name}
                        for model_id, name in models.items()
                    },
                }
                for provider_id, models in providers.items()
            ],
            "connected": list(providers) if connected is None else connected,
        }

    def operations(self, name: str) -> list[Any]:
        return [argument for operation, argument in self.calls if operation == name]

    async def list_sessions(self) -> list[RemoteSession]:
        self._check("list_sessions")
        return [RemoteSession.from_dict(payload) for payload in self.sessions.values()]

    async def get_session(self, session_id: str) -> RemoteSession:
        self._check("get_session", session_id)
        if session_id not in self.sessions:
            raise RemoteServiceError("get_session", 404, "session not found")
        return RemoteSession.from_dict(self.sessions[session_id])

    async def create_session(self, title: str, metadata: dict[str, Any]) -> RemoteSession:
        self._check("create_session", {"title": title, "metadata": metadata})
        session_id = f"ses_{next(self._ids):04d}"
        self.add_session(session_id, title=title, metadata=dict(metadata))
        return RemoteSession.from_dict(self.sessions[session_id])

    async def rename_session(self, session_id: str, new_name: str, owner_user_id: int) -> None:
        self._check("rename_session", (session_id, new_name, owner_user_id))
        if session_id not in self.sessions:
            raise RemoteServiceError("rename_session", 404, "session not found")
        payload = self.sessions[session_id]
        payload["title"] = new_name
        payload.setdefault("metadata", {})["session_name"] = new_name

    async def delete_session(self, session_id: str) -> None:
        self._check("delete_session", session_id)
        self.sessions.pop(session_id, None)
        self.messages.pop(session_id, None)

    async def get_messages(self, session_id: str) -> list[RemoteMessage]:
        self._check("get_messages", session_id)
        return [RemoteMessage.from_dict(item) for item in self.messages.get(session_id, [])]

    async def list_providers(self) -> ProviderCatalog:
        self._check("list_providers")
        return ProviderCatalog.from_dict(self.catalog)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def state_path(temp_dir: Path) -> Path:
    return temp_dir / "mirror-state.json"


@pytest.fixture
def remote() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture
async def store(state_path: Path) -> AsyncIterator[FileMirrorStore]:
    store = await FileMirrorStore.open(state_path)
    yield store
    await store.close()


@pytest.fixture
async def manager(store: FileMirrorStore, remote: FakeRemoteService) -> SessionManager:
    return SessionManager(store, remote)
