"""
Core types and abstract base classes for the session mirror.

This module defines the locally persisted records, the typed views of the
remote service payloads, and the two collaborator contracts the
synchronization manager works against: MirrorStore and RemoteSessionService.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

# Name given to sessions that carry neither a title nor a name hint
DEFAULT_SESSION_NAME = "Chat Session"

# Candidate metadata keys, tried in order
OWNER_KEYS = ("owner_user_id", "telegram_user_id")
NAME_KEYS = ("session_name", "title")
PROVIDER_KEYS = ("provider_id", "providerID")
MODEL_KEYS = ("model_id", "modelID")

# Field names of session records written before the snake_case layout
LEGACY_SESSION_FIELDS = {
    "session_id": "SessionID",
    "owner_user_id": "UserID",
    "name": "Name",
    "created_at": "CreatedAt",
    "last_used_at": "LastUsedAt",
    "message_count": "MessageCount",
    "provider_id": "ProviderID",
    "model_id": "ModelID",
}

_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def model_key(provider_id: str, model_id: str) -> str:
    """Return the canonical storage key for a provider/model pair.

    Falls back to whichever side is non-empty when the other one is blank.
    """
    provider_id = (provider_id or "").strip()
    model_id = (model_id or "").strip()
    if not provider_id:
        return model_id
    if not model_id:
        return provider_id
    return f"{provider_id}/{model_id}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        # Older files carry nanosecond fractions
        parsed = datetime.fromisoformat(_EXTRA_FRACTION.sub(r"\1", value, count=1))
    else:
        return datetime.now(UTC)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# =============================================================================
# Local records
# =============================================================================


class SessionStatus(Enum):
    """Ownership of a session relative to the user performing an operation."""

    OWNED = "owned"
    ORPHANED = "orphaned"
    OTHER = "other"


def derive_status(owner_user_id: int, requester_id: int) -> SessionStatus:
    """Compute the ownership view of a session for a requester.

    An owner of 0 means nobody has claimed the session, which takes
    precedence over a requester id of 0.
    """
    if owner_user_id == 0:
        return SessionStatus.ORPHANED
    if owner_user_id == requester_id:
        return SessionStatus.OWNED
    return SessionStatus.OTHER


@dataclass
class SessionRecord:
    """Local metadata for one remote session.

    ``status`` is a view computed for the user of the current operation and
    is not persisted.
    """

    session_id: str
    owner_user_id: int = 0
    name: str = DEFAULT_SESSION_NAME
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_used_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    message_count: int = 0
    provider_id: str = ""
    model_id: str = ""
    status: SessionStatus = SessionStatus.ORPHANED

    def status_for(self, requester_id: int) -> SessionStatus:
        return derive_status(self.owner_user_id, requester_id)

    def refresh_status(self, requester_id: int) -> SessionStatus:
        """Recompute and store ``status`` for ``requester_id``."""
        self.status = self.status_for(requester_id)
        return self.status

    @property
    def has_model(self) -> bool:
        return bool(self.provider_id.strip() and self.model_id.strip())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "owner_user_id": self.owner_user_id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "message_count": self.message_count,
            "provider_id": self.provider_id,
            "model_id": self.model_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        """Create from dictionary.

        Accepts both the current field names and the capitalized names of
        older state files.
        """

        def get(name: str) -> Any:
            value = data.get(name)
            if value is None:
                value = data.get(LEGACY_SESSION_FIELDS[name])
            return value

        session_id = get("session_id")
        if not session_id:
            raise KeyError("session_id")
        owner = int(get("owner_user_id") or 0)
        return cls(
            session_id=session_id,
            owner_user_id=owner,
            name=get("name") or DEFAULT_SESSION_NAME,
            created_at=_parse_timestamp(get("created_at")),
            last_used_at=_parse_timestamp(get("last_used_at")),
            message_count=int(get("message_count") or 0),
            provider_id=get("provider_id") or "",
            model_id=get("model_id") or "",
            status=derive_status(owner, 0),
        )


@dataclass
class ModelRecord:
    """A (provider, model) pair from the remote catalog with its short number."""

    id: str
    provider_id: str = ""
    name: str = ""
    family: str = ""
    status: str = ""
    release_date: str = ""
    number: int = 0

    @property
    def key(self) -> str:
        return model_key(self.provider_id, self.id)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization.

        Field names follow the remote catalog so older state files stay readable.
        """
        return {
            "id": self.id,
            "number": self.number,
            "providerID": self.provider_id,
            "name": self.name,
            "family": self.family,
            "status": self.status,
            "release_date": self.release_date,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelRecord":
        """Create from dictionary."""
        return cls(
            id=data.get("id") or "",
            provider_id=data.get("providerID") or data.get("provider_id") or "",
            name=data.get("name") or "",
            family=data.get("family") or "",
            status=data.get("status") or "",
            release_date=data.get("release_date") or "",
            number=int(data.get("number") or 0),
        )


@dataclass(frozen=True)
class ModelPreference:
    """A user's remembered provider/model pair."""

    provider_id: str
    model_id: str

    @property
    def is_complete(self) -> bool:
        return bool(self.provider_id.strip() and self.model_id.strip())

    def to_dict(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelPreference":
        return cls(
            provider_id=data.get("providerID") or data.get("provider_id") or "",
            model_id=data.get("modelID") or data.get("model_id") or "",
        )


# =============================================================================
# Remote payloads
# =============================================================================


def _first_string(metadata: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _first_user_id(metadata: dict[str, Any], keys: tuple[str, ...]) -> int:
    for key in keys:
        value = metadata.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return int(value)
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
    return 0


@dataclass
class SessionHints:
    """Typed view of the metadata bag the front-end embeds in remote sessions.

    Every field is optional; empty strings and 0 mean "not supplied".
    """

    owner_user_id: int = 0
    name: str = ""
    provider_id: str = ""
    model_id: str = ""

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> "SessionHints":
        if not metadata:
            return cls()
        return cls(
            owner_user_id=_first_user_id(metadata, OWNER_KEYS),
            name=_first_string(metadata, NAME_KEYS),
            provider_id=_first_string(metadata, PROVIDER_KEYS),
            model_id=_first_string(metadata, MODEL_KEYS),
        )


@dataclass
class RemoteSession:
    """A session as reported by the remote service."""

    id: str
    title: str = ""
    parent_id: str = ""
    hints: SessionHints = field(default_factory=SessionHints)

    @property
    def is_child(self) -> bool:
        """Sub-agent sessions are parented to another session."""
        return bool(self.parent_id)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteSession":
        return cls(
            id=data["id"],
            title=(data.get("title") or "").strip(),
            parent_id=data.get("parentID") or data.get("parent_id") or "",
            hints=SessionHints.from_metadata(data.get("metadata")),
        )


@dataclass
class RemoteMessage:
    """The model attribution of one message in a remote session."""

    id: str = ""
    role: str = ""
    provider_id: str = ""
    model_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteMessage":
        # Messages arrive either flat or as {"info": {...}, "parts": [...]}
        info = data.get("info") if isinstance(data.get("info"), dict) else data
        return cls(
            id=info.get("id") or "",
            role=info.get("role") or "",
            provider_id=info.get("providerID") or info.get("provider_id") or "",
            model_id=info.get("modelID") or info.get("model_id") or "",
        )


@dataclass
class RemoteModel:
    """A model entry of the remote provider catalog."""

    id: str = ""
    provider_id: str = ""
    name: str = ""
    family: str = ""
    status: str = ""
    release_date: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteModel":
        return cls(
            id=data.get("id") or "",
            provider_id=data.get("providerID") or "",
            name=data.get("name") or "",
            family=data.get("family") or "",
            status=data.get("status") or "",
            release_date=data.get("release_date") or "",
        )


@dataclass
class RemoteProvider:
    """A provider of the remote catalog and its models keyed by model id."""

    id: str
    name: str = ""
    models: dict[str, RemoteModel] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RemoteProvider":
        models = data.get("models") or {}
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            models={key: RemoteModel.from_dict(value) for key, value in models.items()},
        )


@dataclass
class ProviderCatalog:
    """All providers known to the remote service and the connected subset."""

    providers: list[RemoteProvider] = field(default_factory=list)
    connected: list[str] = field(default_factory=list)

    def connected_models(self) -> list[RemoteModel]:
        """Flatten the models of connected providers.

        Blank model ids fall back to the catalog key, blank provider ids to the
        owning provider, and blank names to the model id.
        """
        connected = set(self.connected)
        models: list[RemoteModel] = []
        for provider in self.providers:
            if provider.id not in connected:
                continue
            for catalog_key, model in provider.models.items():
                model_id = model.id.strip() or catalog_key
                models.append(
                    RemoteModel(
                        id=model_id,
                        provider_id=model.provider_id.strip() or provider.id,
                        name=model.name.strip() or model_id,
                        family=model.family,
                        status=model.status,
                        release_date=model.release_date,
                    )
                )
        return models

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProviderCatalog":
        return cls(
            providers=[RemoteProvider.from_dict(item) for item in data.get("all") or []],
            connected=list(data.get("connected") or []),
        )


# =============================================================================
# Collaborator contracts
# =============================================================================


class MirrorStore(ABC):
    """Abstract base class for the persistent four-table store.

    Implementations must guarantee:
    1. Durability: every mutating call is persisted before it returns
    2. Atomicity: a failed persist leaves the previous durable image intact
    3. Isolation: returned records are copies; changes are only visible after
       they are written back through the store
    """

    # =========================================================================
    # User -> current session
    # =========================================================================

    @abstractmethod
    async def put_user_session(self, user_id: int, session_id: str) -> None:
        """Map a user to their current session."""
        ...

    @abstractmethod
    async def get_user_session(self, user_id: int) -> str | None:
        """Get the current session id of a user, or None."""
        ...

    @abstractmethod
    async def delete_user_session(self, user_id: int) -> None:
        """Forget a user's current session mapping."""
        ...

    # =========================================================================
    # Sessions
    # =========================================================================

    @abstractmethod
    async def put_session(self, record: SessionRecord) -> None:
        """Insert or replace a session record."""
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionRecord | None:
        """Get a session record by id, or None."""
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session record and every user mapping pointing at it."""
        ...

    @abstractmethod
    async def list_sessions(self) -> list[SessionRecord]:
        """List all session records."""
        ...

    @abstractmethod
    async def cleanup_inactive(self, max_age: timedelta) -> list[str]:
        """Remove sessions unused for longer than ``max_age``.

        Returns:
            Ids of the removed sessions
        """
        ...

    # =========================================================================
    # Models
    # =========================================================================

    @abstractmethod
    async def put_model(self, record: ModelRecord) -> None:
        """Insert or replace a model record under its composite key."""
        ...

    @abstractmethod
    async def get_model(self, provider_id: str, model_id: str) -> ModelRecord | None:
        """Get a model record by provider and model id, or None."""
        ...

    @abstractmethod
    async def delete_model(self, provider_id: str, model_id: str) -> None:
        """Delete a model record."""
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelRecord]:
        """List all model records."""
        ...

    # =========================================================================
    # User -> last model
    # =========================================================================

    @abstractmethod
    async def put_user_last_model(self, user_id: int, provider_id: str, model_id: str) -> None:
        """Remember the last model a user selected."""
        ...

    @abstractmethod
    async def get_user_last_model(self, user_id: int) -> ModelPreference | None:
        """Get the remembered model of a user, or None."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush any pending write and release resources."""
        ...


class RemoteSessionService(ABC):
    """Contract of the remote assistant service.

    Every method may raise RemoteServiceError. None of them retry.
    """

    @abstractmethod
    async def list_sessions(self) -> list[RemoteSession]:
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> RemoteSession:
        ...

    @abstractmethod
    async def create_session(self, title: str, metadata: dict[str, Any]) -> RemoteSession:
        ...

    @abstractmethod
    async def rename_session(self, session_id: str, new_name: str, owner_user_id: int) -> None:
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        ...

    @abstractmethod
    async def get_messages(self, session_id: str) -> list[RemoteMessage]:
        """Messages of a session ordered oldest to newest."""
        ...

    @abstractmethod
    async def list_providers(self) -> ProviderCatalog:
        ...

    async def close(self) -> None:
        """Release transport resources."""
        return None
