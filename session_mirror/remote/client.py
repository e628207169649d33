"""
HTTP client of the remote assistant service.

Talks JSON over aiohttp. The HTTP session is created on first use and
ignores proxy settings from the environment, since the service normally
runs on the same host.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from ..config import DEFAULT_TIMEOUT
from ..exceptions import RemoteServiceError
from ..protocol import (
    ProviderCatalog,
    RemoteMessage,
    RemoteSession,
    RemoteSessionService,
)

logger = logging.getLogger(__name__)


class RemoteClient(RemoteSessionService):
    """aiohttp implementation of RemoteSessionService.

    Example:
        >>> async with RemoteClient("http://127.0.0.1:4096") as client:
        ...     sessions = await client.list_sessions()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Root URL of the remote service
            timeout: Total timeout per request in seconds
            session: Optional externally managed HTTP session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> RemoteClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
                trust_env=False,
            )
            self._owns_session = True
        return self._session

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and decode the JSON reply.

        Raises:
            RemoteServiceError: On transport errors, timeouts, HTTP status >= 400
                or an undecodable body
        """
        url = f"{self.base_url}{path}"
        logger.debug(f"Making {method} request to {url}")

        try:
            async with self._get_session().request(method, url, json=body) as response:
                if allow_not_found and response.status == 404:
                    return None
                if response.status >= 400:
                    raise RemoteServiceError(operation, response.status, await _error_message(response))
                if response.status == 204:
                    return None
                text = await response.text()
                if not text.strip():
                    return None
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise RemoteServiceError(operation, response.status, "invalid JSON response", e) from e
        except asyncio.TimeoutError as e:
            raise RemoteServiceError(operation, reason=f"timed out after {self.timeout}s", cause=e) from e
        except aiohttp.ClientError as e:
            raise RemoteServiceError(operation, cause=e) from e

    # =========================================================================
    # Sessions
    # =========================================================================

    async def list_sessions(self) -> list[RemoteSession]:
        data = await self._request("list_sessions", "GET", "/session")
        return [RemoteSession.from_dict(item) for item in data or []]

    async def get_session(self, session_id: str) -> RemoteSession:
        data = await self._request("get_session", "GET", f"/session/{session_id}")
        if not data:
            raise RemoteServiceError("get_session", reason=f"empty response for session {session_id}")
        return RemoteSession.from_dict(data)

    async def create_session(self, title: str, metadata: dict[str, Any]) -> RemoteSession:
        data = await self._request(
            "create_session",
            "POST",
            "/session",
            {"title": title, "metadata": metadata},
        )
        if not data:
            raise RemoteServiceError("create_session", reason="empty response")
        session = RemoteSession.from_dict(data)
        logger.debug(f"Remote created session {session.id}")
        return session

    async def rename_session(self, session_id: str, new_name: str, owner_user_id: int) -> None:
        metadata: dict[str, Any] = {"session_name": new_name}
        if owner_user_id:
            metadata["owner_user_id"] = owner_user_id
        await self._request(
            "rename_session",
            "PUT",
            f"/session/{session_id}",
            {"title": new_name, "metadata": metadata},
        )

    async def delete_session(self, session_id: str) -> None:
        """Delete a remote session; an already missing session is not an error."""
        await self._request("delete_session", "DELETE", f"/session/{session_id}", allow_not_found=True)

    async def get_messages(self, session_id: str) -> list[RemoteMessage]:
        data = await self._request("get_messages", "GET", f"/session/{session_id}/message")
        return [RemoteMessage.from_dict(item) for item in data or []]

    # =========================================================================
    # Providers
    # =========================================================================

    async def list_providers(self) -> ProviderCatalog:
        data = await self._request("list_providers", "GET", "/provider")
        return ProviderCatalog.from_dict(data or {})

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None


async def _error_message(response: aiohttp.ClientResponse) -> str:
    try:
        payload = await response.json(content_type=None)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return response.reason or f"request failed with status {response.status}"
