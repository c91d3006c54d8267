"""REST collaborator for the data backend.

Reads (profiles, conversations, message and notification pages) feed the
event router's relevance checks, enrichment and history loads. Writes
(messages, community messages, comments) return the server-confirmed row,
which the reconciliation layer uses to replace its optimistic entries.
The backend speaks PostgREST:
filters are ``column=eq.value`` query params and writes ask for the
inserted row back with ``Prefer: return=representation``.
"""
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from livesync.config import AppConfig
from livesync.errors import WriteFailed

from .schemas import (
    Comment,
    CommentDraft,
    CommunityMessage,
    Conversation,
    Message,
    Notification,
    Profile,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

PROFILE_COLUMNS = "id,username,full_name,avatar_url,verified"


class BackendError(Exception):
    """Raised when a backend read fails or returns an unusable body."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class BackendClient:
    """Async client for the backend REST API.

    Args:
        base_url: REST root, e.g. ``https://project.example.com/rest/v1``.
        api_key: Project API key sent as ``apikey``.
        access_token: User session token sent as a bearer token.
        timeout: Per-request timeout in seconds; bounds every outbound write.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> "BackendClient":
        return cls(
            config.backend.rest_url,
            api_key=config.secrets.backend.api_key,
            access_token=config.secrets.backend.access_token,
            timeout=config.backend.timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # =========================================================================
    # Reads
    # =========================================================================

    async def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        try:
            resp = await self._http.get(f"/{table}", params=params)
            resp.raise_for_status()
            rows = resp.json()
        except httpx.HTTPStatusError as exc:
            raise BackendError(
                f"GET {table} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise BackendError(f"GET {table} failed: {exc}") from exc

        if not isinstance(rows, list):
            raise BackendError(f"GET {table} returned a non-list body")
        return rows

    @staticmethod
    def _parse(model: Type[ModelT], row: Dict[str, Any]) -> ModelT:
        try:
            return model.model_validate(row)
        except ValidationError as exc:
            raise BackendError(f"Malformed {model.__name__} row: {exc}") from exc

    async def fetch_profile(self, user_id: str) -> Optional[Profile]:
        """Fetch the display profile for a user, or None if there is none."""
        rows = await self._select(
            "profiles", {"id": f"eq.{user_id}", "select": PROFILE_COLUMNS}
        )
        return self._parse(Profile, rows[0]) if rows else None

    async def fetch_conversation(self, conversation_id: str) -> Optional[Conversation]:
        rows = await self._select("conversations", {"id": f"eq.{conversation_id}"})
        return self._parse(Conversation, rows[0]) if rows else None

    async def fetch_messages(self, conversation_id: str, limit: int = 50) -> List[Message]:
        """Most recent messages of a conversation, oldest first."""
        rows = await self._select(
            "messages",
            {
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [self._parse(Message, row) for row in reversed(rows)]

    async def fetch_community_messages(self, community_id: str, limit: int = 50) -> List[CommunityMessage]:
        rows = await self._select(
            "community_messages",
            {
                "community_id": f"eq.{community_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [self._parse(CommunityMessage, row) for row in reversed(rows)]

    async def fetch_notifications(self, user_id: str, limit: int = 20) -> List[Notification]:
        """Most recent notifications for a user, newest first."""
        rows = await self._select(
            "notifications",
            {
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        return [self._parse(Notification, row) for row in rows]

    # =========================================================================
    # Writes
    # =========================================================================

    async def _write(
        self,
        operation: str,
        method: str,
        table: str,
        model: Optional[Type[ModelT]],
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Optional[ModelT]:
        try:
            resp = await self._http.request(
                method,
                f"/{table}",
                json=json,
                params=params,
                headers={"Prefer": "return=representation"},
            )
            resp.raise_for_status()
            rows = resp.json() if model is not None else None
        except httpx.HTTPStatusError as exc:
            logger.warning(f"[Backend] {operation} rejected: {exc.response.status_code}")
            raise WriteFailed(
                operation,
                exc.response.text or str(exc),
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning(f"[Backend] {operation} failed: {exc}")
            raise WriteFailed(operation, str(exc)) from exc

        if model is None:
            return None
        row = rows[0] if isinstance(rows, list) and rows else rows
        if not isinstance(row, dict):
            raise WriteFailed(operation, "backend returned no confirmed row")
        try:
            return model.model_validate(row)
        except ValidationError as exc:
            raise WriteFailed(operation, f"malformed confirmation: {exc}") from exc

    async def create_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        reply_to_id: Optional[str] = None,
        message_type: str = "text",
    ) -> Message:
        """Insert a direct message and return the confirmed row."""
        row: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
        }
        if reply_to_id:
            row["reply_to_id"] = reply_to_id
        return await self._write("create-message", "POST", "messages", Message, json=row)

    async def create_community_message(
        self,
        community_id: str,
        sender_id: str,
        content: str,
        message_type: str = "text",
        file_url: Optional[str] = None,
        file_name: Optional[str] = None,
        file_size: Optional[int] = None,
        reply_to_id: Optional[str] = None,
    ) -> CommunityMessage:
        row: Dict[str, Any] = {
            "community_id": community_id,
            "sender_id": sender_id,
            "content": content,
            "message_type": message_type,
        }
        for name, value in (
            ("file_url", file_url),
            ("file_name", file_name),
            ("file_size", file_size),
            ("reply_to_id", reply_to_id),
        ):
            if value is not None:
                row[name] = value
        return await self._write(
            "create-community-message", "POST", "community_messages", CommunityMessage, json=row
        )

    async def edit_community_message(
        self, message_id: str, sender_id: str, content: str
    ) -> CommunityMessage:
        """Edit one of the sender's own community messages."""
        return await self._write(
            "edit-community-message",
            "PATCH",
            "community_messages",
            CommunityMessage,
            json={"content": content, "is_edited": True},
            params={"id": f"eq.{message_id}", "sender_id": f"eq.{sender_id}"},
        )

    async def delete_community_message(self, message_id: str) -> None:
        await self._write(
            "delete-community-message",
            "DELETE",
            "community_messages",
            None,
            params={"id": f"eq.{message_id}"},
        )

    async def create_comment(self, draft: CommentDraft) -> Comment:
        return await self._write("create-comment", "POST", "comments", Comment, json=draft.to_row())

    async def mark_notifications_read(
        self, user_id: str, notification_id: Optional[str] = None
    ) -> None:
        """Mark one notification, or all of the user's, as read."""
        params = {"user_id": f"eq.{user_id}", "read": "is.false"}
        if notification_id is not None:
            params["id"] = f"eq.{notification_id}"
        await self._write(
            "mark-notifications-read",
            "PATCH",
            "notifications",
            None,
            json={"read": True},
            params=params,
        )
