"""Async HTTP client for the conversation endpoints."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from .errors import ApiError
from .models import ConversationRecord, ViewEntry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8010"


def response_detail(response: httpx.Response) -> str:
    """Extract a readable error message from an error response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        detail = payload.get("detail") or payload.get("error")
        if detail:
            return str(detail)
    return str(payload)


class ChatApiClient:
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self._owns_client = client is None
        self.http = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def list_conversations(self) -> List[ConversationRecord]:
        payload = await self._request("GET", "/conversations")
        return [ConversationRecord.from_json(item) for item in payload]

    async def create_conversation(self, title: Optional[str] = None) -> ConversationRecord:
        body = {"title": title} if title else {}
        payload = await self._request("POST", "/conversations", json=body)
        return ConversationRecord.from_json(payload)

    async def get_conversation(self, conversation_id: str) -> ConversationRecord:
        payload = await self._request("GET", f"/conversations/{conversation_id}")
        return ConversationRecord.from_json(payload)

    async def rename_conversation(self, conversation_id: str, title: str) -> ConversationRecord:
        payload = await self._request(
            "PATCH", f"/conversations/{conversation_id}", json={"title": title}
        )
        return ConversationRecord.from_json(payload)

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/conversations/{conversation_id}")

    async def list_messages(self, conversation_id: str) -> List[ViewEntry]:
        payload = await self._request("GET", f"/conversations/{conversation_id}/messages")
        return [ViewEntry.from_json(item) for item in payload]

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise ApiError(0, f"Request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ApiError(response.status_code, response_detail(response))
        return response.json()
