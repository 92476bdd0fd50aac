"""Client wrapper for streaming chat-completions requests."""

from __future__ import annotations

import json
import logging
import threading
from typing import Dict, Iterator, List, Optional

import requests

from .config import ChatLLMConfig
from .errors import CompletionError

logger = logging.getLogger(__name__)


class TokenStream:
    """Iterator over the tokens of one streaming completion.

    ``close`` may be called from any thread; it shuts the underlying HTTP
    response so a worker blocked on the next line returns promptly.
    """

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._response.close()

    def __iter__(self) -> Iterator[str]:
        try:
            for raw_line in self._response.iter_lines():
                if self._closed.is_set():
                    return
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8").strip()
                if line.startswith("data:"):
                    line = line[5:].strip()
                if not line:
                    continue
                if line == "[DONE]":
                    return

                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream line: %s", line)
                    continue

                if isinstance(payload, dict) and payload.get("error"):
                    raise CompletionError(_error_text(payload["error"]))

                token = ChatLLMClient._extract_delta(payload)
                if token:
                    yield token
        except CompletionError:
            raise
        except Exception as exc:
            # Closing the response from another thread surfaces as a read error.
            if self._closed.is_set():
                return
            raise CompletionError(f"Completion stream interrupted: {exc}") from exc
        finally:
            self._response.close()


class ChatLLMClient:
    """Thin wrapper around a chat-completions endpoint with streaming support."""

    def __init__(self, config: ChatLLMConfig) -> None:
        self.config = config

    def stream_completion(
        self,
        messages: List[Dict[str, str]],
        *,
        model_kwargs: Optional[Dict[str, object]] = None,
    ) -> TokenStream:
        """Open a streaming completion and return its token iterator."""
        payload: Dict[str, object] = {
            "model": self.config.model,
            "messages": messages,
            "stream": True,
        }
        if model_kwargs:
            payload.update(model_kwargs)

        logger.info("Streaming chat completion to %s using model %s", self.config.endpoint, self.config.model)
        try:
            response = requests.post(
                self.config.endpoint,
                json=payload,
                headers=self._headers(),
                stream=True,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise CompletionError(f"Completion request failed: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text[:500]
            response.close()
            raise CompletionError(f"Completion endpoint returned {response.status_code}: {detail}")
        return TokenStream(response)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    @staticmethod
    def _extract_delta(payload: Dict[str, object]) -> str:
        try:
            choices = payload.get("choices") or []
            if not choices:
                return ""
            delta = choices[0].get("delta") or {}
            content = delta.get("content") or ""
            return str(content)
        except Exception:
            logger.debug("Failed to parse stream payload: %s", payload, exc_info=True)
            return ""


def _error_text(error: object) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
