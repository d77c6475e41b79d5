"""Executor backend over HTTP.

The orchestration core treats the executor as an opaque async callable
``(session, message, system_prompt) -> text``. This implementation posts
the turn as JSON to ``HIVE_EXECUTOR_URL`` and reads ``text`` back.

Uses httpx.AsyncClient for async HTTP with connection pooling.
"""

from __future__ import annotations

import logging

import httpx

from hive.config import Settings
from hive.core.schemas import SessionDetail
from hive.errors import ExecutorNotConfiguredError, UpstreamError

logger = logging.getLogger(__name__)

HISTORY_TURNS = 20


class HttpExecutor:
    """Async executor that delegates turns to an HTTP agent backend."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self.url = settings.executor_url
        headers: dict[str, str] = {}
        if settings.executor_token:
            headers["Authorization"] = f"Bearer {settings.executor_token}"
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=float(settings.executor_timeout),
        )

    async def __call__(self, session: SessionDetail, message: str, system_prompt: str) -> str:
        if not self.url:
            raise ExecutorNotConfiguredError("No executor configured (set HIVE_EXECUTOR_URL)")

        history = [
            {"role": m.role, "content": m.text}
            for m in session.messages[-HISTORY_TURNS:]
            if m.role in ("user", "assistant")
        ]
        payload = {
            "session_id": session.id,
            "agent_id": session.agent_id,
            "system_prompt": system_prompt,
            "history": history,
            "message": message,
        }
        try:
            response = await self._client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"Executor returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Executor request failed: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise UpstreamError("Executor returned invalid JSON") from e

        text = data.get("text") if isinstance(data, dict) else None
        if not isinstance(text, str):
            raise UpstreamError("Executor response is missing 'text'")
        logger.debug("Executor replied on session %s (%d chars)", session.id, len(text))
        return text

    async def close(self) -> None:
        """Close the underlying httpx client if this executor created it."""
        if self._owns_client:
            await self._client.aclose()
