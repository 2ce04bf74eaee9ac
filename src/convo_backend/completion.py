"""Streaming chat completion client for OpenAI-compatible providers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Optional, Sequence

import httpx

from .config import Settings
from .errors import UpstreamError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class DeltaFrameDecoder:
    """
    Turn raw ``data:`` stream text into content deltas.

    Chunks may split lines anywhere, so the incomplete trailing line is kept
    until the next chunk arrives. A ``data:`` body that is not valid JSON is
    held and retried joined with the following body; when the following body
    parses on its own the held fragment is dropped.
    """

    def __init__(self) -> None:
        self._line_buffer = ""
        self._fragment: str | None = None
        self._done = False
        self._deltas = 0
        self._unparsed_bodies = 0

    @property
    def done(self) -> bool:
        return self._done

    @property
    def deltas_emitted(self) -> int:
        return self._deltas

    def feed(self, chunk: str) -> list[str]:
        """Consume a transport chunk and return the deltas it completed."""

        if self._done or not chunk:
            return []

        self._line_buffer += chunk
        *lines, self._line_buffer = self._line_buffer.split("\n")

        deltas: list[str] = []
        for line in lines:
            deltas.extend(self._consume_line(line))
            if self._done:
                break
        return deltas

    def finish(self) -> list[str]:
        """Flush a final unterminated line and validate the stream outcome."""

        deltas: list[str] = []
        if not self._done and self._line_buffer:
            deltas.extend(self._consume_line(self._line_buffer))
        self._line_buffer = ""

        if self._fragment is not None:
            logger.debug("Discarding %d unparsed bytes at end of stream", len(self._fragment))
            self._fragment = None

        # Garbled bodies with nothing usable fail the stream even after [DONE].
        if self._deltas == 0 and (not self._done or self._unparsed_bodies):
            raise UpstreamError("Provider stream ended without producing any content")
        return deltas

    def _consume_line(self, line: str) -> list[str]:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            # Comments, event names and keep-alive blanks carry no content.
            return []

        body = line[len("data:"):].lstrip(" ")
        if body == DONE_SENTINEL:
            self._done = True
            self._fragment = None
            return []

        payload = self._parse_body(body)
        if payload is None:
            return []

        delta = self._extract_delta(payload)
        if not delta:
            return []
        self._deltas += 1
        return [delta]

    def _parse_body(self, body: str) -> Any:
        if self._fragment is not None:
            joined = self._fragment + body
            try:
                payload = json.loads(joined)
            except json.JSONDecodeError:
                pass
            else:
                self._fragment = None
                return payload

        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            self._unparsed_bodies += 1
            self._fragment = body if self._fragment is None else self._fragment + body
            return None

        if self._fragment is not None:
            logger.debug("Dropping stale stream fragment (%d chars)", len(self._fragment))
            self._fragment = None
        return payload

    @staticmethod
    def _extract_delta(payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        choice = choices[0]
        if not isinstance(choice, dict):
            return None
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if isinstance(content, str) and content:
            return content
        return None


class CompletionClient:
    """Client responsible for streaming chat completion deltas."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(timeout=timeout, limits=limits)
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    @property
    def _base_url(self) -> str:
        return str(self._settings.openai_base_url).rstrip("/")

    async def stream_deltas(
        self, model: str, messages: Sequence[dict[str, Any]]
    ) -> AsyncGenerator[str, None]:
        """Yield content deltas in arrival order until ``[DONE]`` or end of stream."""

        payload = {"model": model, "stream": True, "messages": list(messages)}
        url = f"{self._base_url}/chat/completions"
        decoder = DeltaFrameDecoder()

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(body)
                    raise UpstreamError(
                        f"Provider returned {response.status_code}: {detail}"
                    )

                async for chunk in response.aiter_text():
                    for delta in decoder.feed(chunk):
                        yield delta
                    if decoder.done:
                        break
                if not decoder.done:
                    logger.debug("Provider stream closed without a [DONE] sentinel")
                for delta in decoder.finish():
                    yield delta
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Provider stream failed: {exc}") from exc

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            await client.aclose()

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Provider returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
            return error or payload
        return payload


__all__ = ["CompletionClient", "DeltaFrameDecoder", "DONE_SENTINEL"]
