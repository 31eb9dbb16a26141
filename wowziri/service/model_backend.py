from __future__ import annotations

from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

import httpx
from openai import APIError, AsyncOpenAI

from wowziri.config import LLMProvider, Settings
from wowziri.logging import get_logger
from wowziri.service.errors import ConfigurationError, UpstreamError

logger = get_logger(__name__)


class UpstreamShape(str, Enum):
    """How the upstream model hands back its answer."""

    NATIVE = "native"
    EVENT_STREAM = "event_stream"
    SINGLE_SHOT = "single_shot"


class ModelBackend(Protocol):
    """Interface for upstream generation backends.

    A backend implements the one producer method matching its ``shape``:
    ``open_stream`` (native), ``open_event_stream`` (event_stream) or
    ``complete`` (single_shot).
    """

    shape: UpstreamShape

    def ensure_configured(self) -> None: ...

    async def aclose(self) -> None: ...


def to_upstream_messages(history: Sequence[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Map role-tagged chat turns to the upstream chat format.

    Earlier turns become context and the last turn is the prompt. Only
    ``system`` and ``assistant`` keep their role; everything else is sent as
    ``user``.
    """

    mapped: List[Dict[str, str]] = []
    for turn in history:
        role = str(turn.get("role") or "user")
        if role not in ("system", "assistant"):
            role = "user"
        content = turn.get("content")
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        mapped.append({"role": role, "content": "" if content is None else str(content)})
    return mapped


class _OpenAIBackendBase:
    def __init__(
        self,
        model: str,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self._client = client
        self._owns_client = client is None

    def ensure_configured(self) -> None:
        if self._client is None and not self.api_key:
            raise ConfigurationError("LLM API key is not configured")

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.close()
            self._client = None


class OpenAIStreamBackend(_OpenAIBackendBase):
    """Native incremental stream from an OpenAI-compatible chat endpoint."""

    shape = UpstreamShape.NATIVE

    async def open_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
            )
        except APIError as exc:
            logger.error("upstream_request_failed", model=self.model, error=str(exc))
            raise UpstreamError("Upstream model request failed")
        async for chunk in stream:
            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            delta = getattr(choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta is not None else None
            if text:
                yield text


class OpenAIBatchBackend(_OpenAIBackendBase):
    """Single complete response, sliced into frames by the relay."""

    shape = UpstreamShape.SINGLE_SHOT

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        client = self._get_client()
        try:
            completion = await client.chat.completions.create(
                model=self.model,
                messages=messages,
            )
        except APIError as exc:
            logger.error("upstream_request_failed", model=self.model, error=str(exc))
            raise UpstreamError("Upstream model request failed")
        choices = getattr(completion, "choices", None) or []
        first_choice = next(iter(choices), None)
        if not first_choice:
            logger.warning("upstream_completion_empty", model=self.model)
            return ""
        return first_choice.message.content or ""


class EventStreamBackend:
    """Passthrough of an upstream ``text/event-stream`` body."""

    shape = UpstreamShape.EVENT_STREAM

    def __init__(
        self,
        url: Optional[str],
        *,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def ensure_configured(self) -> None:
        if not self.url:
            raise ConfigurationError("LLM stream URL is not configured")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self._client

    async def open_event_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[bytes]:
        client = self._get_client()
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload: Dict[str, Any] = {"messages": messages, "stream": True}
        if self.model:
            payload["model"] = self.model
        try:
            async with client.stream("POST", self.url, json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    body = (await response.aread())[:200].decode("utf-8", errors="replace")
                    logger.error(
                        "upstream_stream_rejected", status_code=response.status_code, body=body
                    )
                    raise UpstreamError(f"Upstream returned status {response.status_code}")
                async for chunk in response.aiter_bytes():
                    if chunk:
                        yield chunk
        except httpx.HTTPError as exc:
            logger.error("upstream_stream_failed", error_type=type(exc).__name__, error=str(exc))
            raise UpstreamError("Upstream stream request failed")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def build_backend(settings: Settings) -> ModelBackend:
    provider = settings.llm_provider
    if provider == LLMProvider.EVENT_STREAM:
        return EventStreamBackend(
            settings.llm_stream_url,
            model=settings.llm_model,
            api_key=settings.llm_api_key,
        )
    if provider == LLMProvider.OPENAI_BATCH:
        return OpenAIBatchBackend(
            settings.llm_model, api_key=settings.llm_api_key, base_url=settings.llm_base_url
        )
    return OpenAIStreamBackend(
        settings.llm_model, api_key=settings.llm_api_key, base_url=settings.llm_base_url
    )
