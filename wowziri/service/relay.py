from __future__ import annotations

import asyncio
import codecs
import json
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from wowziri.logging import get_logger
from wowziri.service.model_backend import ModelBackend, UpstreamShape, to_upstream_messages

logger = get_logger(__name__)

CONTENT = "content"
DONE = "done"

DEFAULT_CHUNK_SIZE = 80

_DONE_LINE = 'd:{"finishReason":"stop"}\n'


@dataclass(frozen=True)
class StreamFrame:
    kind: str
    text: str = ""


def encode_frame(frame: StreamFrame) -> str:
    """Render a frame in the line protocol the browser client parses."""
    if frame.kind == DONE:
        return _DONE_LINE
    return f"0:{json.dumps(frame.text, ensure_ascii=False)}\n"


def _text_from_parts(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        pieces = []
        for part in value:
            if isinstance(part, str):
                pieces.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                pieces.append(part["text"])
        return "".join(pieces) if pieces else None
    return None


def extract_event_text(payload: Any) -> Optional[str]:
    """Pull the text delta out of one decoded event payload."""

    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        first = choices[0]
        delta = first.get("delta")
        if isinstance(delta, dict):
            text = _text_from_parts(delta.get("content"))
            if text is not None:
                return text
        message = first.get("message")
        if isinstance(message, dict):
            text = _text_from_parts(message.get("content"))
            if text is not None:
                return text
    delta = payload.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str):
        return delta["text"]
    message = payload.get("message")
    if isinstance(message, dict):
        text = _text_from_parts(message.get("content"))
        if text is not None:
            return text
    for key in ("content", "text"):
        if isinstance(payload.get(key), str):
            return payload[key]
    return None


class EventStreamParser:
    """Incremental ``text/event-stream`` decoder.

    Bytes may arrive split anywhere, including inside a multi-byte
    character or between the two newlines that end an event.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        events = self._buffer.split("\n\n")
        self._buffer = events.pop()
        return [text for text in (self._parse_event(e) for e in events) if text]

    def flush(self) -> List[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer.replace("\r\n", "\n").strip("\n"), ""
        if not remaining:
            return []
        text = self._parse_event(remaining)
        return [text] if text else []

    @staticmethod
    def _parse_event(raw: str) -> Optional[str]:
        data_lines = []
        for line in raw.split("\n"):
            if not line or line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            if field != "data" or not sep:
                continue
            data_lines.append(value[1:] if value.startswith(" ") else value)
        if not data_lines:
            return None
        data = "\n".join(data_lines)
        if data.strip() == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            return data
        return extract_event_text(payload)


class RelayStream:
    """One relayed response: content frames, then a single done marker.

    Finite and not restartable. If the upstream fails mid-stream the failure
    is logged and iteration stops without the done marker, so the client can
    tell a truncated answer from a complete one.
    """

    def __init__(self, source: AsyncIterator[str]) -> None:
        self._source = source
        self._pending: Optional[str] = None
        self._exhausted = False
        self._finished = False
        self._closed = False

    async def prime(self) -> None:
        """Pull the first unit; upstream errors raised here reach the caller."""
        try:
            self._pending = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True

    def __aiter__(self) -> "RelayStream":
        return self

    async def __anext__(self) -> StreamFrame:
        if self._finished:
            raise StopAsyncIteration
        if self._pending is not None:
            text, self._pending = self._pending, None
            return StreamFrame(CONTENT, text)
        if not self._exhausted:
            try:
                text = await self._source.__anext__()
            except StopAsyncIteration:
                self._exhausted = True
            except Exception as exc:
                logger.error(
                    "relay_stream_failed", error_type=type(exc).__name__, error=str(exc)
                )
                await self.aclose()
                raise StopAsyncIteration
            else:
                return StreamFrame(CONTENT, text)
        self._finished = True
        return StreamFrame(DONE)

    async def aclose(self) -> None:
        """Release the upstream; safe to call more than once."""
        self._finished = True
        self._pending = None
        if self._closed:
            return
        self._closed = True
        closer = getattr(self._source, "aclose", None)
        if closer is not None:
            await closer()


class StreamRelay:
    """Normalizes every upstream shape into one frame sequence."""

    def __init__(self, backend: ModelBackend, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.backend = backend
        self.chunk_size = chunk_size

    def prepare(self) -> None:
        self.backend.ensure_configured()

    async def open(self, messages: Sequence[Dict[str, Any]]) -> RelayStream:
        self.prepare()
        upstream = to_upstream_messages(messages)
        stream = RelayStream(self._texts(upstream))
        await stream.prime()
        logger.info("relay_stream_opened", shape=self.backend.shape.value, turns=len(upstream))
        return stream

    async def _texts(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        shape = self.backend.shape
        if shape == UpstreamShape.NATIVE:
            source = self._native(messages)
        elif shape == UpstreamShape.EVENT_STREAM:
            source = self._event_stream(messages)
        else:
            source = self._single_shot(messages)
        async with aclosing(source) as texts:
            async for text in texts:
                if text:
                    yield text

    async def _native(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        async with aclosing(self.backend.open_stream(messages)) as deltas:
            async for delta in deltas:
                yield delta

    async def _event_stream(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        parser = EventStreamParser()
        async with aclosing(self.backend.open_event_stream(messages)) as chunks:
            async for chunk in chunks:
                for text in parser.feed(chunk):
                    yield text
        for text in parser.flush():
            yield text

    async def _single_shot(self, messages: List[Dict[str, str]]) -> AsyncIterator[str]:
        text = await self.backend.complete(messages)
        for start in range(0, len(text), self.chunk_size):
            if start:
                await asyncio.sleep(0)
            yield text[start : start + self.chunk_size]
