from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Iterable, Iterator, List, Optional

from .errors import FrameDecodeError


DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
MAX_RECORD_BYTES = 1024 * 1024

logger = logging.getLogger("relay.frames")


class FrameKind(str, Enum):
    DATA = "data"
    DONE = "done"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class UpstreamFrame:
    kind: FrameKind
    payload: Any = None
    error: Optional[FrameDecodeError] = None
    raw: str = ""

    @classmethod
    def data(cls, payload: Any, raw: str = "") -> "UpstreamFrame":
        return cls(kind=FrameKind.DATA, payload=payload, raw=raw)

    @classmethod
    def done(cls) -> "UpstreamFrame":
        return cls(kind=FrameKind.DONE, raw=DONE_MARKER)

    @classmethod
    def malformed(cls, error: FrameDecodeError, raw: str = "") -> "UpstreamFrame":
        return cls(kind=FrameKind.MALFORMED, error=error, raw=raw)


class EventKind(str, Enum):
    REASONING = "reasoning"
    CONTENT = "content"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class RelayEvent:
    kind: EventKind
    data: str = ""

    @classmethod
    def reasoning(cls, text: str) -> "RelayEvent":
        return cls(EventKind.REASONING, text)

    @classmethod
    def content(cls, text: str) -> "RelayEvent":
        return cls(EventKind.CONTENT, text)

    @classmethod
    def error(cls, message: str) -> "RelayEvent":
        return cls(EventKind.ERROR, message)

    @classmethod
    def done(cls) -> "RelayEvent":
        return cls(EventKind.DONE)

    @property
    def terminal(self) -> bool:
        return self.kind in {EventKind.ERROR, EventKind.DONE}

    def encode(self) -> bytes:
        """
        Render the event as one Server-Sent Events block.

        ``Done`` has no wire form: the client learns about completion when the
        stream closes.
        """
        if self.kind is EventKind.DONE:
            return b""
        data = json.dumps(self.data, ensure_ascii=False)
        return f"event: {self.kind.value}\ndata: {data}\n\n".encode("utf-8")


class FrameDecoder:
    """
    Incremental decoder for ``data:`` framed upstream streams.

    Chunks may be split anywhere, including inside a multibyte character. The
    trailing unterminated line of every chunk is kept as raw bytes and joined
    with the next chunk, so a record is only parsed once its newline arrived.

    A pending record longer than ``max_record_bytes`` is dropped; the rest of
    that line is skipped and reported as one malformed frame.
    """

    def __init__(self, max_record_bytes: int = MAX_RECORD_BYTES) -> None:
        self.max_record_bytes = max_record_bytes
        self._remainder = b""
        self._overflow = False
        self._finished = False

    def feed(self, chunk: bytes) -> List[UpstreamFrame]:
        if self._finished:
            raise RuntimeError("FrameDecoder cannot be fed after finish().")
        if not chunk:
            return []
        buffer = self._remainder + chunk
        *lines, remainder = buffer.split(b"\n")
        frames: List[UpstreamFrame] = []
        for line in lines:
            if self._overflow:
                self._overflow = False
                error = FrameDecodeError(f"Record exceeds {self.max_record_bytes} bytes")
                frames.append(UpstreamFrame.malformed(error))
                continue
            frame = _decode_line(line)
            if frame is not None:
                frames.append(frame)
        if self._overflow:
            remainder = b""
        elif len(remainder) > self.max_record_bytes:
            logger.warning(
                "Dropping upstream record over %d bytes without a line break.",
                self.max_record_bytes,
            )
            self._overflow = True
            remainder = b""
        self._remainder = remainder
        return frames

    def finish(self) -> List[UpstreamFrame]:
        self._finished = True
        leftover, self._remainder = self._remainder, b""
        if self._overflow:
            self._overflow = False
            logger.warning("Upstream ended inside an oversized record.")
        elif leftover.strip():
            logger.warning(
                "Discarding unterminated upstream record (%d bytes).", len(leftover)
            )
        return []

    @property
    def pending(self) -> int:
        return len(self._remainder)


def _decode_line(raw_line: bytes) -> Optional[UpstreamFrame]:
    try:
        line = raw_line.decode("utf-8").strip()
    except UnicodeDecodeError as exc:
        error = FrameDecodeError(f"Record is not valid UTF-8: {exc}")
        return UpstreamFrame.malformed(error, raw=raw_line.decode("utf-8", "replace"))
    if not line or not line.startswith(DATA_PREFIX):
        return None
    body = line[len(DATA_PREFIX):].strip()
    if body == DONE_MARKER:
        return UpstreamFrame.done()
    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        return UpstreamFrame.malformed(FrameDecodeError(f"Invalid JSON record: {exc}"), raw=line)
    return UpstreamFrame.data(payload, raw=line)


def decode_stream(chunks: Iterable[bytes]) -> Iterator[UpstreamFrame]:
    decoder = FrameDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.finish()


async def adecode_stream(chunks: AsyncIterable[bytes]) -> AsyncIterator[UpstreamFrame]:
    decoder = FrameDecoder()
    async for chunk in chunks:
        for frame in decoder.feed(chunk):
            yield frame
    for frame in decoder.finish():
        yield frame


def classify(payload: Any) -> List[RelayEvent]:
    """
    Turn one decoded payload into relay events.

    Only ``choices[0].delta`` is inspected. A field yields an event when it is
    present and not null, empty strings included; reasoning always comes
    before content. Non-text values are forwarded as their JSON text.
    """
    delta = _first_delta(payload)
    if delta is None:
        return []
    events: List[RelayEvent] = []
    for key, factory in (
        ("reasoning_content", RelayEvent.reasoning),
        ("content", RelayEvent.content),
    ):
        value = delta.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            logger.debug("Serialising non-text %s field of type %s", key, type(value).__name__)
            value = json.dumps(value, ensure_ascii=False)
        events.append(factory(value))
    return events


def _first_delta(payload: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    return delta if isinstance(delta, dict) else None


def _frame_events(frame: UpstreamFrame) -> Optional[List[RelayEvent]]:
    # None marks the end of the stream.
    if frame.kind is FrameKind.DONE:
        logger.debug("Received end marker.")
        return None
    if frame.kind is FrameKind.MALFORMED:
        logger.warning("Skipping malformed upstream record: %s", frame.error)
        return []
    return classify(frame.payload)


def classify_frames(frames: Iterable[UpstreamFrame]) -> Iterator[RelayEvent]:
    """Classify a frame sequence, skipping malformed records and stopping at the end marker."""
    for frame in frames:
        events = _frame_events(frame)
        if events is None:
            return
        yield from events


async def aclassify_frames(frames: AsyncIterable[UpstreamFrame]) -> AsyncIterator[RelayEvent]:
    async for frame in frames:
        events = _frame_events(frame)
        if events is None:
            return
        for event in events:
            yield event
