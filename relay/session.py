from __future__ import annotations

from enum import Enum
import logging
import time
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Protocol
from uuid import uuid4

from anyio import to_thread
from starlette.concurrency import run_in_threadpool

from .errors import UpstreamTransportError
from .frames import EventKind, RelayEvent, aclassify_frames, adecode_stream
from .gateway import OutboundMessage


logger = logging.getLogger("relay.session")

UPSTREAM_ERROR_MESSAGE = "Error streaming response"
INTERNAL_ERROR_MESSAGE = "Internal error"

_EXHAUSTED = object()


class SessionState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = {SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED}

_TRANSITIONS = {
    SessionState.PENDING: {SessionState.STREAMING, SessionState.FAILED, SessionState.CANCELLED},
    SessionState.STREAMING: TERMINAL_STATES,
}


class Upstream(Protocol):
    def iter_chunks(self) -> Iterator[bytes]:
        ...

    def close(self) -> None:
        ...


StreamOpener = Callable[[Dict[str, Any]], Upstream]


class RelaySession:
    """
    Bridges one client event stream to one upstream generation.

    ``open`` issues the upstream call before anything is written to the client,
    so a refused call can still be answered with a plain error status. ``stream``
    then yields encoded events one at a time; the next upstream chunk is only
    read after the writer has taken every event of the previous one. Whatever
    ends the stream, ``close`` releases the upstream exactly once.
    """

    def __init__(
        self,
        message: OutboundMessage,
        open_stream: StreamOpener,
        on_complete: Optional[Callable[["RelaySession"], None]] = None,
    ) -> None:
        self.session_id = uuid4().hex[:12]
        self.message = message
        self.state = SessionState.PENDING
        self.started_at = time.monotonic()
        self.events_sent = 0
        self.reasoning_parts: List[str] = []
        self.content_parts: List[str] = []
        self._open_stream = open_stream
        self._on_complete = on_complete
        self._upstream: Optional[Upstream] = None
        self._closed = False

    @property
    def conversation_id(self) -> str:
        return self.message.conversation.conversation_id

    @property
    def duration(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def reasoning_text(self) -> str:
        return "".join(self.reasoning_parts)

    @property
    def content_text(self) -> str:
        return "".join(self.content_parts)

    @property
    def closed(self) -> bool:
        return self._closed

    async def open(self) -> None:
        if self.state is not SessionState.PENDING:
            raise RuntimeError(f"Session {self.session_id} already {self.state.value}.")
        payload = self.message.to_payload()
        try:
            self._upstream = await run_in_threadpool(self._open_stream, payload)
        except BaseException:
            self._transition(SessionState.FAILED)
            self.close()
            raise
        logger.info(
            "Session %s opened upstream for %s (model=%s)",
            self.session_id,
            self.conversation_id,
            payload["model"],
        )

    async def stream(self) -> AsyncIterator[bytes]:
        if self._upstream is None or self.state is not SessionState.PENDING:
            raise RuntimeError("open() must succeed before stream().")
        self._transition(SessionState.STREAMING)
        terminal: Optional[RelayEvent] = None
        try:
            async for event in self._events():
                self._record(event)
                yield event.encode()
                self.events_sent += 1
            self._transition(SessionState.COMPLETED)
        except UpstreamTransportError as exc:
            logger.error("Session %s lost the upstream stream: %s", self.session_id, exc)
            self._transition(SessionState.FAILED)
            terminal = RelayEvent.error(UPSTREAM_ERROR_MESSAGE)
        except Exception:
            logger.exception("Session %s failed while streaming.", self.session_id)
            self._transition(SessionState.FAILED)
            terminal = RelayEvent.error(INTERNAL_ERROR_MESSAGE)
        finally:
            self.close()

        if terminal is not None:
            yield terminal.encode()
            return
        self._notify_complete()

    def close(self) -> None:
        """Release the upstream; a session still streaming counts as cancelled."""
        if self._closed:
            return
        self._closed = True
        if self.state not in TERMINAL_STATES:
            self._transition(SessionState.CANCELLED)
        upstream, self._upstream = self._upstream, None
        if upstream is not None:
            upstream.close()
        logger.info(
            "Session %s %s after %.2fs (%d events)",
            self.session_id,
            self.state.value,
            self.duration,
            self.events_sent,
        )

    async def _chunks(self) -> AsyncIterator[bytes]:
        assert self._upstream is not None
        chunks = self._upstream.iter_chunks()
        while True:
            chunk = await _next_chunk(chunks)
            if chunk is _EXHAUSTED:
                logger.debug("Session %s upstream reached end of body.", self.session_id)
                return
            yield chunk

    def _events(self) -> AsyncIterator[RelayEvent]:
        return aclassify_frames(adecode_stream(self._chunks()))

    def _record(self, event: RelayEvent) -> None:
        if event.kind is EventKind.REASONING:
            logger.debug("Session %s reasoning: %r", self.session_id, event.data)
            self.reasoning_parts.append(event.data)
        elif event.kind is EventKind.CONTENT:
            logger.debug("Session %s content: %r", self.session_id, event.data)
            self.content_parts.append(event.data)

    def _transition(self, state: SessionState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if state not in allowed:
            raise RuntimeError(
                f"Session {self.session_id} cannot move from {self.state.value} to {state.value}."
            )
        self.state = state

    def _notify_complete(self) -> None:
        if self._on_complete is None:
            return
        try:
            self._on_complete(self)
        except Exception:
            logger.exception("Session %s completion hook failed.", self.session_id)


async def _next_chunk(chunks: Iterator[bytes]) -> Any:
    # Abandoning the worker thread lets a disconnect cancel a blocked read;
    # close() then tears the connection down under it.
    return await to_thread.run_sync(next, chunks, _EXHAUSTED, abandon_on_cancel=True)
