import asyncio

import pytest

from relay.errors import UpstreamTransportError
from relay.gateway import ConversationRef, OutboundMessage
from relay.llm import ReasoningEffort
from relay.session import (
    INTERNAL_ERROR_MESSAGE,
    UPSTREAM_ERROR_MESSAGE,
    RelaySession,
    SessionState,
)

ERROR_BLOCK = f'event: error\ndata: "{UPSTREAM_ERROR_MESSAGE}"\n\n'.encode()

SPLIT_STREAM = (
    b": keepalive\n\n"
    + 'data: {"choices":[{"delta":{"reasoning_content":"caf\u00e9 \u2615"}}]}\n\n'.encode("utf-8")
    + b"data: {broken\n"
    + b'data: {"choices":[{"delta":{"content":"Hello"}}]}\r\n\r\n'
    + b'data: {"choices":[{"delta":{"content":" world"}}]}\n\n'
    + b"data: [DONE]\n\n"
)
SPLIT_STREAM_EVENTS = [
    'event: reasoning\ndata: "caf\u00e9 \u2615"\n\n'.encode("utf-8"),
    b'event: content\ndata: "Hello"\n\n',
    b'event: content\ndata: " world"\n\n',
]


def _message() -> OutboundMessage:
    conversation = ConversationRef("c-1", "gpt-oss-20b", ReasoningEffort.HIGH)
    return OutboundMessage(text="Why is the sky blue?", conversation=conversation)


def _drain(session: RelaySession) -> list:
    async def run():
        await session.open()
        return [chunk async for chunk in session.stream()]

    return asyncio.run(run())


def test_completed_stream_yields_events_in_order(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream(
        [
            make_frame({"reasoning_content": "Rayleigh"}),
            make_frame({"reasoning_content": " scattering", "content": "Because"}),
            make_frame({"content": " of scattering."}) + b"data: [DONE]\n\n",
        ]
    )
    client = make_client(upstream)
    completed = []
    session = RelaySession(_message(), client.open_stream, on_complete=completed.append)

    chunks = _drain(session)

    assert chunks == [
        b'event: reasoning\ndata: "Rayleigh"\n\n',
        b'event: reasoning\ndata: " scattering"\n\n',
        b'event: content\ndata: "Because"\n\n',
        b'event: content\ndata: " of scattering."\n\n',
    ]
    assert session.state is SessionState.COMPLETED
    assert upstream.close_calls == 1
    assert completed == [session]
    assert session.reasoning_text == "Rayleigh scattering"
    assert session.content_text == "Because of scattering."
    assert client.payloads == [
        {
            "model": "gpt-oss-20b",
            "messages": [{"role": "user", "content": "Why is the sky blue?"}],
            "reasoning_effort": "high",
        }
    ]


def test_done_marker_stops_reading_upstream(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream(
        [
            make_frame({"content": "a"}) + b"data: [DONE]\n\n",
            make_frame({"content": "never"}),
        ]
    )
    session = RelaySession(_message(), make_client(upstream).open_stream)

    chunks = _drain(session)

    assert chunks == [b'event: content\ndata: "a"\n\n']
    assert upstream.pulled == 1
    assert session.state is SessionState.COMPLETED
    assert upstream.close_calls == 1


def test_end_of_body_without_marker_completes(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream([make_frame({"content": "a"})])
    session = RelaySession(_message(), make_client(upstream).open_stream)

    assert _drain(session) == [b'event: content\ndata: "a"\n\n']
    assert session.state is SessionState.COMPLETED


def test_transport_error_after_events_emits_single_error(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream(
        [make_frame({"content": "one"}), make_frame({"content": "two"})],
        error=UpstreamTransportError("connection reset"),
    )
    completed = []
    session = RelaySession(_message(), make_client(upstream).open_stream, on_complete=completed.append)

    chunks = _drain(session)

    assert chunks == [
        b'event: content\ndata: "one"\n\n',
        b'event: content\ndata: "two"\n\n',
        ERROR_BLOCK,
    ]
    assert session.events_sent == 2
    assert session.state is SessionState.FAILED
    assert upstream.close_calls == 1
    assert completed == []


def test_unexpected_error_reports_internal_error(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream([make_frame({"content": "one"})], error=ValueError("boom"))
    session = RelaySession(_message(), make_client(upstream).open_stream)

    chunks = _drain(session)

    assert chunks[-1] == f'event: error\ndata: "{INTERNAL_ERROR_MESSAGE}"\n\n'.encode()
    assert len(chunks) == 2
    assert session.state is SessionState.FAILED
    assert upstream.close_calls == 1


def test_malformed_record_is_skipped(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream(
        [make_frame({"content": "a"}), b"data: {oops\n\n", make_frame({"content": "b"})]
    )
    session = RelaySession(_message(), make_client(upstream).open_stream)

    assert _drain(session) == [
        b'event: content\ndata: "a"\n\n',
        b'event: content\ndata: "b"\n\n',
    ]
    assert session.state is SessionState.COMPLETED


def test_open_failure_raises_before_streaming(make_client) -> None:
    client = make_client(error=UpstreamTransportError("refused"))
    session = RelaySession(_message(), client.open_stream)

    with pytest.raises(UpstreamTransportError):
        asyncio.run(session.open())

    assert session.state is SessionState.FAILED
    assert session.closed


def test_stream_requires_open(make_upstream, make_client) -> None:
    session = RelaySession(_message(), make_client(make_upstream([])).open_stream)

    async def run():
        return [chunk async for chunk in session.stream()]

    with pytest.raises(RuntimeError):
        asyncio.run(run())


def test_next_chunk_waits_for_writer(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream(
        [make_frame({"content": "a"}), make_frame({"content": "b"}), make_frame({"content": "c"})]
    )
    session = RelaySession(_message(), make_client(upstream).open_stream)
    pulled_at_each_event = []

    async def run():
        await session.open()
        async for _ in session.stream():
            pulled_at_each_event.append(upstream.pulled)

    asyncio.run(run())

    assert pulled_at_each_event == [1, 2, 3]


def test_client_disconnect_cancels_session(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream([make_frame({"content": "a"}), make_frame({"content": "b"})])
    completed = []
    session = RelaySession(_message(), make_client(upstream).open_stream, on_complete=completed.append)

    async def run():
        await session.open()
        stream = session.stream()
        first = await stream.__anext__()
        await stream.aclose()
        return first

    first = asyncio.run(run())
    session.close()

    assert first == b'event: content\ndata: "a"\n\n'
    assert session.state is SessionState.CANCELLED
    assert upstream.close_calls == 1
    assert upstream.pulled == 1
    assert completed == []


def test_disconnect_while_upstream_is_idle(make_upstream, make_client, make_frame) -> None:
    upstream = make_upstream([make_frame({"content": "a"})], block_after=True)
    session = RelaySession(_message(), make_client(upstream).open_stream)

    async def run():
        await session.open()
        received = []

        async def consume():
            async for chunk in session.stream():
                received.append(chunk)

        task = asyncio.create_task(consume())
        while not received:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return received

    received = asyncio.run(run())

    assert received == [b'event: content\ndata: "a"\n\n']
    assert session.state is SessionState.CANCELLED
    assert upstream.close_calls == 1
    assert upstream.released.is_set()


def test_completion_hook_failure_does_not_break_stream(make_upstream, make_client, make_frame) -> None:
    def explode(_session):
        raise OSError("disk full")

    upstream = make_upstream([make_frame({"content": "a"})])
    session = RelaySession(_message(), make_client(upstream).open_stream, on_complete=explode)

    assert _drain(session) == [b'event: content\ndata: "a"\n\n']
    assert session.state is SessionState.COMPLETED


def test_every_split_point_relays_the_same_events(make_upstream, make_client) -> None:
    for offset in range(len(SPLIT_STREAM) + 1):
        upstream = make_upstream([SPLIT_STREAM[:offset], SPLIT_STREAM[offset:]])
        session = RelaySession(_message(), make_client(upstream).open_stream)

        assert _drain(session) == SPLIT_STREAM_EVENTS, offset
        assert session.state is SessionState.COMPLETED


def test_byte_by_byte_upstream_relays_the_same_events(make_upstream, make_client) -> None:
    chunks = [SPLIT_STREAM[index : index + 1] for index in range(len(SPLIT_STREAM))]
    session = RelaySession(_message(), make_client(make_upstream(chunks)).open_stream)

    assert _drain(session) == SPLIT_STREAM_EVENTS
    assert session.content_text == "Hello world"
