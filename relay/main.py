from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from functools import partial
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import anyio
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.types import ASGIApp, Message, Receive, Scope, Send
import uvicorn

from .errors import NotFound, RelayError
from .gateway import ConversationGateway, ConversationRef
from .llm import DEFAULT_REASONING_EFFORT, InferenceClient, ReasoningEffort
from .session import RelaySession
from .settings import SettingsManager
from .storage import ConversationStore

DATA_DIR = Path(os.environ.get("RELAY_DATA_DIR", "data"))
LOG_FILE_NAME = "server.log"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

http_logger = logging.getLogger("relay.http")


def _configure_logging(log_file: Path) -> logging.Logger:
    logger = logging.getLogger("relay")
    if logger.handlers:
        return logger
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.INFO)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file)
    return logger


logger = logging.getLogger("relay")

ClientFactory = Callable[[], Any]


@dataclass
class RelayServices:
    settings_manager: SettingsManager
    conversation_store: ConversationStore
    gateway: ConversationGateway
    client_factory: ClientFactory


class EventStreamResponse(StreamingResponse):
    """
    Server-Sent Events response for one relay session.

    The body is pumped next to a listener on ``receive``, whatever ASGI spec
    version the server reports, so a client leaving while the upstream is idle
    still cancels the session. The session is closed once the response is
    over, including when the body iterator was abandoned mid-stream.
    """

    media_type = "text/event-stream"

    def __init__(self, session: RelaySession) -> None:
        super().__init__(session.stream(), headers=SSE_HEADERS)
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as task_group:

                async def pump() -> None:
                    try:
                        await self.stream_response(send)
                    except OSError as exc:
                        logger.info("Client left session %s: %s", self.session.session_id, exc)
                    task_group.cancel_scope.cancel()

                task_group.start_soon(pump)
                await _wait_for_disconnect(receive)
                logger.info("Client left session %s", self.session.session_id)
                task_group.cancel_scope.cancel()
        finally:
            self.session.close()
        if self.background is not None:
            await self.background()


async def _wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


class RequestLogMiddleware:
    """Logs method, path, status and duration once a response has finished."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        start = time.perf_counter()
        status_code = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            http_logger.info(
                "%s %s %d %dms", scope.get("method"), scope.get("path"), status_code, duration_ms
            )


router = APIRouter()


def _services(request: Request) -> RelayServices:
    return request.app.state.services


async def _read_json(request: Request) -> Any:
    body_bytes = await request.body()
    if not body_bytes.strip():
        return None
    try:
        return json.loads(body_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.debug("Ignoring undecodable request body on %s", request.url.path)
        return None


def _persist_exchange(store: ConversationStore, user_id: Optional[str], session: RelaySession) -> None:
    conversation = session.message.conversation
    store.append_message(conversation.conversation_id, "user", session.message.text, user_id=user_id)
    store.append_message(
        conversation.conversation_id,
        "assistant",
        session.content_text,
        metadata={
            "reasoning": session.reasoning_text,
            "model": conversation.model,
            "reasoning_effort": conversation.reasoning_effort.value,
        },
    )
    logger.info(
        "Stored reply for %s (%d chars, %d reasoning chars)",
        conversation.conversation_id,
        len(session.content_text),
        len(session.reasoning_text),
    )


@router.post("/conversation/{guid}/messages")
async def post_message(guid: str, request: Request) -> Response:
    services = _services(request)
    body = await _read_json(request)
    outbound = services.gateway.prepare(guid, body)

    client = services.client_factory()
    session = RelaySession(
        outbound,
        client.open_stream,
        on_complete=partial(
            _persist_exchange, services.conversation_store, request.headers.get("x-user-id")
        ),
    )
    await session.open()
    logger.info("Streaming from inference service started for %s", guid)
    return EventStreamResponse(session)


@router.post("/conversation")
async def create_conversation(request: Request) -> JSONResponse:
    services = _services(request)
    body = await _read_json(request)
    card_id = None
    if isinstance(body, dict):
        card_id = body.get("chatbot_card") or body.get("chatbotCard")
    if not card_id or services.settings_manager.find_card(str(card_id)) is None:
        raise NotFound("Chatbot card not found")
    record = services.conversation_store.create_conversation(
        chatbot_card=str(card_id),
        created_by=request.headers.get("x-user-id"),
    )
    logger.info("Conversation card created: %s", record.guid)
    return JSONResponse(record.to_dict(), status_code=status.HTTP_201_CREATED)


@router.get("/conversation/card/{card_id}")
async def list_conversations(card_id: str, request: Request) -> JSONResponse:
    services = _services(request)
    records = services.conversation_store.list_conversations(
        chatbot_card=card_id,
        created_by=request.headers.get("x-user-id"),
    )
    logger.info("Retrieved %d conversation cards for chatbot card %s", len(records), card_id)
    return JSONResponse([record.to_dict() for record in records])


@router.get("/conversation/{guid}")
async def get_conversation(guid: str, request: Request) -> JSONResponse:
    store = _services(request).conversation_store
    record = store.get_conversation(guid)
    if record is None:
        raise NotFound("Conversation card not found")
    return JSONResponse({"conversation": record.to_dict(), "messages": store.load_messages(guid)})


@router.delete("/conversation/{guid}")
async def delete_conversation(guid: str, request: Request) -> JSONResponse:
    record = _services(request).conversation_store.mark_deleted(guid)
    if record is None:
        raise NotFound("Conversation card not found")
    logger.info("Soft deleted conversation card: %s", guid)
    return JSONResponse(
        {"message": "Conversation card deleted successfully", "card": record.to_dict()}
    )


@router.get("/health", response_class=PlainTextResponse)
async def health() -> PlainTextResponse:
    return PlainTextResponse("RUNNING")


@router.get("/health/store", response_class=PlainTextResponse)
async def store_health(request: Request) -> PlainTextResponse:
    if _services(request).conversation_store.writable():
        return PlainTextResponse("RUNNING")
    return PlainTextResponse(
        "Conversation store unavailable", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


@router.get("/health/inference", response_class=JSONResponse)
async def inference_health(request: Request) -> JSONResponse:
    client = _services(request).client_factory()
    ok = await run_in_threadpool(client.check_health)
    status_label = "ok" if ok else "warn"
    label = "LLM Connected" if ok else "LLM Offline"
    return JSONResponse({"status": status_label, "label": label})


async def _relay_error_handler(request: Request, exc: Exception) -> JSONResponse:
    status_code = getattr(exc, "status_code", status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    else:
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse({"message": str(exc)}, status_code=status_code)


async def _internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"message": "Internal error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
    )


def _lookup_conversation(
    store: ConversationStore, settings_manager: SettingsManager, guid: str
) -> Optional[ConversationRef]:
    record = store.get_conversation(guid)
    if record is None or not record.active:
        return None
    card = settings_manager.find_card(record.chatbot_card)
    if card is None:
        logger.warning("Conversation %s references unknown chatbot card %s", guid, record.chatbot_card)
        return None
    try:
        effort = ReasoningEffort.parse(card.get("reasoning_effort", DEFAULT_REASONING_EFFORT))
    except ValueError as exc:
        logger.warning("Chatbot card %s: %s Using %s.", record.chatbot_card, exc, DEFAULT_REASONING_EFFORT.value)
        effort = DEFAULT_REASONING_EFFORT
    return ConversationRef(
        conversation_id=guid,
        model=card["model"],
        reasoning_effort=effort,
    )


def create_app(
    data_dir: Path = DATA_DIR,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    data_dir.mkdir(parents=True, exist_ok=True)
    _configure_logging(data_dir / LOG_FILE_NAME)

    settings_manager = SettingsManager(data_dir / "settings.json")
    conversation_store = ConversationStore(data_dir)
    gateway = ConversationGateway(
        partial(_lookup_conversation, conversation_store, settings_manager)
    )
    if client_factory is None:

        def client_factory() -> InferenceClient:
            # Read per request so edits to settings.json apply without a restart.
            return InferenceClient.from_settings(settings_manager.settings["inference"])

    app = FastAPI(title="Conversation Relay")
    app.state.services = RelayServices(
        settings_manager=settings_manager,
        conversation_store=conversation_store,
        gateway=gateway,
        client_factory=client_factory,
    )
    app.add_middleware(RequestLogMiddleware)
    app.add_exception_handler(RelayError, _relay_error_handler)
    app.add_exception_handler(Exception, _internal_error_handler)
    app.include_router(router)
    logger.info("Relay application created with data directory %s", data_dir)
    return app


app = create_app()


def run() -> None:
    server: Dict[str, Any] = app.state.services.settings_manager.settings["server"]
    logger.info("Relay server running at http://%s:%s", server["host"], server["port"])
    uvicorn.run(app, host=server["host"], port=int(server["port"]), log_level="info")


# Convenience include for uvicorn.
__all__ = ["app", "create_app", "run"]
