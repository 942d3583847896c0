"""FastAPI application: detector message relay plus chat/SSE relay."""
from __future__ import annotations

import logging
import secrets
import time
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Type, TypeVar

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel, Field
from pydantic import ValidationError as SchemaError
from starlette.background import BackgroundTask
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message as ASGIMessage, Receive, Scope, Send

from .config import Settings, load_settings
from .errors import AuthError, RelayError, UpstreamError, ValidationError
from .gateway import CompletionGateway
from .memory import ConversationMemory, ConversationTurn, coerce_turns
from .queue import Clock, Message, MessageQueue
from .sse import DONE_FRAME, HEARTBEAT_FRAME, delta_frame, with_heartbeat

logger = logging.getLogger(__name__)

ALLOW_METHODS = "GET,POST,OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization, x-api-key"

ModelT = TypeVar("ModelT", bound=BaseModel)


# -----------------------------
# Pydantic request models
# -----------------------------
class PushRequest(BaseModel):
    text: Optional[str] = None
    key: Optional[str] = None


class AckRequest(BaseModel):
    id: Optional[str] = None
    clientId: Optional[str] = None
    key: Optional[str] = None


class TurnModel(BaseModel):
    user: str = ""
    assistant: str = ""


class ChatRequest(BaseModel):
    text: Optional[str] = None
    history: Optional[List[TurnModel]] = Field(default=None, description="Prior turns, oldest first.")


# -----------------------------
# CORS
# -----------------------------
class PermissiveCORSMiddleware:
    """Stamp CORS headers on every response and answer any OPTIONS itself.

    Starlette's ``CORSMiddleware`` only reacts to requests carrying an
    ``Origin`` header; embedded HTTP clients often send none.
    """

    def __init__(self, app: ASGIApp, allow_origins: Optional[List[str]] = None) -> None:
        self.app = app
        self.allow_origins = list(allow_origins or ["*"])

    def _origin_for(self, scope: Scope) -> Optional[str]:
        if "*" in self.allow_origins:
            return "*"
        for name, value in scope.get("headers", []):
            if name == b"origin":
                origin = value.decode("latin-1")
                return origin if origin in self.allow_origins else None
        return None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        origin = self._origin_for(scope)

        def stamp(headers: MutableHeaders) -> None:
            if origin is not None:
                headers["Access-Control-Allow-Origin"] = origin
            headers["Access-Control-Allow-Methods"] = ALLOW_METHODS
            headers["Access-Control-Allow-Headers"] = ALLOW_HEADERS

        if scope["method"] == "OPTIONS":
            response = Response(status_code=200)
            stamp(response.headers)
            await response(scope, receive, send)
            return

        async def send_wrapper(message: ASGIMessage) -> None:
            if message["type"] == "http.response.start":
                stamp(MutableHeaders(scope=message))
            await send(message)

        await self.app(scope, receive, send_wrapper)


# -----------------------------
# Helpers
# -----------------------------
def _require_key(expected: str, header_key: Optional[str], fallback_key: Any = None) -> None:
    # The header wins whenever it is sent; the body or query key is only a fallback.
    key = header_key or fallback_key
    if isinstance(key, str) and key and secrets.compare_digest(key.encode("utf-8"), expected.encode("utf-8")):
        return
    raise AuthError("missing or wrong api key")


async def _json_body(request: Request) -> Any:
    """Raw JSON body, or ``None`` when it is missing or not JSON."""
    try:
        return await request.json()
    except ValueError:
        return None


def _body_key(body: Any) -> Any:
    return body.get("key") if isinstance(body, dict) else None


def _parse(model: Type[ModelT], body: Any) -> ModelT:
    if not isinstance(body, dict):
        raise ValidationError("body must be a JSON object", code="badargs")
    try:
        return model.model_validate(body)
    except SchemaError as e:
        raise ValidationError(str(e), code="badargs") from e


def _message_view(msg: Message) -> Dict[str, Any]:
    return {"id": msg.id, "text": msg.text, "ts": msg.created_at, "claimExpiry": msg.claim_expiry}


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    queue: Optional[MessageQueue] = None,
    gateway: Optional[CompletionGateway] = None,
    memory: Optional[ConversationMemory] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    cfg = settings if settings is not None else load_settings(config_path)

    # Services
    if queue is None:
        queue = MessageQueue(clock=clock or time.time, lease_seconds=cfg.detector.lease_seconds)
    if gateway is None:
        gateway = CompletionGateway(
            cfg.upstream,
            system_prompt=cfg.chat.system_prompt,
            include_history=cfg.chat.include_history,
        )
    if memory is None:
        memory = ConversationMemory(capacity=max(1, cfg.chat.history_capacity))
    if not cfg.upstream.api_key:
        logger.warning("no upstream api key configured; /chat and /chat-sse will fail upstream")

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await gateway.aclose()

    app = FastAPI(title="AR Assistant Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(PermissiveCORSMiddleware, allow_origins=cfg.server.cors_origins)
    app.state.settings = cfg
    app.state.queue = queue
    app.state.gateway = gateway
    app.state.memory = memory

    @app.exception_handler(RelayError)
    async def relay_error_handler(_request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def bad_request_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"ok": False, "err": "badargs"}, status_code=400)

    # ----------------- detector relay -----------------
    @app.post("/push")
    async def push(request: Request) -> Dict[str, Any]:
        body = await _json_body(request)
        _require_key(cfg.detector.api_key, request.headers.get("x-api-key"), _body_key(body))
        req = _parse(PushRequest, body)
        result = queue.push(req.text or "")
        out: Dict[str, Any] = {"ok": True, "id": result.id}
        if result.duplicate:
            out["dup"] = True
        return out

    @app.get("/latest")
    async def latest(
        request: Request,
        clientId: str = Query(default="unknown"),
        key: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        if cfg.detector.require_auth_on_latest:
            _require_key(cfg.detector.api_key, request.headers.get("x-api-key"), key)
        msg = queue.claim_next(clientId or "unknown")
        if msg is None:
            return {"id": None, "text": "", "ts": None}
        return _message_view(msg)

    @app.post("/ack")
    async def ack(request: Request) -> Dict[str, Any]:
        body = await _json_body(request)
        _require_key(cfg.detector.api_key, request.headers.get("x-api-key"), _body_key(body))
        req = _parse(AckRequest, body)
        if not req.id or not req.clientId:
            raise ValidationError("id and clientId are required", code="badargs")
        queue.acknowledge(req.id, req.clientId)
        return {"ok": True}

    @app.post("/renew")
    async def renew(request: Request) -> Dict[str, Any]:
        body = await _json_body(request)
        _require_key(cfg.detector.api_key, request.headers.get("x-api-key"), _body_key(body))
        req = _parse(AckRequest, body)
        if not req.id or not req.clientId:
            raise ValidationError("id and clientId are required", code="badargs")
        msg = queue.renew(req.id, req.clientId)
        return {"ok": True, "id": msg.id, "claimExpiry": msg.claim_expiry}

    @app.get("/_debug/list")
    async def debug_list() -> JSONResponse:
        return JSONResponse(queue.snapshot())

    # ----------------- chat relay -----------------
    @app.get("/health", response_class=PlainTextResponse)
    def health() -> str:
        return "OK"

    def _history_for(req: ChatRequest) -> List[ConversationTurn]:
        if req.history:
            return coerce_turns([t.model_dump() for t in req.history], cfg.chat.history_capacity)
        if cfg.chat.use_server_history:
            return memory.snapshot()
        return []

    @app.post("/chat")
    async def chat(req: ChatRequest) -> Response:
        text = (req.text or "").strip()
        if not text:
            return PlainTextResponse("No text", status_code=400)
        try:
            reply = await gateway.complete(text, _history_for(req))
        except UpstreamError as e:
            return PlainTextResponse(e.body, status_code=e.status_code)
        except Exception as e:
            logger.exception("chat failed")
            return PlainTextResponse(f"Server error: {e}", status_code=500)

        memory.add(text, reply)
        return PlainTextResponse(reply, media_type="text/plain; charset=utf-8")

    @app.get("/chat-sse")
    async def chat_sse(q: str = Query(default="")) -> Response:
        q = (q or "").strip()
        if not q:
            return PlainTextResponse("Missing q", status_code=400)

        history = memory.snapshot() if cfg.chat.use_server_history else None
        stack = AsyncExitStack()
        try:
            deltas = await stack.enter_async_context(gateway.open_stream(q, history))
        except UpstreamError as e:
            await stack.aclose()
            return PlainTextResponse(f"Upstream error: {e.body}", status_code=502)

        async def event_stream() -> AsyncIterator[str]:
            parts: List[str] = []
            try:
                try:
                    async for delta in with_heartbeat(deltas, cfg.chat.heartbeat_seconds):
                        if delta is None:
                            yield HEARTBEAT_FRAME
                            continue
                        parts.append(delta)
                        yield delta_frame(delta)
                except httpx.HTTPError as e:
                    logger.warning("upstream stream broke off after %d deltas: %s", len(parts), e)
                else:
                    memory.add(q, "".join(parts))
                yield DONE_FRAME
            finally:
                await stack.aclose()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream; charset=utf-8",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            background=BackgroundTask(stack.aclose),
        )

    return app
