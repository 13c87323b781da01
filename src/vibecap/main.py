import asyncio
import json
import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .exceptions import (
    InvalidStateError,
    RateLimitError,
    SessionBusyError,
    StoreUnavailableError,
    TransportError,
)
from .interview import InterviewService, build_interview_service
from .models import ActionKind
from .services.records import get_record_store
from .services.redis import RedisCrudService, get_redis_crud_service
from .services.session_store import get_session_store
from .settings import get_settings
from .transport.poller import build_poller
from .transport.telegram import (
    PollRegistry,
    get_telegram_transport,
    inbound_from_update,
    parse_update,
)


def setup_server_logging() -> logging.Logger:
    """Configure the package logger and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    package_logger = logging.getLogger("vibecap")
    logger = logging.getLogger("vibecap.server")
    if package_logger.handlers:
        return logger

    package_logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    package_logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    package_logger.addHandler(fh)

    return logger


LOGGER = setup_server_logging()
settings = get_settings()


class WebSocketTransport:
    """Delivers outbound interview messages over an open chat WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send(self, session_id: str, text: str) -> None:
        try:
            await self._ws.send_json({"type": "message", "session_id": session_id, "text": text})
        except (RuntimeError, OSError, WebSocketDisconnect) as e:
            raise TransportError(f"WebSocket send failed: {e}") from e


async def _connect_redis() -> RedisCrudService | None:
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        LOGGER.warning("Redis unavailable, keeping sessions in memory: %s", e)
        return None
    return redis_crud


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire stores, transport and the interview service; start polling if enabled."""
    redis_crud = await _connect_redis()
    telegram = get_telegram_transport()
    store = get_session_store(redis_crud)
    records = get_record_store(redis_crud)

    app.state.redis = redis_crud
    app.state.telegram = telegram
    app.state.records = records
    app.state.polls = PollRegistry()
    app.state.service = build_interview_service(store=store, records=records, transport=telegram)
    LOGGER.info(
        "Interview service ready (redis=%s, telegram=%s)",
        redis_crud is not None,
        telegram is not None,
    )

    poller = None
    poll_task = None
    if settings.telegram_polling and telegram is not None:
        poller = build_poller(telegram, app.state.service, app.state.polls)
        poll_task = asyncio.create_task(poller.run())

    yield

    LOGGER.info("Shutting down...")
    if poller is not None:
        poller.stop()
        await poll_task
    if telegram is not None:
        await telegram.aclose()
    if redis_crud is not None:
        await redis_crud.close()


app = FastAPI(
    title="VibeCap Venture Analyst",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)


def _service(request_or_ws: Any) -> InterviewService:
    return request_or_ws.app.state.service


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}


@app.post("/webhook/telegram")
async def telegram_webhook(request: Request) -> JSONResponse:
    """Telegram webhook: one update per call.

    Non-2xx responses make Telegram redeliver the update; that is only done
    when delivery failed or the session store was unavailable, in which case
    the session was left unchanged.
    """
    telegram = request.app.state.telegram
    if telegram is None:
        raise HTTPException(status_code=503, detail="Telegram is not configured")

    try:
        raw = await request.json()
    except json.JSONDecodeError:
        LOGGER.warning("Webhook body is not JSON")
        return JSONResponse({"ok": True, "ignored": True})

    update = parse_update(raw) if isinstance(raw, dict) else None
    inbound = inbound_from_update(update, request.app.state.polls) if update is not None else None
    if inbound is None:
        return JSONResponse({"ok": True, "ignored": True})

    try:
        outbound = await _service(request).handle_message(inbound.session_id, inbound.payload)
    except RateLimitError as e:
        headers = {"Retry-After": str(int(e.retry_after))} if e.retry_after else None
        return JSONResponse({"ok": False, "error": "rate_limited"}, status_code=503, headers=headers)
    except StoreUnavailableError as e:
        LOGGER.warning("Webhook update for %s not processed: %s", inbound.session_id, e)
        return JSONResponse({"ok": False, "error": "store_unavailable"}, status_code=503)
    except TransportError as e:
        LOGGER.error("Webhook reply to %s failed: %s", inbound.session_id, e)
        return JSONResponse({"ok": False, "error": "delivery_failed"}, status_code=502)

    return JSONResponse({"ok": True, "dropped": outbound is None})


@app.post("/sessions/{session_id}/close")
async def close_session(session_id: str, request: Request) -> dict[str, Any]:
    """Close a session now (operator request) and deliver the closing message.

    409 while the session is processing another message, 422 when its stored
    state is unreadable, 503 when the store is down and 502 when the closing
    message could not be delivered.
    """
    service = _service(request)
    if service.transport is None:
        raise HTTPException(status_code=503, detail="No outbound transport configured")
    try:
        outbound = await service.close_session(session_id)
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail="Session is busy") from e
    except InvalidStateError as e:
        LOGGER.error("Cannot close %s: %s", session_id, e)
        raise HTTPException(status_code=422, detail="Stored session state is unreadable") from e
    except StoreUnavailableError as e:
        LOGGER.warning("Cannot close %s: %s", session_id, e)
        raise HTTPException(status_code=503, detail="Session store unavailable") from e
    except TransportError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    return outbound.as_dict()


@app.get("/applications/{app_id}")
async def get_application(app_id: str, request: Request) -> dict[str, Any]:
    """Return the stored application record for app_id."""
    record = await request.app.state.records.get(app_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Application not found")
    return record


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends { session_id, message } per turn.

    Expected Input (JSON):
        {
            "session_id": str - unique session identifier,
            "message": str - founder's message text
        }

    Response Format:
        - {"type": "message", "session_id": str, "text": str} - interviewer message
        - {"type": "done", "kind": "ask"|"reply"|"close"|"remind_closed", ...} - turn summary
        - {"type": "busy", "session_id": str} - turn dropped (session already processing
          or its stored state is unreadable)
        - {"type": "error", "data": str} - error message if applicable
    """
    await websocket.accept()
    service = _service(websocket)
    transport = WebSocketTransport(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError as e:
                LOGGER.error("Invalid WS payload (not JSON): %s", e)
                await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
                continue
            if not isinstance(payload, dict):
                await websocket.send_json({"type": "error", "data": "Expected a JSON object"})
                continue

            session_id = str(payload.get("session_id") or "default")
            LOGGER.info("WS turn session_id=%s", session_id)

            try:
                outbound = await service.handle_message(
                    session_id, payload.get("message"), transport=transport
                )
            except TransportError as e:
                LOGGER.warning("WS delivery failed for %s: %s", session_id, e)
                return
            except StoreUnavailableError as e:
                LOGGER.warning("WS turn for %s not processed: %s", session_id, e)
                await websocket.send_json({"type": "error", "data": "Session store unavailable"})
                continue

            if outbound is None:
                await websocket.send_json({"type": "busy", "session_id": session_id})
                continue
            await websocket.send_json(
                {"type": "done", "session_id": session_id, **outbound.as_dict()}
            )
            if outbound.kind is ActionKind.CLOSE:
                LOGGER.info("WS session %s closed with app_id=%s", session_id, outbound.app_id)

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "vibecap.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
