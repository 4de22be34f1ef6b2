import asyncio
import uvicorn
import os
import socket
import sys
import logging
import uuid
from dataclasses import dataclass, asdict
from typing import Optional, Any
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager, suppress
from datetime import datetime

from refinery.config import (
    DEFAULT_CONFIG,
    PipelineSettings,
    coerce_int_in_range,
    llm_routes,
    load_config,
    sanitize_config_values,
    save_config,
)
from refinery.events import (
    FRAGMENT_CREATED,
    FRAGMENT_UPDATED,
    PIPELINE_COMPLETED,
    PIPELINE_STARTED,
    EventBus,
)
from refinery.fragments import (
    SOURCE_TRANSCRIPTION,
    TAG_RAW,
    Fragment,
    FragmentStore,
    new_id,
)
from refinery.llm import LLMClient
from refinery.logs import apply_runtime_log_levels, log_important
from refinery.materializer import next_sort_key
from refinery.pipeline import TranscriptPipeline
from starlette.websockets import WebSocketDisconnect

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")

# Global State
llm_client: LLMClient | None = None

# Each connected WebSocket drains its own queue; session buses fan out into all of them.
_EVENT_SUBSCRIBERS: set[asyncio.Queue] = set()
# Flushes requested over the WebSocket; held until done so results are collected.
_FLUSH_TASKS: set[asyncio.Task] = set()
_WS_EVENT_TYPES = {
    PIPELINE_STARTED: "pipeline_started",
    PIPELINE_COMPLETED: "pipeline_completed",
    FRAGMENT_CREATED: "fragment_created",
    FRAGMENT_UPDATED: "fragment_updated",
}


# ============================================
# SESSION
# ============================================

@dataclass
class SessionContext:
    id: str
    started_at: str
    column_id: str
    bus: EventBus
    store: FragmentStore
    pipeline: TranscriptPipeline
    ended_at: Optional[str] = None
    title: str = "Untitled Session"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "title": self.title,
            "column_id": self.column_id,
            "fragments": len(self.store),
            "pipeline": self.pipeline.state.snapshot(),
        }


# Current session (in-memory)
current_session: Optional[SessionContext] = None


# Configuration
config = load_config()
apply_runtime_log_levels(config)


# ============================================
# LLM
# ============================================

def init_llm_client_from_config() -> None:
    global llm_client

    routes = llm_routes(config)
    if not routes:
        llm_client = None
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=config.get("api_provider"),
        )
        return

    if llm_client is not None and llm_client.routes == routes:
        return

    llm_client = LLMClient(routes)
    log_important(
        "llm.configured",
        provider=routes[0]["provider"],
        model=routes[0]["model"],
        base_url=routes[0]["base_url"],
        routes=len(routes),
    )


def _has_llm_credential() -> bool:
    # Picks up a key exported into the environment after startup.
    if llm_client is None:
        init_llm_client_from_config()
    return llm_client is not None


async def _llm_complete(system_prompt: str, user_prompt: str, max_tokens: int | None = None) -> str | None:
    client = llm_client
    if client is None:
        raise RuntimeError("LLM not configured")
    return await client.complete(system_prompt, user_prompt, max_tokens)


# ============================================
# SESSION LIFECYCLE
# ============================================

def _event_payload_for_ws(event: str, payload: dict) -> dict:
    out: dict[str, Any] = {"type": _WS_EVENT_TYPES.get(event, event)}
    for key, value in (payload or {}).items():
        out[key] = value.to_dict() if isinstance(value, Fragment) else value
    return out


def _broadcast(event: str, payload: dict) -> None:
    message = _event_payload_for_ws(event, payload)
    for q in list(_EVENT_SUBSCRIBERS):
        try:
            q.put_nowait(message)
        except asyncio.QueueFull:
            # Slow client: drop its oldest message rather than block the session bus.
            with suppress(asyncio.QueueEmpty):
                q.get_nowait()
            with suppress(asyncio.QueueFull):
                q.put_nowait(message)


def _attach_broadcast(bus: EventBus) -> None:
    for event in _WS_EVENT_TYPES:
        bus.on(event, lambda payload, _event=event: _broadcast(_event, payload))


def create_session_context(session_id: str | None = None) -> SessionContext:
    sid = session_id or str(uuid.uuid4())[:8]
    bus = EventBus()
    store = FragmentStore(bus)
    column_id = f"{sid}:transcript"
    pipeline = TranscriptPipeline(
        store,
        bus,
        _llm_complete,
        session_id=sid,
        column_id=column_id,
        settings=PipelineSettings.from_config(config),
        has_credential=_has_llm_credential,
    )
    _attach_broadcast(bus)
    return SessionContext(
        id=sid,
        started_at=datetime.now().isoformat(),
        column_id=column_id,
        bus=bus,
        store=store,
        pipeline=pipeline,
        title=f"Session {datetime.now().strftime('%Y-%m-%d %H:%M')}",
    )


async def close_current_session() -> None:
    global current_session
    session = current_session
    if session is None:
        return
    current_session = None
    session.ended_at = datetime.now().isoformat()
    await session.pipeline.stop()
    session.bus.clear()
    log_important("session.closed", session_id=session.id, fragments=len(session.store))


async def open_new_session() -> SessionContext:
    global current_session
    await close_current_session()
    session = create_session_context()
    session.pipeline.start()
    current_session = session
    log_important("session.new", session_id=session.id, title=session.title)
    return session


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Server starting...")
    log_important("server.starting")
    init_llm_client_from_config()
    await open_new_session()
    yield
    # Shutdown
    logger.info("Shutting down...")
    log_important("server.stopping")
    await close_current_session()


app = FastAPI(lifespan=lifespan)


async def _ws_send_json(
    websocket: WebSocket,
    payload: dict,
    send_lock: asyncio.Lock | None = None,
) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


def _on_flush_done(task: asyncio.Task) -> None:
    _FLUSH_TASKS.discard(task)
    if task.cancelled():
        return
    err = task.exception()
    if err is not None:
        logger.error("WebSocket flush failed", exc_info=err)
        return
    outcome = task.result()
    log_important(
        "ws.flush",
        status=(outcome.status if outcome is not None else "queued-or-empty"),
        batch=(outcome.batch_id if outcome is not None else None),
    )


def _spawn_flush(session: SessionContext) -> asyncio.Task:
    task = asyncio.create_task(session.pipeline.flush())
    _FLUSH_TASKS.add(task)
    task.add_done_callback(_on_flush_done)
    return task


def _no_session_response() -> JSONResponse:
    return JSONResponse({"status": "error", "message": "No active session"}, status_code=409)


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": config}


@app.post("/api/settings")
async def update_settings(request: Request):
    global config
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)

    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)

    prev_config = dict(config)
    config = sanitize_config_values(data, base=config)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    apply_runtime_log_levels(config)
    init_llm_client_from_config()
    if current_session is not None:
        current_session.pipeline.update_settings(PipelineSettings.from_config(config))
    changed = [k for k in config.keys() if config.get(k) != prev_config.get(k)]
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )

    return {"status": "ok", "config": config}


@app.post("/api/settings/reset")
def api_reset_settings():
    """Reset settings to defaults and persist to disk."""
    global config

    config = sanitize_config_values({}, base=DEFAULT_CONFIG)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    apply_runtime_log_levels(config)
    init_llm_client_from_config()
    if current_session is not None:
        current_session.pipeline.update_settings(PipelineSettings.from_config(config))
    log_important("settings.reset")
    return {"status": "ok", "config": config}


@app.get("/api/session")
def api_get_current_session():
    if current_session is None:
        return _no_session_response()
    return {"status": "ok", "session": current_session.to_dict()}


@app.post("/api/session/new")
async def api_new_session():
    session = await open_new_session()
    return {"status": "ok", "session": session.to_dict()}


@app.post("/api/fragments")
async def api_add_fragment(request: Request):
    """Ingest one raw transcription fragment, as produced by capture/VAD."""
    session = current_session
    if session is None:
        return _no_session_response()
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)

    text = " ".join(str(data.get("text") or "").split()).strip()
    if not text:
        return JSONResponse({"status": "error", "message": "Fragment text is required"}, status_code=400)
    speaker = str(data.get("speaker") or "").strip() or None
    timestamp = data.get("timestamp")
    if timestamp is not None:
        timestamp = coerce_int_in_range(timestamp, 0, min_v=0)

    fragment = session.store.add(
        Fragment(
            id=new_id(),
            session_id=session.id,
            column_id=session.column_id,
            content=text,
            source=SOURCE_TRANSCRIPTION,
            speaker=speaker,
            timestamp=timestamp,
            tags=[TAG_RAW],
            sort_key=next_sort_key(session.store, session.column_id),
        )
    )
    return {"status": "ok", "fragment": fragment.to_dict()}


@app.get("/api/fragments")
def api_list_fragments(tag: str | None = None):
    session = current_session
    if session is None:
        return _no_session_response()
    fragments = session.store.list(session_id=session.id, column_id=session.column_id, tag=tag or None)
    fragments.sort(key=lambda f: f.sort_key or "")
    return {"status": "ok", "fragments": [f.to_dict() for f in fragments]}


@app.post("/api/pipeline/flush")
async def api_flush_pipeline():
    session = current_session
    if session is None:
        return _no_session_response()
    was_running = session.pipeline.running
    outcome = await session.pipeline.flush()
    return {
        "status": "ok",
        "queued": bool(was_running and outcome is None),
        "outcome": asdict(outcome) if outcome is not None else None,
        "pipeline": session.pipeline.state.snapshot(),
    }


# ============================================
# WEBSOCKET
# ============================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")
    log_important("ws.connected")

    send_lock = asyncio.Lock()
    events: asyncio.Queue = asyncio.Queue(maxsize=200)
    _EVENT_SUBSCRIBERS.add(events)

    if current_session:
        await _ws_send_json(websocket, {"type": "session_info", **current_session.to_dict()}, send_lock)

    async def _forward_events() -> None:
        while True:
            message = await events.get()
            if not await _ws_send_json(websocket, message, send_lock):
                return

    forward_task = asyncio.create_task(_forward_events())
    try:
        while True:
            data = await websocket.receive_json()
            kind = str((data or {}).get("type") or "").strip().lower()
            if kind == "flush" and current_session is not None:
                _spawn_flush(current_session)
            elif kind == "ping":
                await _ws_send_json(websocket, {"type": "pong"}, send_lock)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
    except Exception:
        logger.exception("WebSocket loop failed")
    finally:
        _EVENT_SUBSCRIBERS.discard(events)
        forward_task.cancel()
        with suppress(asyncio.CancelledError):
            await forward_task
        log_important("ws.disconnected")


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = "127.0.0.1"
        preferred_port = int(os.environ.get("REFINERY_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info("Starting server on http://%s:%s ...", server_host, server_port)
        try:
            start_server(server_host, server_port)
        except KeyboardInterrupt:
            logger.info("Stopping...")
    except Exception as e:
        logger.exception("Fatal error during startup:")
        print(f"\n\nFATAL ERROR: {e}\n")
        sys.exit(1)
