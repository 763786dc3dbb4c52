"""WebSocket status server for the stabilization engine.

Runs the camera loop on demand and pushes every status change, confirmed
gesture, capture and analysis result to connected clients as JSON.

Usage:
    gesture-stabilizer serve
    # or
    uvicorn gesture_stabilizer.server:app --host 0.0.0.0 --port 8765
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

import cv2
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, PlainTextResponse
from pydantic import BaseModel

from gesture_stabilizer import __version__
from gesture_stabilizer.config import ConfigError, EngineConfig
from gesture_stabilizer.metrics import MetricsCollector
from gesture_stabilizer.motion import CaptureEvent
from gesture_stabilizer.remote import AnalysisResult, HttpRemoteAnalyzer
from gesture_stabilizer.segmentation import ConfirmedGestureEvent
from gesture_stabilizer.session import SessionEvent, StabilizationSession, StatusUpdate

logger = logging.getLogger("gesture_stabilizer.server")


# --- State ---

class ServerState:
    def __init__(self):
        self.clients: set[WebSocket] = set()
        self.config = EngineConfig()
        self.metrics = MetricsCollector()
        self.session: Optional[StabilizationSession] = None
        self.outbox: Optional[asyncio.Queue] = None
        self.camera_task: Optional[asyncio.Task] = None
        self.last_gesture: Optional[dict] = None
        self.last_analysis: Optional[dict] = None
        self.fps = 0.0

state = ServerState()


def event_to_message(event: SessionEvent) -> dict:
    """Serialize a session event for WebSocket clients."""
    if isinstance(event, StatusUpdate):
        return {"type": "status", **asdict(event)}
    if isinstance(event, ConfirmedGestureEvent):
        return {
            "type": "gesture",
            "label": event.label,
            "display": event.display,
            "timestamp": event.timestamp,
        }
    if isinstance(event, CaptureEvent):
        return {"type": "capture", **asdict(event)}
    if isinstance(event, AnalysisResult):
        return {"type": "analysis", **asdict(event)}
    raise TypeError(f"Unknown event type: {type(event).__name__}")


def build_session(config: EngineConfig, tracker=None) -> StabilizationSession:
    analyzer = None
    if config.analyzer_url:
        analyzer = HttpRemoteAnalyzer(config.analyzer_url, timeout=config.analyzer_timeout_s)
    session = StabilizationSession(config, tracker=tracker, analyzer=analyzer, metrics=state.metrics)
    session.on_event(_enqueue)
    return session


def _enqueue(event: SessionEvent):
    message = event_to_message(event)
    if message["type"] == "gesture":
        state.last_gesture = message
    elif message["type"] == "analysis":
        state.last_analysis = message
    if state.outbox is not None:
        state.outbox.put_nowait(message)


async def broadcast(message: dict):
    """Send message to all connected clients."""
    if not state.clients:
        return
    dead = set()
    payload = json.dumps(message)
    for ws in state.clients:
        try:
            await ws.send_text(payload)
        except Exception:
            dead.add(ws)
    state.clients -= dead


async def broadcaster():
    while True:
        message = await state.outbox.get()
        await broadcast(message)


# --- Camera capture loop ---

def _open_tracker(config: EngineConfig):
    from gesture_stabilizer.tracker import GestureTracker
    try:
        return GestureTracker(config.model_path)
    except (ImportError, RuntimeError, ValueError) as e:
        logger.warning("Hand tracker unavailable, local path disabled: %s", e)
        return None


async def capture_loop():
    """Read camera frames and drive the session until stopped."""
    config = state.config
    capture = cv2.VideoCapture(config.camera_index)
    if not capture.isOpened():
        logger.error("Could not open camera %d", config.camera_index)
        return

    tracker = _open_tracker(config)
    state.session = build_session(config, tracker)
    state.session.start()

    frame_times: list[float] = []
    try:
        while state.session.active:
            t0 = time.monotonic()
            ret, frame = capture.read()
            if not ret:
                await asyncio.sleep(0.01)
                continue

            frame_rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            state.session.process_frame(frame_rgb, time.monotonic() * 1000.0)

            frame_times.append(time.monotonic() - t0)
            frame_times = frame_times[-30:]
            avg = sum(frame_times) / len(frame_times)
            state.fps = 1.0 / avg if avg > 0 else 0.0

            await asyncio.sleep(0.001)
    finally:
        await state.session.aclose()
        capture.release()
        if tracker is not None:
            tracker.close()
        logger.info("Capture loop stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    state.outbox = asyncio.Queue()
    sender = asyncio.create_task(broadcaster())
    yield
    if state.camera_task:
        state.camera_task.cancel()
    sender.cancel()


app = FastAPI(title="GestureStabilizer", version=__version__, lifespan=lifespan)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])


# --- API endpoints ---

class ConfigUpdate(BaseModel):
    mode: Optional[str] = None
    stability_threshold_ms: Optional[float] = None
    scope: Optional[str] = None
    language: Optional[str] = None
    tie_break: Optional[str] = None


@app.get("/")
async def index():
    return HTMLResponse(
        "<h1>GestureStabilizer</h1>"
        "<p>Connect to <code>/ws</code> for live status, see <code>/api/status</code>.</p>"
    )


@app.get("/api/status")
async def api_status():
    session = state.session
    return {
        "running": bool(session and session.active),
        "mode": (session.effective_mode if session else state.config.mode).value,
        "status": session.status if session else "IDLE",
        "display": session.display if session else "",
        "processing": bool(session and session.processing),
        "cpu_backend": bool(session and session.backend.cpu_bound),
        "clients": len(state.clients),
        "fps": round(state.fps, 1),
        "last_gesture": state.last_gesture,
        "last_analysis": state.last_analysis,
    }


@app.get("/api/config")
async def get_api_config():
    return state.config.to_dict()


@app.post("/api/config")
async def update_api_config(update: ConfigUpdate):
    changes = {k: v for k, v in update.model_dump().items() if v is not None}
    try:
        if state.session:
            state.config = state.session.configure(**changes)
        else:
            state.config = state.config.update(**changes)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    logger.info("Config updated: %s", changes)
    return state.config.to_dict()


@app.post("/api/session/start")
async def start_session():
    if state.camera_task and not state.camera_task.done():
        return {"running": True, "started": False}
    state.camera_task = asyncio.create_task(capture_loop())
    return {"running": True, "started": True}


@app.post("/api/session/stop")
async def stop_session():
    if state.session:
        state.session.stop()
    return {"running": False}


@app.get("/metrics")
async def metrics():
    state.metrics.set_connections(len(state.clients))
    return PlainTextResponse(
        state.metrics.render(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


# --- WebSocket ---

@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state.clients.add(ws)
    logger.info("Client connected (%d total)", len(state.clients))

    try:
        session = state.session
        await ws.send_json({
            "type": "connected",
            "mode": (session.effective_mode if session else state.config.mode).value,
            "status": session.status if session else "IDLE",
        })

        while True:
            try:
                msg = await asyncio.wait_for(ws.receive_text(), timeout=30)
                data = json.loads(msg)
                if data.get("type") == "ping":
                    await ws.send_json({"type": "pong", "server_time": time.time()})
                elif data.get("type") == "online" and state.session:
                    state.session.set_online(bool(data.get("value", True)))
            except asyncio.TimeoutError:
                await ws.send_json({"type": "ping"})
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("WebSocket error: %s", e)
    finally:
        state.clients.discard(ws)
        logger.info("Client disconnected (%d total)", len(state.clients))
