"""
Tuneshift Service - FastAPI Application

This service:
- Signs in to Twitch and keeps an EventSub WebSocket session alive
- Matches channel point, cheer, sub and follow events against user bindings
- Schedules pitch/speed effects (and chat messages) and reverts them on time
- Streams state, diagnostics, the activity log and effect totals over /ws

RUNNING THE SERVER:
    uvicorn tuneshift.main:app --port 8000
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from tuneshift import __version__
from tuneshift.config import settings
from tuneshift.core.controller import Controller
from tuneshift.core.publisher import ALL_TOPICS
from tuneshift.memory.store import create_store
from tuneshift.schemas.messages import (
    ActionResponse,
    DevtoolsToggle,
    GrantCallback,
    PendingGrant,
    TestEventRequest,
)
from tuneshift.schemas.state import (
    ActionResult,
    ActivityLogEntry,
    ControllerState,
    DiagnosticsSnapshot,
)
from tuneshift.twitch.grant import CallbackGrantFlow
from tuneshift.utils.logging import get_logger

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = get_logger(__name__, category="system")
auth_logger = get_logger(f"{__name__}.auth", category="auth")

# Configure uvicorn access logger to filter feed polling noise
access_logger = logging.getLogger("uvicorn.access")


def filter_access_log(record):
    """Filter out verbose polling logs."""
    message = record.getMessage()
    if message.find("/diagnostics") != -1 or message.find("/health") != -1:
        return False
    return True


access_logger.addFilter(filter_access_log)

app = FastAPI(
    title="Tuneshift Service",
    description="Twitch EventSub driven pitch/speed effects",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Created on startup; tests may install their own before issuing requests
controller: Optional[Controller] = None


def get_controller() -> Controller:
    if controller is None:
        raise HTTPException(status_code=503, detail="Controller unavailable")
    return controller


def action_response(active: Controller, result: ActionResult) -> ActionResponse:
    return ActionResponse.from_result(result, active.state)


def callback_flow(active: Controller) -> CallbackGrantFlow:
    if not isinstance(active.grant_flow, CallbackGrantFlow):
        raise HTTPException(status_code=404, detail="Grant flow is not callback-based")
    return active.grant_flow


# ============================================================================
# ENDPOINTS
# ============================================================================


@app.get("/health")
async def health_check():
    """Service status, login state and EventSub session state."""
    active = controller
    return {
        "status": "healthy",
        "service": "tuneshift",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "logged_in": bool(active and active.authority.credential),
        "eventsub": {
            "state": active.session.state.value if active else "idle",
            "connected": bool(active and active.session.is_connected),
            "subscriptions_blocked": bool(active and active.context.subscriptions_blocked),
        },
    }


@app.get("/state", response_model=ControllerState)
async def get_state():
    return get_controller().state


@app.put("/state", response_model=ControllerState)
async def put_state(state: ControllerState):
    return await get_controller().update_state(state)


@app.post("/devtools", response_model=ControllerState)
async def toggle_devtools(toggle: DevtoolsToggle):
    return await get_controller().set_diagnostics_expanded(toggle.expanded)


@app.get("/diagnostics", response_model=DiagnosticsSnapshot)
async def get_diagnostics():
    return get_controller().context.diagnostics


@app.get("/event-log", response_model=List[ActivityLogEntry])
async def get_event_log():
    return get_controller().activity_log.entries


@app.get("/effects")
async def get_effects():
    active = get_controller()
    return {
        "totals": active.scheduler.totals.model_dump(),
        "active": [
            {
                "id": effect.id,
                "binding_id": effect.binding_id,
                "binding_label": effect.binding_label,
                "applied": effect.applied,
                "delay_sec": effect.delay_seconds,
                "duration_sec": effect.duration_seconds,
                "source": effect.source,
                "operations": [op.model_dump() for op in effect.audio_operations],
            }
            for effect in active.scheduler.active.values()
        ],
    }


@app.post("/twitch/connect", response_model=ActionResponse)
async def twitch_connect():
    """Start the OAuth grant; completes once /auth/callback or /auth/cancel is posted."""
    active = get_controller()
    auth_logger.info("Twitch connect requested")
    return action_response(active, await active.connect())


@app.post("/twitch/reconnect", response_model=ActionResponse)
async def twitch_reconnect():
    active = get_controller()
    return action_response(active, await active.reconnect())


@app.post("/twitch/disconnect", response_model=ActionResponse)
async def twitch_disconnect():
    active = get_controller()
    return action_response(active, await active.disconnect())


@app.post("/test-events", response_model=ActionResponse)
async def fire_test_event(request: TestEventRequest):
    active = get_controller()
    return action_response(active, await active.trigger_test_event(request))


@app.post("/rewards/refresh", response_model=ActionResponse)
async def refresh_rewards():
    active = get_controller()
    return action_response(active, await active.refresh_rewards())


@app.get("/auth/pending", response_model=PendingGrant)
async def pending_grant():
    flow = callback_flow(get_controller())
    if not flow.pending or not flow.authorize_url:
        raise HTTPException(status_code=404, detail="No authorization in progress")
    return PendingGrant(authorize_url=flow.authorize_url)


@app.post("/auth/callback")
async def grant_callback(callback: GrantCallback):
    flow = callback_flow(get_controller())
    if not flow.complete(callback.redirect_url):
        raise HTTPException(status_code=409, detail="No authorization in progress")
    auth_logger.info("Twitch authorization callback received")
    return {"status": "accepted"}


@app.post("/auth/cancel")
async def grant_cancel():
    flow = callback_flow(get_controller())
    if not flow.cancel():
        raise HTTPException(status_code=409, detail="No authorization in progress")
    auth_logger.info("Twitch authorization cancelled")
    return {"status": "cancelled"}


@app.websocket("/ws")
async def feed(websocket: WebSocket):
    """Stream every published topic as {"topic": ..., "data": ...} frames."""
    active = get_controller()
    await websocket.accept()

    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = active.publisher.subscribe(
        ALL_TOPICS, lambda topic, data: queue.put_nowait((topic, data))
    )

    # Initial snapshot so a new client does not wait for the next change
    queue.put_nowait(("state", active.state.model_dump(mode="json")))
    queue.put_nowait(("diagnostics", active.context.diagnostics.model_dump()))
    queue.put_nowait(("event_log", active.activity_log.snapshot()))
    queue.put_nowait(("effect_totals", active.scheduler.totals.model_dump()))

    async def pump() -> None:
        while True:
            topic, data = await queue.get()
            await websocket.send_json({"topic": topic, "data": data})

    sender = asyncio.create_task(pump())
    try:
        while True:
            # Inbound frames are ignored; reading detects the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Feed client disconnected")
    finally:
        unsubscribe()
        sender.cancel()


# ============================================================================
# STARTUP/SHUTDOWN
# ============================================================================


@app.on_event("startup")
async def startup_event():
    """
    Called when FastAPI starts

    Loads persisted state and resumes a stored Twitch credential.
    """
    logger.info(f"Tuneshift service starting on {settings.host}:{settings.port}")

    global controller
    if controller is None:
        controller = Controller(create_store(settings), config=settings)
    try:
        await controller.start()
        logger.info("Controller started")
    except Exception as exc:
        logger.error(f"Failed to start controller: {exc}", exc_info=True)


@app.on_event("shutdown")
async def shutdown_event():
    """
    Called when FastAPI shuts down

    Reverts active effects, closes the EventSub session and flushes the log.
    """
    logger.info("Tuneshift service shutting down")

    global controller
    if controller:
        try:
            await controller.shutdown()
        except Exception as exc:
            logger.error(f"Error shutting down controller: {exc}")
