"""
HTTP and WebSocket surface of the call relay.

- POST /webhook/status  platform status webhooks
- WS   /ws              browser observer channel
- /control/...          read API and hangup
"""
import json
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from logging_setup import get_logger, Component

from .config import get_config
from .control_api import router as control_router
from .engine import engine
from .errors import MalformedWebhook
from .observers import ObserverSession
from .platform import connect_voice_client, disconnect_voice_client
from .staleness import sweeper
from .webhook_handler import webhook_handler


logger = get_logger(Component.RELAY)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the sweeper and the voice client; stop both on shutdown."""
    config = get_config()
    logger.info("Call relay starting", port=config.port, webhook_url=config.webhook_url)

    sweeper.start()
    app.state.voice_client = await connect_voice_client(
        config.voice_client_factory,
        config,
        config.topics,
        engine.on_incoming_call,
    )

    yield

    logger.info("Call relay stopping")
    await sweeper.stop()
    await disconnect_voice_client(app.state.voice_client)


app = FastAPI(title="Call Relay", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.include_router(control_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("HTTP request", method=request.method, path=request.url.path)
    return await call_next(request)


@app.post("/webhook/status")
async def webhook_status(request: Request):
    """Platform status webhook."""
    body = await request.body()

    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        logger.warning("Invalid webhook data", body_size=len(body))
        raise HTTPException(status_code=400, detail="Invalid webhook data")

    try:
        result = webhook_handler.handle_webhook(payload)
    except MalformedWebhook as e:
        logger.warning("Malformed webhook rejected", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        # Don't crash - log and return error
        logger.exception("Webhook processing exception", error=str(e), exception_type=type(e).__name__)
        return JSONResponse(status_code=500, content={"error": "webhook_processing_failed"})

    return JSONResponse(content=result)


@app.websocket("/ws")
async def observer_channel(websocket: WebSocket) -> None:
    """Browser observer channel."""
    await websocket.accept()
    session = ObserverSession(websocket)
    session.start()
    try:
        while True:
            text = await websocket.receive_text()
            await session.handle_text(text)
    except WebSocketDisconnect:
        pass
    finally:
        await session.close()


@app.get("/health")
async def health():
    return {"status": "ok", "component": "call_relay"}


@app.get("/debug/env")
async def debug_env():
    """Configuration with credentials masked."""
    return get_config().masked()
