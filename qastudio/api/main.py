from __future__ import annotations

import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import Settings, load_env_files
from .events import step_events, until_closed
from .routers import bundles as r_bundles
from .routers import health as r_health
from .routers import locators as r_locators
from .routers import pipeline as r_pipeline
from .routers import recorder as r_recorder


# Custom log filter to suppress noisy stream polling
class StreamPollFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return "/stream" not in message and "/healthz" not in message


logging.getLogger("uvicorn.access").addFilter(StreamPollFilter())

logger = logging.getLogger(__name__)

load_env_files()

app = FastAPI(title="QA Studio Recording Pipeline", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(Settings.from_env().allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(r_health.router)
app.include_router(r_pipeline.router)
app.include_router(r_bundles.router)
app.include_router(r_locators.router)
app.include_router(r_recorder.router)


@app.websocket("/ws/recorder/{session_id}")
async def recorder_step_stream(websocket: WebSocket, session_id: str) -> None:
    with step_events.subscription(session_id) as queue:
        try:
            await websocket.accept()
            async for message in until_closed(queue):
                await websocket.send_json(message)
            await websocket.close()
        except WebSocketDisconnect:
            logger.debug("Step stream for session %s disconnected", session_id)
