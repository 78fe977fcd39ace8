from __future__ import annotations

import json
from typing import AsyncGenerator, Dict

from starlette.responses import StreamingResponse

from .events import StepEventBroker, until_closed


def format_sse(event: Dict) -> bytes:
    payload = json.dumps(event, ensure_ascii=False)
    return f"data: {payload}\n\n".encode("utf-8")


async def step_stream(broker: StepEventBroker, session_id: str) -> AsyncGenerator[bytes, None]:
    with broker.subscription(session_id) as queue:
        async for message in until_closed(queue):
            yield format_sse(message)


def sse_response(broker: StepEventBroker, session_id: str) -> StreamingResponse:
    return StreamingResponse(step_stream(broker, session_id), media_type="text/event-stream")
