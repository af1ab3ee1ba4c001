"""Server-Sent Events framing for progress channels."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from fastapi.responses import StreamingResponse

from recordkeeper.api.schemas.progress import ProgressUpdate

HEARTBEAT_FRAME = ": heartbeat\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_event(payload: ProgressUpdate | dict[str, Any]) -> str:
    if isinstance(payload, ProgressUpdate):
        data = payload.model_dump_json(by_alias=True, exclude_none=True)
    else:
        data = json.dumps(payload)
    return f"data: {data}\n\n"


async def frame_updates(updates: AsyncIterator[ProgressUpdate | None]) -> AsyncIterator[str]:
    """Render updates as ``data:`` frames; ``None`` ticks become heartbeat comments."""
    async for update in updates:
        yield HEARTBEAT_FRAME if update is None else format_event(update)


def sse_response(frames: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)
