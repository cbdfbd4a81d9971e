import asyncio
import json
import time
from typing import Any, AsyncGenerator

from specpilot.agent.events import load_events
from specpilot.store import ProjectStore


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

SLEEP_INTERVAL_SECONDS = 0.5


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def emit_event(
    project_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "project_id": project_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


async def project_event_stream(
    store: ProjectStore,
    project_id: str,
    start_index: int = 0,
    interval: float = SLEEP_INTERVAL_SECONDS,
) -> AsyncGenerator[str, None]:
    """Stream stored chat events as they appear, until processing stops."""
    last_idx = start_index
    while True:
        record = await store.get(project_id)
        if record is None:
            yield sse_format(emit_event(project_id, "stream_failed", error="Project not found"))
            return
        events = load_events(record.agent_events)
        # History was cleared under us
        if last_idx > len(events):
            last_idx = 0
        while last_idx < len(events):
            yield sse_format(
                emit_event(
                    project_id,
                    "chat_event",
                    data={"index": last_idx, **events[last_idx].model_dump(by_alias=True)},
                )
            )
            last_idx += 1
        if not record.is_processing:
            yield sse_format(
                emit_event(project_id, "processing_complete", data={"events": last_idx})
            )
            return
        await asyncio.sleep(interval)
