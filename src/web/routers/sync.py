"""Sync router: version polling, explicit bumps, and a live SSE stream."""
import asyncio
import json
import logging

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from src.shared.errors import BackendUnavailable
from src.sync.poller import VersionTracker
from src.web.dependencies import error_response, get_coordinator, get_state

log = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/sync")
async def get_version():
    return {"version": get_coordinator().get_version()}


@router.post("/api/sync")
async def bump_version():
    try:
        version = get_coordinator().bump()
    except BackendUnavailable as e:
        return error_response(e)
    return {"success": True, "version": version}


@router.get("/api/sync/events")
async def sync_events(request: Request):
    """
    Stream `sync` events whenever the version moves forward.

    Same-process bumps arrive immediately through the signal; changes made
    by other processes are picked up by polling every sync interval.
    """
    state = get_state()
    coordinator = get_coordinator()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_signal(version: int) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, version)

    async def event_generator():
        unsubscribe = coordinator.subscribe(on_signal)
        tracker = VersionTracker()
        try:
            version = await asyncio.to_thread(coordinator.get_version)
            tracker.observe(version)
            yield {"event": "version", "data": json.dumps({"version": version})}

            while not await request.is_disconnected():
                try:
                    version = await asyncio.wait_for(queue.get(), timeout=state.sync_interval_seconds)
                    tracker.adopt(version)
                except asyncio.TimeoutError:
                    version = await asyncio.to_thread(coordinator.get_version)
                    if not tracker.observe(version):
                        continue
                yield {"event": "sync", "data": json.dumps({"version": version})}
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator())
