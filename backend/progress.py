"""
Progress Runs — background jobs with reconnectable SSE streams.

A ``ProgressRun`` records every event a job emits so a client that connects
late (or reconnects with ``?after=N``) gets the full history replayed before
live events.  ``RunRegistry`` owns the runs for one job kind (calendar syncs
keyed by connection id, discovery runs keyed by run id).

A subscriber may open a stream *before* the job starts: ``get_or_open``
registers a pending run and ``start`` later adopts it, so the frontend can
connect first and POST second without missing the opening events.
"""

import asyncio
import json
import time
from typing import AsyncIterator, Optional

from fastapi.responses import StreamingResponse

# Terminal run states
FINISHED = ("complete", "error", "cancelled")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_event(data: dict) -> str:
    """Format a dict as an SSE data line."""
    return f"data: {json.dumps(data, default=str)}\n\n"


class ProgressRun:
    """State for a single background job."""

    def __init__(self, key: str, kind: str = "job"):
        self.key = key
        self.kind = kind
        self.status: str = "pending"  # pending | running | complete | error | cancelled
        self.events: list[dict] = []  # all SSE events (for replay)
        self.summary: Optional[dict] = None
        self.error: Optional[str] = None
        self._subscribers: list[asyncio.Queue] = []
        self._lock = asyncio.Lock()
        self.created_at = time.time()

    @property
    def finished(self) -> bool:
        return self.status in FINISHED

    def mark_running(self):
        if self.status == "pending":
            self.status = "running"

    async def emit(self, event: dict):
        """Record an event and push to all live subscribers."""
        async with self._lock:
            self.events.append(event)
            kind = event.get("type")
            if kind == "complete":
                self.status = "complete"
                self.summary = event.get("summary") or event.get("data")
            elif kind == "error" and event.get("fatal", True):
                self.status = "error"
                self.error = event.get("message") or (event.get("data") or {}).get("message")
            elif kind == "cancelled":
                self.status = "cancelled"
            dead: list[asyncio.Queue] = []
            for q in self._subscribers:
                try:
                    q.put_nowait(event)
                except asyncio.QueueFull:
                    dead.append(q)
            for q in dead:
                self._subscribers.remove(q)

    async def subscribe(self, after: int = 0, heartbeat: Optional[float] = None) -> AsyncIterator[Optional[dict]]:
        """
        Yield all events starting from index `after`, then live events.

        With ``heartbeat`` set, yields ``None`` whenever that many seconds pass
        without an event so the caller can write a keepalive comment.
        """
        q: asyncio.Queue = asyncio.Queue(maxsize=512)
        async with self._lock:
            # Replay past events
            for ev in self.events[after:]:
                yield ev
            if self.finished:
                return
            self._subscribers.append(q)
        try:
            while True:
                try:
                    if heartbeat:
                        event = await asyncio.wait_for(q.get(), timeout=heartbeat)
                    else:
                        event = await q.get()
                except asyncio.TimeoutError:
                    yield None
                    continue
                yield event
                if event.get("type") in ("complete", "cancelled") or (
                    event.get("type") == "error" and event.get("fatal", True)
                ):
                    return
        finally:
            async with self._lock:
                if q in self._subscribers:
                    self._subscribers.remove(q)

    def snapshot(self) -> dict:
        """Quick JSON status for polling."""
        return {
            "key": self.key,
            "kind": self.kind,
            "status": self.status,
            "events": len(self.events),
            "summary": self.summary,
            "error": self.error,
        }


class RunRegistry:
    """Manages background runs of one kind.  Singleton per kind, lives for the process."""

    def __init__(self, kind: str):
        self.kind = kind
        self._runs: dict[str, ProgressRun] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def get(self, key: str) -> Optional[ProgressRun]:
        return self._runs.get(key)

    def get_or_open(self, key: str) -> ProgressRun:
        """Return the live run for *key*, or open a pending one for a subscriber to wait on."""
        run = self._runs.get(key)
        if run is None or run.finished:
            run = ProgressRun(key, self.kind)
            self._runs[key] = run
        return run

    def start(self, key: str) -> ProgressRun:
        """Register a run that is about to execute, adopting a pending one if present."""
        run = self._runs.get(key)
        if run is None or run.status != "pending":
            run = ProgressRun(key, self.kind)
            self._runs[key] = run
        run.mark_running()
        return run

    def set_task(self, key: str, task: asyncio.Task):
        self._tasks[key] = task
        task.add_done_callback(lambda _t: self._tasks.pop(key, None))

    def is_running(self, key: str) -> bool:
        run = self._runs.get(key)
        return run is not None and run.status == "running"

    async def cancel(self, key: str) -> bool:
        """Cancel a running job. Returns True if it was running."""
        run = self._runs.get(key)
        if not run or run.status != "running":
            return False
        task = self._tasks.get(key)
        if task and not task.done():
            task.cancel()
        await run.emit({"type": "cancelled", "message": "Stopped by user"})
        return True

    def cleanup_old(self, max_age_seconds: int = 3600):
        """Drop finished (or abandoned pending) runs older than max_age_seconds."""
        now = time.time()
        stale = [
            key for key, run in self._runs.items()
            if run.status != "running" and (now - run.created_at) > max_age_seconds
        ]
        for key in stale:
            del self._runs[key]
            self._tasks.pop(key, None)


def stream_run(run: ProgressRun, after: int = 0, heartbeat: Optional[float] = None) -> StreamingResponse:
    """SSE response: ``connected`` hello, replay from *after*, live events, keepalives."""

    async def generate():
        yield sse_event({"type": "connected", "key": run.key})
        async for event in run.subscribe(after=after, heartbeat=heartbeat):
            if event is None:
                yield ":keepalive\n\n"
            else:
                yield sse_event(event)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
