import asyncio
import inspect
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union
from loguru import logger
from pydantic import BaseModel, Field


EventNameType = Literal[
    "story_planned",
    "arc_planned",
    "arc_started",
    "arc_completed",
    "chapter_started",
    "chapter_completed",
    "chapter_failed",
    "progress",
    "status_change",
    "completed",
    "error",
]


class RunEvent(BaseModel):
    name: EventNameType
    project_id: str
    seq: int = Field(..., ge=0, description="Emission order within one run")
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


EventHandler = Callable[[RunEvent], Union[None, Awaitable[None]]]


_STOP = object()



class EventBus:
    """
    Per-run event channel. emit() puts the event on a bounded queue and returns; one dispatcher
    task delivers events to handlers in emission order. A full queue makes emit() wait.
    Handler failures are logged and never reach the run.
    """

    def __init__(self, project_id: str, maxsize: int = 256):
        self.project_id = project_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._handlers: List[EventHandler] = []
        self._named_handlers: Dict[str, List[EventHandler]] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        self._seq = 0

    def subscribe(self, handler: EventHandler):
        """handler receives every event."""
        self._handlers.append(handler)

    def on(self, name: EventNameType, handler: EventHandler):
        self._named_handlers.setdefault(name, []).append(handler)

    def start(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch())

    async def emit(self, name: EventNameType, **payload: Any) -> RunEvent:
        event = RunEvent(name=name, project_id=self.project_id, seq=self._seq, payload=payload)
        self._seq += 1
        if self._dispatcher is None:
            self.start()
        await self._queue.put(event)
        return event

    async def close(self):
        """Delivers everything already emitted, then stops the dispatcher."""
        if self._dispatcher is None:
            return
        await self._queue.put(_STOP)
        await self._dispatcher
        self._dispatcher = None

    async def _dispatch(self):
        while True:
            event = await self._queue.get()
            try:
                if event is _STOP:
                    return
                for handler in self._handlers + self._named_handlers.get(event.name, []):
                    await self._deliver(handler, event)
            finally:
                self._queue.task_done()

    async def _deliver(self, handler: EventHandler, event: RunEvent):
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"event handler failed on {event.name} #{event.seq} of {event.project_id}")
