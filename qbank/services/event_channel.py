import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Awaitable, Dict, Optional

from ..models.events import ErrorEvent, is_terminal
from .errors import StreamBusyError, StreamOverflowError

logger = logging.getLogger(__name__)


class EventChannel:
    """
    Single-subscriber, bounded event channel for one session.

    The producer never waits on the consumer: ``publish`` is non-blocking and,
    once the buffer is full, the consumer is dropped. A dropped consumer's
    iterator raises ``StreamOverflowError``; the producer keeps running.
    """

    def __init__(self, maxsize: int = 64):
        if maxsize < 1:
            raise ValueError("Event buffer size must be at least 1")
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribed = False
        self._overflowed = False
        self._closed = False
        self._drained = False

    @property
    def overflowed(self) -> bool:
        return self._overflowed

    @property
    def drained(self) -> bool:
        """True once a consumer has received the terminal event."""
        return self._drained

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event) -> None:
        if self._closed:
            raise RuntimeError(f"Cannot publish {event.type!r} after the terminal event")
        if is_terminal(event):
            self._closed = True
        if self._overflowed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._overflowed = True
            logger.warning(f"Event buffer full ({self._queue.maxsize}); dropping stream consumer")

    def subscribe(self) -> AsyncIterator:
        """Claim the stream. Raises StreamBusyError if a consumer is already attached."""
        if self._subscribed:
            raise StreamBusyError("Stream already has an active consumer")
        self._subscribed = True
        return self._iterate()

    async def _iterate(self):
        try:
            while True:
                if self._overflowed:
                    raise StreamOverflowError("Consumer could not keep up with the event stream")
                event = await self._queue.get()
                if is_terminal(event):
                    self._drained = True
                yield event
                if is_terminal(event):
                    return
        finally:
            self._subscribed = False


@dataclass
class ActiveSession:
    session_id: int
    channel: EventChannel
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class SessionRegistry:
    """
    Tracks the coordinating task, channel and cancel flag of sessions.

    A finished session stays registered until its consumer has drained the
    terminal event, so a late subscriber still receives the buffered stream.
    At most ``max_retained`` finished sessions are kept.
    """

    def __init__(self, buffer_size: int = 64, max_retained: int = 128):
        self.buffer_size = buffer_size
        self.max_retained = max_retained
        self._active: Dict[int, ActiveSession] = {}

    def open(self, session_id: int) -> ActiveSession:
        if session_id in self._active:
            raise RuntimeError(f"Session {session_id} is already running")
        active = ActiveSession(session_id=session_id, channel=EventChannel(self.buffer_size))
        self._active[session_id] = active
        return active

    def launch(self, active: ActiveSession, runner: Callable[[ActiveSession], Awaitable[None]]) -> asyncio.Task:
        task = asyncio.create_task(runner(active), name=f"extraction-session-{active.session_id}")
        active.task = task
        task.add_done_callback(lambda _t: self._finish(active.session_id))
        return task

    def get(self, session_id: int) -> Optional[ActiveSession]:
        return self._active.get(session_id)

    def cancel(self, session_id: int) -> bool:
        active = self._active.get(session_id)
        if active is None:
            return False
        active.cancel_event.set()
        logger.info(f"Cancellation requested for session {session_id}")
        return True

    def release(self, session_id: int) -> None:
        """Forget a session whose task is done and whose stream was consumed."""
        active = self._active.get(session_id)
        if active and _is_done(active) and (active.channel.drained or active.channel.overflowed):
            del self._active[session_id]

    def _finish(self, session_id: int) -> None:
        active = self._active.get(session_id)
        if active is None:
            return
        if not active.task.cancelled() and active.task.exception():
            logger.error(f"Session {session_id} task crashed: {active.task.exception()}")
        if not active.channel.closed:
            active.channel.publish(ErrorEvent(message="Internal error", details="Session stopped unexpectedly"))
        self.release(session_id)
        finished = [sid for sid, a in self._active.items() if _is_done(a)]
        for sid in finished[:max(0, len(finished) - self.max_retained)]:
            del self._active[sid]

    async def shutdown(self) -> None:
        tasks = [a.task for a in self._active.values() if a.task]
        for active in self._active.values():
            active.cancel_event.set()
        if tasks:
            logger.info(f"Waiting for {len(tasks)} running session(s) to stop")
            await asyncio.gather(*tasks, return_exceptions=True)


def _is_done(active: ActiveSession) -> bool:
    return active.task is not None and active.task.done()
