"""Debouncing of file change bursts into batches."""

import asyncio
import logging
import threading
from typing import AsyncIterable, AsyncIterator, Optional

from .models import EventBatch, FileChangeEvent

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 0.5


class Debouncer:
    """
    Batches rapid events into single triggers.

    Every incoming event restarts a timer; when the timer expires with events
    buffered, the buffer is emitted as one batch in arrival order. Editors
    that save through temp files and renames produce several notifications
    per save, and this collapses them into one rebuild.
    """

    def __init__(
        self,
        window: float = DEFAULT_WINDOW_SECONDS,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize debouncer.

        Args:
            window: Quiet period in seconds before a batch is emitted
            logger: Logger to use (defaults to the module logger)
        """
        self.window = window
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._events: EventBatch = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._generation = 0

    async def debounce(
        self, events: AsyncIterable[FileChangeEvent]
    ) -> AsyncIterator[EventBatch]:
        """
        Debounce an event stream.

        Input exhaustion flushes whatever is buffered immediately. Cancelling
        the consuming task drops the pending timer without emitting.

        Args:
            events: Incoming file change events

        Yields:
            Batches of events collected within one debounce window
        """
        loop = asyncio.get_running_loop()
        # Size 1: a second trigger while one is pending carries no information
        triggers: asyncio.Queue = asyncio.Queue(maxsize=1)
        source = aiter(events)

        next_event = asyncio.ensure_future(anext(source))
        next_trigger = asyncio.ensure_future(triggers.get())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {next_event, next_trigger}, return_when=asyncio.FIRST_COMPLETED
                )

                if next_event in done:
                    try:
                        event = next_event.result()
                    except StopAsyncIteration:
                        batch = self._take_events()
                        if batch:
                            self.logger.debug(f"Input closed, flushing {len(batch)} events")
                            yield batch
                        return
                    self._add_event(event, loop, triggers)
                    next_event = asyncio.ensure_future(anext(source))

                if next_trigger in done:
                    generation = next_trigger.result()
                    next_trigger = asyncio.ensure_future(triggers.get())
                    batch = self._take_events(generation)
                    if batch:
                        self.logger.debug(f"Debounce triggered with {len(batch)} events")
                        yield batch
        finally:
            self._cancel_timer()
            next_event.cancel()
            next_trigger.cancel()

    def _add_event(
        self,
        event: FileChangeEvent,
        loop: asyncio.AbstractEventLoop,
        triggers: asyncio.Queue,
    ) -> None:
        """Buffer an event and restart the debounce timer."""
        with self._lock:
            self._events.append(event)
            self.logger.debug(f"Event added to batch: {event.path} (size {len(self._events)})")

            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = loop.call_later(
                self.window, self._fire, triggers, self._generation
            )

    def _fire(self, triggers: asyncio.Queue, generation: int) -> None:
        """Timer callback: hand off to the debounce loop without blocking."""
        try:
            triggers.put_nowait(generation)
        except asyncio.QueueFull:
            # Trigger already pending
            pass

    def _take_events(self, generation: Optional[int] = None) -> EventBatch:
        """
        Swap the buffer for an empty one.

        With a generation, only a trigger from the latest timer may flush;
        a stale trigger that raced with a newer event is ignored.
        """
        with self._lock:
            if generation is not None and generation != self._generation:
                return []
            batch, self._events = self._events, []
            self._timer = None
            return batch

    def _cancel_timer(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def reset(self) -> None:
        """Clear buffered events without emitting them."""
        with self._lock:
            self._events = []
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
