"""Single-consumer queue applying channel events strictly in arrival order."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from ..domain.errors import EventApplyError
from ..metrics import EVENTS_DISCARDED

logger = structlog.get_logger()


@dataclass
class QueuedEvent:
    """An inbound event payload awaiting application."""

    sequence_number: int
    payload: Any


class EventQueue:
    """Feeds channel payloads one at a time to an apply function.

    ``submit`` never blocks and never drops; a failing event is logged and
    the next one is processed.
    """

    def __init__(self, apply: Callable[[Any], Any]) -> None:
        """``apply`` may be a plain function or a coroutine function."""
        self._apply = apply
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._next_sequence = 0
        self.processed = 0
        self.discarded = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the consumer task."""
        if not self.running:
            self._task = asyncio.create_task(self._process_queue())
            logger.info("event_queue_started")

    def submit(self, payload: Any) -> int:
        """Enqueue a payload; returns its sequence number."""
        sequence_number = self._next_sequence
        self._next_sequence += 1
        self._queue.put_nowait(QueuedEvent(sequence_number=sequence_number, payload=payload))
        return sequence_number

    async def _process_queue(self) -> None:
        try:
            while True:
                event = await self._queue.get()
                try:
                    result = self._apply(event.payload)
                    if asyncio.iscoroutine(result):
                        await result
                    self.processed += 1
                except EventApplyError as e:
                    self.discarded += 1
                    EVENTS_DISCARDED.inc()
                    logger.warning(
                        "event_discarded",
                        sequence=event.sequence_number,
                        error=str(e)
                    )
                except Exception as e:
                    self.discarded += 1
                    EVENTS_DISCARDED.inc()
                    logger.error(
                        "event_processing_error",
                        sequence=event.sequence_number,
                        error=str(e)
                    )
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("event_queue_cancelled", pending=self._queue.qsize())
            raise

    async def join(self) -> None:
        """Wait until every submitted event has been applied or discarded."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the consumer task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
