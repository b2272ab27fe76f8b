"""Bounded handoff between the alert engine and the notification dispatcher."""

import asyncio
import itertools
import logging
from typing import List, Optional, Tuple

from voiceguard.alerting import Alert, ChannelType

from .dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)

_QueueItem = Tuple[int, int, Alert, List[ChannelType]]


class DispatchQueue:
    """Priority queue of pending alert notifications with one worker.

    ``submit`` never blocks: when the queue is full the notification is
    dropped and counted. Critical alerts are delivered before warnings,
    warnings before info; equal severities keep submission order.
    """

    def __init__(self, dispatcher: NotificationDispatcher, max_size: int = 1000):
        self._dispatcher = dispatcher
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue(maxsize=max_size)
        self._sequence = itertools.count()
        self._worker: Optional[asyncio.Task] = None
        self._running = False
        self._busy = False
        self.submitted = 0
        self.dropped = 0
        self.processed = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, alert: Alert, channels: Optional[List[ChannelType]] = None) -> bool:
        """Queue an alert for delivery. Usable as an engine notification handler."""
        item: _QueueItem = (-alert.severity.rank, next(self._sequence), alert, list(channels or []))
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Dispatch queue full; notification dropped",
                extra={"extra_data": {"alert_id": alert.alert_id, "dropped": self.dropped}},
            )
            return False
        self.submitted += 1
        return True

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._worker = asyncio.create_task(self._run(), name="notification-dispatch")
        logger.info("Dispatch queue worker started")

    async def stop(self) -> None:
        """Stop the worker. A delivery already in progress is allowed to finish."""
        if not self._running:
            return
        self._running = False
        worker, self._worker = self._worker, None
        if worker is not None:
            if not self._busy:
                worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        logger.info("Dispatch queue worker stopped", extra={"extra_data": {"pending": self.pending}})

    async def drain(self) -> int:
        """Deliver everything currently queued. Returns the number processed."""
        count = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            await self._process(item)
            count += 1
        return count

    async def _run(self) -> None:
        while self._running:
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                break
            await self._process(item)

    async def _process(self, item: _QueueItem) -> None:
        _, _, alert, channels = item
        self._busy = True
        try:
            await self._dispatcher.send_alert_notification(alert, channels or None)
            self.processed += 1
        except Exception as e:
            self.failed += 1
            logger.error("Notification dispatch failed for %s: %s", alert.alert_id, e, exc_info=True)
        finally:
            self._busy = False
            self._queue.task_done()

    def get_stats(self) -> dict:
        return {
            "pending": self.pending,
            "submitted": self.submitted,
            "dropped": self.dropped,
            "processed": self.processed,
            "failed": self.failed,
        }
