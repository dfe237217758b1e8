"""
Execution Log Queue: bounded, fire-and-forget delivery to an execution log sink.

Behavioral Contract:
- submit() never blocks and never raises; when the queue is full the record is dropped
- A single worker task delivers records in submission order, each at most once
- Sink failures are logged and swallowed
- Synchronous sinks run in a worker thread
"""

import asyncio
import inspect
import logging
from typing import Optional

from shortcode_engine.definitions.store import ExecutionLogSink
from shortcode_engine.models.processing import ExecutionRecord

logger = logging.getLogger(__name__)


class ExecutionLogQueue:
    """Decouples lookup execution from log persistence."""

    def __init__(self, sink: ExecutionLogSink, maxsize: int = 1000):
        self.sink = sink
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.submitted = 0
        self.delivered = 0
        self.dropped = 0
        self.failed = 0

    def submit(self, record: ExecutionRecord) -> bool:
        """Queue a record for delivery. Returns False if it was dropped."""
        try:
            queue = self._ensure_worker()
        except RuntimeError:
            logger.warning("No running event loop; execution record %s dropped", record.id)
            self.dropped += 1
            return False

        try:
            queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.warning(
                "Execution log queue full (%d); record for lookup '%s' dropped",
                self.maxsize, record.lookup_name,
            )
            self.dropped += 1
            return False

        self.submitted += 1
        return True

    async def drain(self) -> None:
        """Wait until every queued record has been handed to the sink."""
        if self._queue is not None and self._loop is asyncio.get_running_loop():
            await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker. Records still queued are not delivered."""
        worker, self._worker = self._worker, None
        self._queue = None
        self._loop = None
        if worker is None or worker.done():
            return
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass

    def close(self) -> None:
        """Cancel the worker without waiting for it. Safe to call from synchronous code."""
        worker, self._worker = self._worker, None
        loop, self._loop = self._loop, None
        queue, self._queue = self._queue, None
        if queue is not None and queue.qsize():
            logger.warning("Execution log queue closed with %d undelivered records", queue.qsize())
            self.dropped += queue.qsize()
        if worker is None or worker.done() or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(worker.cancel)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def stats(self) -> dict:
        return {
            "submitted": self.submitted,
            "delivered": self.delivered,
            "dropped": self.dropped,
            "failed": self.failed,
            "pending": self.pending,
        }

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if self._loop is not loop or self._worker is None or self._worker.done():
            # A queue belongs to one event loop; start over on a new one
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=self.maxsize)
            self._worker = loop.create_task(self._run(self._queue))
        return self._queue

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            record = await queue.get()
            try:
                if inspect.iscoroutinefunction(self.sink.record):
                    await self.sink.record(record)
                else:
                    await asyncio.to_thread(self.sink.record, record)
                self.delivered += 1
            except Exception:
                self.failed += 1
                logger.exception("Failed to write execution record %s", record.id)
            finally:
                queue.task_done()
