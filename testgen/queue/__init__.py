"""In-memory queue handing webhook events to the background generation worker."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable

from testgen.logger import get_logger, log_for_event, log_timing, log_failure

from .models import PullRequestPayload, WebhookEvent

logger = get_logger()

EventHandler = Callable[[WebhookEvent], Awaitable[Any]]


class QueueShutdown(RuntimeError):
    """Raised by :meth:`WebhookQueue.dequeue` when the stop signal wins."""


class WebhookQueue:
    """Unbounded FIFO with a non-blocking put and a cancellable get."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[WebhookEvent] = asyncio.Queue()

    def enqueue(self, event: WebhookEvent) -> None:
        self._queue.put_nowait(event)

    async def dequeue(self, stop_event: asyncio.Event | None = None) -> WebhookEvent:
        """Wait for the next event.

        If ``stop_event`` fires first, :class:`QueueShutdown` is raised and no
        event is consumed.
        """

        if stop_event is None:
            return await self._queue.get()
        if stop_event.is_set():
            raise QueueShutdown("Queue is shutting down")

        get_task = asyncio.ensure_future(self._queue.get())
        stop_task = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait({get_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            get_task.cancel()
            stop_task.cancel()
            raise

        stop_task.cancel()
        if get_task in done:
            return get_task.result()

        # Cancelling a pending Queue.get leaves the item in the queue.
        get_task.cancel()
        raise QueueShutdown("Queue is shutting down")

    def pending(self) -> int:
        return self._queue.qsize()


class QueueWorker:
    """Single long-lived consumer that processes events strictly one at a time."""

    def __init__(self, queue: WebhookQueue) -> None:
        self._queue = queue
        self._handler: EventHandler | None = None
        self._worker: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    def configure_handler(self, handler: EventHandler | None) -> None:
        self._handler = handler

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._worker = loop.create_task(self._worker_loop(self._stop_event))

    async def _worker_loop(self, stop_event: asyncio.Event) -> None:
        logger.info("=== QUEUE: Background worker started ===")
        while True:
            try:
                event = await self._queue.dequeue(stop_event)
            except QueueShutdown:
                break
            await self._process(event)
        logger.info("=== QUEUE: Background worker stopped ===")

    async def _process(self, event: WebhookEvent) -> None:
        start_time = time.time()
        ctx_logger = log_for_event(logger, event)
        ctx_logger.info(f"=== QUEUE: Event processing started (action={event.action}) ===")

        try:
            if self._handler is None:
                ctx_logger.error("No event handler configured; dropping event")
                return
            with log_timing(ctx_logger, "process_webhook_event"):
                await self._handler(event)
            processing_time = time.time() - start_time
            ctx_logger.info(f"=== QUEUE: Event handler completed (processed in {processing_time:.3f}s) ===")
        except Exception as exc:
            # At-most-once delivery: failed events are logged, never requeued.
            processing_time = time.time() - start_time
            log_failure(
                logger,
                f"Unhandled exception while processing event (failed after {processing_time:.3f}s)",
                exc,
                delivery_id=event.delivery_id,
                repository=event.payload.repository.full_name,
            )
            logger.exception("Full exception traceback:")

    async def shutdown(self) -> None:
        """Stop waiting for new events and let an in-flight run finish."""

        if self._worker is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await self._worker
        finally:
            self._worker = None
            self._stop_event = None


_QUEUE = WebhookQueue()
_WORKER = QueueWorker(_QUEUE)


def _coerce_event(event: WebhookEvent | dict[str, Any]) -> WebhookEvent:
    if isinstance(event, WebhookEvent):
        return event
    payload = event.get("payload")
    if isinstance(payload, dict):
        event = {**event, "payload": PullRequestPayload.model_validate(payload)}
    return WebhookEvent.model_validate(event)


def enqueue_webhook_event(event: WebhookEvent | dict[str, Any]) -> WebhookEvent:
    """Add an event to the in-memory queue, starting the worker if needed."""

    webhook_event = _coerce_event(event)
    ctx_logger = log_for_event(logger, webhook_event)

    ctx_logger.debug(f"Adding event to queue (pending_events={_QUEUE.pending()})")
    _QUEUE.enqueue(webhook_event)
    try:
        _WORKER.start()
    except RuntimeError:
        ctx_logger.warning("No running event loop; event will be processed once the worker starts")
    ctx_logger.debug(f"Event added to queue (new_pending_events={_QUEUE.pending()})")
    return webhook_event


def configure_event_handler(handler: EventHandler | None) -> None:
    """Configure the coroutine that processes events from the queue."""

    _WORKER.configure_handler(handler)


def start_worker() -> None:
    """Start the background worker on the running event loop."""

    _WORKER.start()


async def shutdown_queue() -> None:
    """Gracefully stop the worker task."""

    await _WORKER.shutdown()


def pending_events() -> int:
    """Return the number of events waiting in the queue."""

    return _QUEUE.pending()
