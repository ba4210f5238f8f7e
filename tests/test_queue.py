import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

import testgen.queue as queue_module
from testgen.queue import QueueShutdown, QueueWorker, WebhookQueue, enqueue_webhook_event
from testgen.queue.models import WebhookEvent

from conftest import make_event


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_fifo_order_with_concurrent_producers():
    queue = WebhookQueue()
    enqueued = []

    async def producer(name: str) -> None:
        for i in range(20):
            event = make_event(delivery_id=f"{name}-{i}")
            queue.enqueue(event)
            enqueued.append(event.delivery_id)
            await asyncio.sleep(0)

    await asyncio.gather(*(producer(name) for name in ("a", "b", "c")))

    dequeued = [(await queue.dequeue()).delivery_id for _ in range(len(enqueued))]
    assert dequeued == enqueued
    assert queue.pending() == 0


@pytest.mark.asyncio
async def test_stop_signal_cancels_wait_without_consuming():
    queue = WebhookQueue()
    stop = asyncio.Event()

    waiter = asyncio.create_task(queue.dequeue(stop))
    await asyncio.sleep(0)
    stop.set()

    with pytest.raises(QueueShutdown):
        await waiter

    event = make_event()
    queue.enqueue(event)
    assert queue.pending() == 1
    assert await queue.dequeue() is event


@pytest.mark.asyncio
async def test_already_stopped_dequeue_leaves_items_queued():
    queue = WebhookQueue()
    queue.enqueue(make_event())
    stop = asyncio.Event()
    stop.set()

    with pytest.raises(QueueShutdown):
        await queue.dequeue(stop)

    assert queue.pending() == 1


@pytest.mark.asyncio
async def test_worker_processes_events_sequentially_and_survives_failures():
    queue = WebhookQueue()
    worker = QueueWorker(queue)
    handler = AsyncMock(side_effect=[RuntimeError("boom"), None, None])
    worker.configure_handler(handler)
    worker.start()

    events = [make_event(number=n, delivery_id=f"d-{n}") for n in (1, 2, 3)]
    for event in events:
        queue.enqueue(event)

    await _wait_for(lambda: handler.await_count == 3)
    await worker.shutdown()

    assert [call.args[0] for call in handler.await_args_list] == events
    assert not worker.running


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_event_finish():
    queue = WebhookQueue()
    worker = QueueWorker(queue)
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def slow_handler(event: WebhookEvent) -> None:
        started.set()
        await release.wait()
        finished.append(event.delivery_id)

    worker.configure_handler(slow_handler)
    worker.start()
    queue.enqueue(make_event(delivery_id="slow"))
    await started.wait()

    shutdown = asyncio.create_task(worker.shutdown())
    await asyncio.sleep(0.01)
    assert not shutdown.done()

    release.set()
    await shutdown
    assert finished == ["slow"]


def test_enqueue_webhook_event_accepts_dicts(monkeypatch):
    queue = WebhookQueue()
    worker = MagicMock()
    monkeypatch.setattr(queue_module, "_QUEUE", queue)
    monkeypatch.setattr(queue_module, "_WORKER", worker)

    event = enqueue_webhook_event(make_event().model_dump())

    assert isinstance(event, WebhookEvent)
    assert event.payload.repository.full_name == "octo/widgets"
    assert queue.pending() == 1
    worker.start.assert_called_once()
