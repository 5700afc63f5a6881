"""Tests for tracker polling and dispatch deduplication."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from khitomer.exceptions import TrackerError
from khitomer.intake.poller import JsonFileDedupStore, MemoryDedupStore, Poller, is_new_ticket
from khitomer.models.domain import Task
from khitomer.providers.base import TrackerProvider
from khitomer.utils.cancellation import CancellationSignal


def make_task(ticket_id: str) -> Task:
    return Task(ticket_id=ticket_id, title=f"Title {ticket_id}", repository_owner="org", repository_name="app")


@pytest.fixture
def tracker() -> AsyncMock:
    return AsyncMock(spec=TrackerProvider)


def test_is_new_ticket():
    assert is_new_ticket("PROJ-1", frozenset())
    assert not is_new_ticket("PROJ-1", frozenset({"PROJ-1"}))


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_emits_new_tasks_in_order(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1"), make_task("PROJ-2")]
        poller = Poller(tracker, ["Ready for Development"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)

        emitted = await poller.poll_once(CancellationSignal(), queue)

        assert emitted == 2
        assert [queue.get_nowait().ticket_id for _ in range(2)] == ["PROJ-1", "PROJ-2"]

    @pytest.mark.asyncio
    async def test_ticket_emitted_at_most_once(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1")]
        poller = Poller(tracker, ["Ready for Development"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)
        stop = CancellationSignal()

        await poller.poll_once(stop, queue)
        await poller.poll_once(stop, queue)

        assert queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_ticket_in_two_statuses_emitted_once(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1")]
        poller = Poller(tracker, ["Ready", "Selected"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)

        await poller.poll_once(CancellationSignal(), queue)

        assert queue.qsize() == 1
        assert [call.args[0] for call in tracker.search_by_status.await_args_list] == ["Ready", "Selected"]

    @pytest.mark.asyncio
    async def test_failing_status_does_not_stop_the_cycle(self, tracker):
        async def search(status: str) -> list[Task]:
            if status == "Broken":
                raise TrackerError("Jira request GET /search failed", status_code=500)
            return [make_task("PROJ-9")]

        tracker.search_by_status.side_effect = search
        poller = Poller(tracker, ["Broken", "Ready"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)

        emitted = await poller.poll_once(CancellationSignal(), queue)

        assert emitted == 1
        assert queue.get_nowait().ticket_id == "PROJ-9"

    @pytest.mark.asyncio
    async def test_clear_allows_reemission(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1")]
        poller = Poller(tracker, ["Ready"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)
        stop = CancellationSignal()

        await poller.poll_once(stop, queue)
        await poller.clear()
        await poller.poll_once(stop, queue)

        assert queue.qsize() == 2

    @pytest.mark.asyncio
    async def test_no_search_after_stop(self, tracker):
        poller = Poller(tracker, ["Ready"], interval=60)
        stop = CancellationSignal()
        stop.cancel("shutdown")

        emitted = await poller.poll_once(stop, asyncio.Queue(maxsize=10))

        assert emitted == 0
        tracker.search_by_status.assert_not_awaited()


class TestBackpressure:
    @pytest.mark.asyncio
    async def test_blocked_put_aborts_on_stop(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1"), make_task("PROJ-2")]
        dedup = MemoryDedupStore()
        poller = Poller(tracker, ["Ready"], interval=60, dedup=dedup)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=1)
        queue.put_nowait(make_task("PROJ-0"))
        stop = CancellationSignal()
        asyncio.get_running_loop().call_later(0.05, stop.cancel, "shutdown")

        emitted = await asyncio.wait_for(poller.poll_once(stop, queue), timeout=2.0)

        assert emitted == 0
        assert queue.qsize() == 1
        # marked before the put, so the aborted ticket is not retried by this instance
        assert await dedup.seen() == frozenset({"PROJ-1"})

    @pytest.mark.asyncio
    async def test_put_waits_for_consumer(self, tracker):
        tracker.search_by_status.return_value = [make_task("PROJ-1")]
        poller = Poller(tracker, ["Ready"], interval=60)
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=1)
        queue.put_nowait(make_task("PROJ-0"))
        asyncio.get_running_loop().call_later(0.05, queue.get_nowait)

        emitted = await asyncio.wait_for(poller.poll_once(CancellationSignal(), queue), timeout=2.0)

        assert emitted == 1
        assert queue.get_nowait().ticket_id == "PROJ-1"


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_polls_until_stopped(self, tracker):
        tracker.search_by_status.return_value = []
        poller = Poller(tracker, ["Ready"], interval=0.01)
        stop = CancellationSignal()
        asyncio.get_running_loop().call_later(0.1, stop.cancel, "shutdown")

        await asyncio.wait_for(poller.run(stop, asyncio.Queue(maxsize=10)), timeout=2.0)

        assert tracker.search_by_status.await_count >= 2

    @pytest.mark.asyncio
    async def test_failing_cycle_does_not_stop_polling(self, tracker, tmp_path):
        dedup_file = tmp_path / "dispatched.json"
        dedup_file.write_text("{not json")
        tracker.search_by_status.return_value = [make_task("PROJ-1")]
        poller = Poller(tracker, ["Ready"], interval=0.01, dedup=JsonFileDedupStore(dedup_file))
        queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)
        stop = CancellationSignal()
        asyncio.get_running_loop().call_later(0.2, stop.cancel, "shutdown")

        await asyncio.wait_for(poller.run(stop, queue), timeout=2.0)

        assert tracker.search_by_status.await_count >= 2
        assert queue.empty()


class TestJsonFileDedupStore:
    @pytest.mark.asyncio
    async def test_marks_survive_a_new_instance(self, tmp_path):
        path = tmp_path / "state" / "dispatched.json"
        await JsonFileDedupStore(path).mark("PROJ-1")

        reopened = JsonFileDedupStore(path)

        assert await reopened.seen() == frozenset({"PROJ-1"})
        assert json.loads(path.read_text()) == ["PROJ-1"]

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        assert await JsonFileDedupStore(tmp_path / "none.json").seen() == frozenset()

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path):
        store = JsonFileDedupStore(tmp_path / "dispatched.json")
        await store.mark("PROJ-1")

        await store.clear()

        assert await JsonFileDedupStore(tmp_path / "dispatched.json").seen() == frozenset()
