"""
Task intake: periodic tracker polling with at-most-once dispatch.

The poller queries the tracker for every configured status, drops tickets it
has already dispatched, and places new tasks on a bounded queue owned by the
orchestrator. A ticket is marked as dispatched before it is put on the queue,
so a put aborted by shutdown loses that ticket for this instance rather than
risking a second dispatch. Deterministic run ids make re-dispatch after a
restart harmless downstream.

Dedup storage is pluggable: ``MemoryDedupStore`` lives for the process,
``JsonFileDedupStore`` survives restarts. The decision itself is the pure
``is_new_ticket`` function.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Set as AbstractSet
from pathlib import Path

import aiofiles
import structlog

from khitomer.models.domain import Task
from khitomer.providers.base import TrackerProvider
from khitomer.utils.cancellation import CancellationSignal

log = structlog.get_logger(__name__)


def is_new_ticket(ticket_id: str, seen: AbstractSet[str]) -> bool:
    """Return True if ``ticket_id`` has not been dispatched yet."""
    return ticket_id not in seen


class DedupStore(ABC):
    """Storage for the set of dispatched ticket ids."""

    @abstractmethod
    async def seen(self) -> AbstractSet[str]:
        """Return the ticket ids dispatched so far."""
        pass

    @abstractmethod
    async def mark(self, ticket_id: str) -> None:
        """Record ``ticket_id`` as dispatched."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Forget every dispatched ticket id."""
        pass


class MemoryDedupStore(DedupStore):
    """Process-lifetime dedup set. A restart forgets everything."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    async def seen(self) -> AbstractSet[str]:
        return frozenset(self._seen)

    async def mark(self, ticket_id: str) -> None:
        self._seen.add(ticket_id)

    async def clear(self) -> None:
        self._seen.clear()


class JsonFileDedupStore(DedupStore):
    """Dedup set persisted as a JSON list, written atomically on every mark."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._seen: set[str] | None = None
        self._lock = asyncio.Lock()

    async def _load(self) -> set[str]:
        if self._seen is None:
            if self.path.exists():
                async with aiofiles.open(self.path) as f:
                    self._seen = set(json.loads(await f.read()))
            else:
                self._seen = set()
        return self._seen

    async def _write(self, ids: set[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(sorted(ids), indent=2))
        tmp_path.replace(self.path)

    async def seen(self) -> AbstractSet[str]:
        async with self._lock:
            return frozenset(await self._load())

    async def mark(self, ticket_id: str) -> None:
        async with self._lock:
            ids = await self._load()
            ids.add(ticket_id)
            await self._write(ids)

    async def clear(self) -> None:
        async with self._lock:
            self._seen = set()
            await self._write(self._seen)


class Poller:
    """Polls the tracker and emits each new ticket at most once.

    Example:
        >>> poller = Poller(tracker, ["Ready for Development"], interval=300)
        >>> queue: asyncio.Queue[Task] = asyncio.Queue(maxsize=10)
        >>> await poller.run(stop, queue)
    """

    def __init__(
        self,
        tracker: TrackerProvider,
        status_filter: list[str],
        interval: float,
        dedup: DedupStore | None = None,
    ) -> None:
        self.tracker = tracker
        self.status_filter = list(status_filter)
        self.interval = interval
        self.dedup = dedup or MemoryDedupStore()

    async def run(self, stop: CancellationSignal, queue: "asyncio.Queue[Task]") -> None:
        """Poll immediately, then every ``interval`` seconds until ``stop`` fires.

        A cycle that fails (for example on an unreadable dedup file) is
        logged and the next tick still runs.
        """
        log.info("poller_started", statuses=self.status_filter, interval=self.interval)
        while not stop.is_cancelled:
            try:
                await self.poll_once(stop, queue)
            except Exception as e:
                log.exception("poll_cycle_failed", error=str(e), error_type=type(e).__name__)
            if await stop.sleep(self.interval):
                break
        log.info("poller_stopped", reason=stop.reason)

    async def poll_once(self, stop: CancellationSignal, queue: "asyncio.Queue[Task]") -> int:
        """Run one poll cycle.

        Returns:
            Number of tasks placed on the queue.
        """
        emitted = 0
        for status in self.status_filter:
            if stop.is_cancelled:
                return emitted

            try:
                tasks = await self.tracker.search_by_status(status)
            except Exception as e:
                log.error("tracker_search_failed", status=status, error=str(e))
                continue

            for task in tasks:
                if stop.is_cancelled:
                    return emitted
                if not is_new_ticket(task.ticket_id, await self.dedup.seen()):
                    continue

                await self.dedup.mark(task.ticket_id)
                if not await self._put(stop, queue, task):
                    log.info("poll_aborted", ticket_id=task.ticket_id, reason=stop.reason)
                    return emitted

                emitted += 1
                log.info("found_new_task", ticket_id=task.ticket_id, repository=task.repository_full_name)

        return emitted

    async def clear(self) -> None:
        """Reset the dedup store so every ticket is new again."""
        await self.dedup.clear()

    async def _put(self, stop: CancellationSignal, queue: "asyncio.Queue[Task]", task: Task) -> bool:
        if not queue.full():
            queue.put_nowait(task)
            return True
        log.debug("intake_queue_full", ticket_id=task.ticket_id, size=queue.qsize())
        completed, _ = await stop.race(queue.put(task))
        return completed
