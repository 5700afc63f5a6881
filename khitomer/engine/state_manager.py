"""
Run state persistence with atomic file writes.

``RunStateStore`` keeps one JSON document per pipeline run so a run remains
queryable by id after it finished, and from another process sharing the
state directory. Integrity comes from:

- Atomic writes through a temporary file and rename
- A per-run asyncio lock serializing read-modify-write cycles in-process
- An exclusive ``flock`` on a per-run ``.lock`` file serializing them
  across processes (the CLI's ``cancel`` against a running ``serve``)

Transaction Support:
    The ``transaction()`` context manager loads, yields, and saves a run's
    state under its lock::

        async with store.transaction(run_id) as state:
            state["current_step"] = "create_branch"

Example:
    >>> store = RunStateStore(".khitomer/runs")
    >>> await store.create("implementation-PROJ-1-app", pipeline_input)
    >>> state = await store.load("implementation-PROJ-1-app")
    >>> state["status"]
    'running'
"""

import asyncio
import fcntl
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

import aiofiles
import structlog

from khitomer.engine.types import RunState
from khitomer.exceptions import RunNotFoundError
from khitomer.models.domain import PipelineInput, RunStatus

log = structlog.get_logger(__name__)


class RunStateStore:
    """Persist run state as one JSON file per run id.

    Attributes:
        state_dir: Directory where state files are stored.
    """

    def __init__(self, state_dir: str | Path) -> None:
        """Initialize the store, creating ``state_dir`` if needed."""
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, run_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if run_id not in self._locks:
                self._locks[run_id] = asyncio.Lock()
            return self._locks[run_id]

    def _get_state_path(self, run_id: str) -> Path:
        return self.state_dir / f"{run_id}.json"

    @asynccontextmanager
    async def _file_lock(self, run_id: str) -> AsyncIterator[None]:
        """Hold an exclusive flock on the run's lock file."""
        with open(self.state_dir / f"{run_id}.lock", "a") as handle:
            await asyncio.to_thread(fcntl.flock, handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def exists(self, run_id: str) -> bool:
        return self._get_state_path(run_id).exists()

    async def _load_internal(self, run_id: str) -> RunState:
        """Read state without taking the run lock; the caller must hold it."""
        state_path = self._get_state_path(run_id)
        if not state_path.exists():
            raise RunNotFoundError(run_id)

        async with aiofiles.open(state_path) as f:
            content = await f.read()
        return cast(RunState, json.loads(content))

    async def _write_state(self, path: Path, state: RunState) -> None:
        """Write to a .tmp sibling then rename over ``path``."""
        tmp_path = path.with_suffix(".tmp")

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(json.dumps(state, indent=2))

        tmp_path.replace(path)

    async def create(self, run_id: str, pipeline_input: PipelineInput) -> RunState:
        """Write a fresh RUNNING state for ``run_id``, replacing any previous one."""
        now = datetime.now(UTC).isoformat()
        state: RunState = {
            "run_id": run_id,
            "status": RunStatus.RUNNING.value,
            "ticket_id": pipeline_input.task.ticket_id,
            "repository": pipeline_input.repository.full_name,
            "current_step": None,
            "steps": [],
            "review_request": None,
            "failed_step": None,
            "error": None,
            "cancel_requested": False,
            "created_at": now,
            "updated_at": now,
            "input": pipeline_input.to_dict(),
        }
        lock = await self._get_lock(run_id)
        async with lock, self._file_lock(run_id):
            await self._write_state(self._get_state_path(run_id), state)
        log.debug("run_state_created", run_id=run_id)
        return state

    async def load(self, run_id: str) -> RunState:
        """Load the state of ``run_id``.

        Raises:
            RunNotFoundError: If no state exists for the run.
        """
        lock = await self._get_lock(run_id)
        async with lock:
            return await self._load_internal(run_id)

    @asynccontextmanager
    async def transaction(self, run_id: str) -> AsyncIterator[RunState]:
        """Load, yield for modification, and save under the run locks.

        Nothing is written if the body raises. Both locks are held from the
        load to the rename, so a transaction from another process never
        overwrites a change it did not see.

        Raises:
            RunNotFoundError: If no state exists for the run.
        """
        if not self.exists(run_id):
            raise RunNotFoundError(run_id)
        lock = await self._get_lock(run_id)
        async with lock, self._file_lock(run_id):
            state = await self._load_internal(run_id)
            try:
                yield state
                state["updated_at"] = datetime.now(UTC).isoformat()
                await self._write_state(self._get_state_path(run_id), state)
            except Exception:
                log.error("run_state_transaction_failed", run_id=run_id)
                raise

    async def list_runs(self, status: RunStatus | None = None) -> list[RunState]:
        """Return stored runs, newest first, optionally filtered by status."""
        runs: list[RunState] = []
        for state_file in self.state_dir.glob("*.json"):
            try:
                state = await self.load(state_file.stem)
            except (RunNotFoundError, json.JSONDecodeError) as e:
                log.warning("run_state_unreadable", path=str(state_file), error=str(e))
                continue
            if status is None or state["status"] == status.value:
                runs.append(state)
        runs.sort(key=lambda state: state["created_at"], reverse=True)
        return runs
