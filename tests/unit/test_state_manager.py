"""Tests for run state persistence."""

import asyncio
import json

import pytest

from khitomer.engine.state_manager import RunStateStore
from khitomer.exceptions import RunNotFoundError
from khitomer.models.domain import PipelineInput, RunStatus


@pytest.mark.asyncio
async def test_store_creates_directory(tmp_path):
    store = RunStateStore(tmp_path / "nested" / "runs")

    assert store.state_dir.exists()


@pytest.mark.asyncio
async def test_create_writes_running_state(store, pipeline_input):
    state = await store.create("implementation-PROJ-42-app", pipeline_input)

    assert state["status"] == "running"
    assert state["ticket_id"] == "PROJ-42"
    assert state["repository"] == "org/app"
    assert state["steps"] == []
    assert store.exists("implementation-PROJ-42-app")


@pytest.mark.asyncio
async def test_stored_input_round_trips(store, pipeline_input):
    await store.create("run-1", pipeline_input)

    state = await store.load("run-1")

    assert PipelineInput.from_dict(state["input"]) == pipeline_input


@pytest.mark.asyncio
async def test_load_missing_run_raises(store):
    with pytest.raises(RunNotFoundError) as exc_info:
        await store.load("missing")

    assert exc_info.value.run_id == "missing"


@pytest.mark.asyncio
async def test_transaction_persists_changes(store, pipeline_input):
    await store.create("run-1", pipeline_input)

    async with store.transaction("run-1") as state:
        state["current_step"] = "create_branch"

    loaded = await store.load("run-1")
    assert loaded["current_step"] == "create_branch"
    assert loaded["updated_at"] >= loaded["created_at"]


@pytest.mark.asyncio
async def test_transaction_discards_changes_on_error(store, pipeline_input):
    await store.create("run-1", pipeline_input)

    with pytest.raises(RuntimeError):
        async with store.transaction("run-1") as state:
            state["current_step"] = "apply_changes"
            raise RuntimeError("boom")

    loaded = await store.load("run-1")
    assert loaded["current_step"] is None


@pytest.mark.asyncio
async def test_write_leaves_no_temp_file(store, pipeline_input, temp_state_dir):
    await store.create("run-1", pipeline_input)

    assert not list(temp_state_dir.glob("*.tmp"))
    assert json.loads((temp_state_dir / "run-1.json").read_text())["run_id"] == "run-1"


@pytest.mark.asyncio
async def test_list_runs_filters_by_status(store, pipeline_input):
    await store.create("run-a", pipeline_input)
    await store.create("run-b", pipeline_input)
    async with store.transaction("run-b") as state:
        state["status"] = RunStatus.FAILED.value

    running = await store.list_runs(RunStatus.RUNNING)
    everything = await store.list_runs()

    assert [state["run_id"] for state in running] == ["run-a"]
    assert {state["run_id"] for state in everything} == {"run-a", "run-b"}


@pytest.mark.asyncio
async def test_list_runs_skips_corrupt_files(store, pipeline_input, temp_state_dir):
    await store.create("run-a", pipeline_input)
    (temp_state_dir / "broken.json").write_text("{not json")

    runs = await store.list_runs()

    assert [state["run_id"] for state in runs] == ["run-a"]


@pytest.mark.asyncio
async def test_transaction_from_another_store_waits_for_commit(tmp_path, pipeline_input):
    # Two stores on one directory stand in for `serve` and a CLI `cancel`.
    serve_store = RunStateStore(tmp_path)
    cli_store = RunStateStore(tmp_path)
    await serve_store.create("run-1", pipeline_input)
    entered = asyncio.Event()
    release = asyncio.Event()

    async def record_step() -> None:
        async with serve_store.transaction("run-1") as state:
            entered.set()
            await release.wait()
            state["current_step"] = "apply_changes"

    async def request_cancel() -> None:
        async with cli_store.transaction("run-1") as state:
            state["cancel_requested"] = True

    step = asyncio.create_task(record_step())
    await asyncio.wait_for(entered.wait(), timeout=5)
    cancel = asyncio.create_task(request_cancel())
    await asyncio.sleep(0.05)
    blocked = not cancel.done()
    release.set()
    await asyncio.wait_for(asyncio.gather(step, cancel), timeout=5)

    loaded = await serve_store.load("run-1")
    assert blocked
    assert loaded["cancel_requested"] is True
    assert loaded["current_step"] == "apply_changes"


@pytest.mark.asyncio
async def test_transaction_on_missing_run_leaves_no_lock_file(store, temp_state_dir):
    with pytest.raises(RunNotFoundError):
        async with store.transaction("missing"):
            pass

    assert not list(temp_state_dir.glob("missing.*"))
