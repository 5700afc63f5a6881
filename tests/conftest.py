"""Pytest configuration and shared fixtures."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from khitomer.engine.activities import PipelineActivities
from khitomer.engine.pipeline import ActivityOptions
from khitomer.engine.state_manager import RunStateStore
from khitomer.exceptions import ConfigurationError, PlanningError
from khitomer.models.domain import (
    CodeChangeResult,
    ImplementationPlan,
    PipelineInput,
    PlanStep,
    RepositoryInfo,
    ReviewRequest,
    Task,
    TestRunResult,
)
from khitomer.utils.retry import RetryPolicy


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary run state directory."""
    state_dir = tmp_path / "runs"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def store(temp_state_dir: Path) -> RunStateStore:
    """RunStateStore backed by the temp directory."""
    return RunStateStore(temp_state_dir)


@pytest.fixture
def sample_task() -> Task:
    """Sample tracker task."""
    return Task(
        ticket_id="PROJ-42",
        title="Fix login bug",
        description="Users cannot log in with SSO",
        repository_owner="org",
        repository_name="app",
        base_branch="main",
        url="https://example.atlassian.net/browse/PROJ-42",
        repository_url="https://github.com/org/app",
        status="Ready for Development",
    )


@pytest.fixture
def sample_plan() -> ImplementationPlan:
    """Sample two-step plan."""
    return ImplementationPlan(
        summary="Patch the SSO callback",
        complexity="low",
        steps=(
            PlanStep(order=1, description="Fix the callback handler"),
            PlanStep(order=2, description="Add a regression test", activity_type="testing"),
        ),
        files_to_modify=("app/auth.py",),
        files_to_create=("tests/test_auth.py",),
    )


@pytest.fixture
def pipeline_input(sample_task: Task, sample_plan: ImplementationPlan) -> PipelineInput:
    """Pipeline input for the sample task."""
    return PipelineInput(task=sample_task, plan=sample_plan, repository=RepositoryInfo.for_task(sample_task))


@pytest.fixture
def sample_review() -> ReviewRequest:
    """Sample opened pull request."""
    return ReviewRequest(
        number=7,
        url="https://github.com/org/app/pull/7",
        title="PROJ-42: Fix login bug",
    )


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    """Three attempts with no backoff delay."""
    return RetryPolicy(
        initial_interval=0.0,
        maximum_interval=0.0,
        maximum_attempts=3,
        non_retryable=(ConfigurationError, PlanningError),
    )


@pytest.fixture
def fast_options(fast_retry_policy: RetryPolicy) -> ActivityOptions:
    """Activity options suitable for tests."""
    return ActivityOptions(start_to_close_timeout=5.0, retry_policy=fast_retry_policy)


@pytest.fixture
def mock_activities(tmp_path: Path, sample_review: ReviewRequest) -> AsyncMock:
    """PipelineActivities mock where every step succeeds."""
    activities = AsyncMock(spec=PipelineActivities)
    activities.clone_repository.return_value = tmp_path / "workspace"
    activities.create_branch.side_effect = lambda workspace, base, name: name
    activities.apply_changes.return_value = CodeChangeResult(
        summary="Fixed the callback",
        files_modified=("app/auth.py",),
        files_created=("tests/test_auth.py",),
    )
    activities.run_tests.return_value = TestRunResult(passed=True, project_type="python")
    activities.commit_and_push.return_value = "abc123"
    activities.open_review_request.return_value = sample_review
    activities.update_tracker.return_value = None
    return activities


@pytest.fixture
def no_sleep():
    """Sleep replacement that returns immediately and records delays."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
