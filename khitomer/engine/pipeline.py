"""
The implementation pipeline: a linear state machine of seven activities.

Steps run strictly in order, each as an activity the runtime executes with
the step's ``ActivityOptions`` (per-attempt timeout plus retry policy)::

    clone_repository -> create_branch -> apply_changes -> run_tests
        -> commit_and_push -> open_review_request -> update_tracker

Failure classification:
    Fatal steps end the run as FAILED with that step's cause and nothing
    after them runs. ``run_tests`` (failing suite or error) and
    ``update_tracker`` are tolerated: the failure is recorded in the step
    history and the run continues.

Cancellation:
    Checked between steps and, by the runtime, between retry attempts. An
    in-flight attempt always finishes; completed side effects (a pushed
    branch, an open pull request) are not undone.

The pipeline never raises for step failures; ``run`` always returns a
``PipelineResult``.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Generic, TypeVar

import structlog

from khitomer.engine.activities import PipelineActivities
from khitomer.engine.naming import (
    DEFAULT_BRANCH_PREFIX,
    commit_message,
    generate_branch_name,
    review_description,
    review_title,
)
from khitomer.exceptions import (
    NON_RETRYABLE_ERRORS,
    ConfigurationError,
    FatalStepError,
    RunCancelledError,
    StepError,
    ToleratedStepError,
)
from khitomer.models.domain import (
    CodeChangeResult,
    PipelineInput,
    PipelineResult,
    RepositoryInfo,
    ReviewRequest,
    RunStatus,
    StepRecord,
    StepStatus,
    TestRunResult,
)
from khitomer.utils.retry import RetryPolicy

log = structlog.get_logger(__name__)

T = TypeVar("T")

CLONE_REPOSITORY = "clone_repository"
CREATE_BRANCH = "create_branch"
APPLY_CHANGES = "apply_changes"
RUN_TESTS = "run_tests"
COMMIT_AND_PUSH = "commit_and_push"
OPEN_REVIEW_REQUEST = "open_review_request"
UPDATE_TRACKER = "update_tracker"

STEP_ORDER = (
    CLONE_REPOSITORY,
    CREATE_BRANCH,
    APPLY_CHANGES,
    RUN_TESTS,
    COMMIT_AND_PUSH,
    OPEN_REVIEW_REQUEST,
    UPDATE_TRACKER,
)

TOLERATED_STEPS = frozenset({RUN_TESTS, UPDATE_TRACKER})


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        initial_interval=1.0,
        backoff_coefficient=2.0,
        maximum_interval=60.0,
        maximum_attempts=3,
        non_retryable=NON_RETRYABLE_ERRORS,
    )


@dataclass(frozen=True)
class ActivityOptions:
    """Execution options the runtime applies to one activity.

    Attributes:
        start_to_close_timeout: Seconds allowed for a single attempt.
        retry_policy: Backoff and attempt limits across attempts.
    """

    start_to_close_timeout: float = 600.0
    retry_policy: RetryPolicy = field(default_factory=default_retry_policy)


DEFAULT_ACTIVITY_OPTIONS = ActivityOptions()


@dataclass
class ActivityResult(Generic[T]):
    """What the runtime reports after executing an activity with its options."""

    value: T | None = None
    attempts: int = 0
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WorkflowContext(ABC):
    """Runtime services available to a running pipeline.

    The runtime owns retries, timeouts, persistence of progress, and the
    cancellation flag; the pipeline only declares what to run and with
    which options.
    """

    run_id: str

    @abstractmethod
    async def execute_activity(
        self,
        name: str,
        activity: Callable[[], Awaitable[T]],
        options: ActivityOptions,
    ) -> ActivityResult[T]:
        """Run ``activity`` under ``options`` and report the outcome.

        Activity exceptions are captured in the result, not raised. When
        cancellation is requested before a retry, the result carries a
        ``RunCancelledError`` instead of the last activity error.
        """
        pass

    @abstractmethod
    async def step_started(self, name: str) -> None:
        """Mark ``name`` as the current step."""
        pass

    @abstractmethod
    async def record_step(self, record: StepRecord) -> None:
        """Append ``record`` to the run's step history."""
        pass

    @abstractmethod
    async def is_cancel_requested(self) -> bool:
        """Whether cancellation of this run was requested."""
        pass


@dataclass
class _RunState:
    """Values produced by earlier steps and consumed by later ones."""

    run_id: str
    input: PipelineInput
    repository: RepositoryInfo
    workspace: Path | None = None
    changes: CodeChangeResult = field(default_factory=CodeChangeResult)
    review_request: ReviewRequest | None = None


@dataclass(frozen=True)
class StepSpec:
    """One pipeline step.

    ``activity`` performs the side effect and is retried by the runtime.
    ``apply`` runs once on the activity's value, updates the run state,
    and returns the step output to record; it raises ``StepError`` to mark
    the step failed without a retry.
    """

    name: str
    activity: Callable[[_RunState], Awaitable[Any]]
    apply: Callable[[_RunState, Any], dict[str, Any]]
    tolerated: bool = False


class ImplementationPipeline:
    """Ticket-to-review-request pipeline.

    Example:
        >>> pipeline = ImplementationPipeline(activities)
        >>> result = await pipeline.run(ctx, PipelineInput(task, plan, RepositoryInfo.for_task(task)))
        >>> result.status
        <RunStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        activities: PipelineActivities,
        options: ActivityOptions = DEFAULT_ACTIVITY_OPTIONS,
        step_options: dict[str, ActivityOptions] | None = None,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
    ) -> None:
        self.activities = activities
        self.options = options
        self.step_options = dict(step_options or {})
        self.branch_prefix = branch_prefix
        unknown = set(self.step_options) - set(STEP_ORDER)
        if unknown:
            raise ConfigurationError(f"Unknown pipeline steps in step options: {sorted(unknown)}")

    def options_for(self, step: str) -> ActivityOptions:
        return self.step_options.get(step, self.options)

    def steps(self) -> list[StepSpec]:
        return [
            StepSpec(CLONE_REPOSITORY, self._clone, self._after_clone),
            StepSpec(CREATE_BRANCH, self._create_branch, self._after_create_branch),
            StepSpec(APPLY_CHANGES, self._apply_changes, self._after_apply_changes),
            StepSpec(RUN_TESTS, self._run_tests, self._after_run_tests, tolerated=True),
            StepSpec(COMMIT_AND_PUSH, self._commit_and_push, self._after_commit_and_push),
            StepSpec(OPEN_REVIEW_REQUEST, self._open_review_request, self._after_open_review_request),
            StepSpec(UPDATE_TRACKER, self._update_tracker, self._after_update_tracker, tolerated=True),
        ]

    async def run(self, ctx: WorkflowContext, pipeline_input: PipelineInput) -> PipelineResult:
        """Execute every step in order and return the terminal result."""
        ticket_id = pipeline_input.task.ticket_id
        state = _RunState(run_id=ctx.run_id, input=pipeline_input, repository=pipeline_input.repository)
        records: list[StepRecord] = []
        log.info("pipeline_started", run_id=ctx.run_id, ticket_id=ticket_id, repository=state.repository.full_name)

        try:
            for spec in self.steps():
                if await ctx.is_cancel_requested():
                    raise RunCancelledError(ctx.run_id, reason=f"cancelled before {spec.name}")
                record = await self._execute_step(ctx, spec, state)
                records.append(record)
                if record.status is StepStatus.CANCELLED:
                    raise RunCancelledError(ctx.run_id, reason=record.error)
                if record.status is StepStatus.FAILED:
                    raise FatalStepError(record.error or "Step failed", step=spec.name, ticket_id=ticket_id)
        except FatalStepError as e:
            log.error("pipeline_failed", run_id=ctx.run_id, step=e.step, error=e.message)
            return PipelineResult(
                status=RunStatus.FAILED,
                failed_step=e.step,
                error=e.message,
                steps=records,
            )
        except RunCancelledError as e:
            log.info("pipeline_cancelled", run_id=ctx.run_id, reason=e.reason)
            return PipelineResult(status=RunStatus.CANCELLED, error=e.message, steps=records)

        review_url = state.review_request.url if state.review_request else None
        log.info("pipeline_succeeded", run_id=ctx.run_id, review_url=review_url)
        return PipelineResult(status=RunStatus.SUCCEEDED, review_request=state.review_request, steps=records)

    async def _execute_step(self, ctx: WorkflowContext, spec: StepSpec, state: _RunState) -> StepRecord:
        """Run one step and record its outcome; the caller decides what a failure means."""
        ticket_id = state.input.task.ticket_id
        await ctx.step_started(spec.name)
        result = await ctx.execute_activity(spec.name, lambda: spec.activity(state), self.options_for(spec.name))

        if isinstance(result.error, RunCancelledError):
            record = StepRecord(spec.name, StepStatus.CANCELLED, attempts=result.attempts, error=result.error.reason)
            await ctx.record_step(record)
            return record

        try:
            if not result.ok:
                raise StepError(str(result.error) or type(result.error).__name__, step=spec.name, ticket_id=ticket_id)
            output = spec.apply(state, result.value)
        except StepError as e:
            status = StepStatus.TOLERATED_FAILURE if spec.tolerated else StepStatus.FAILED
            record = StepRecord(spec.name, status, attempts=result.attempts, error=e.message)
            await ctx.record_step(record)
            if spec.tolerated:
                log.warning("step_failure_tolerated", step=spec.name, error=e.message)
            return record

        record = StepRecord(spec.name, StepStatus.COMPLETED, attempts=result.attempts, output=output)
        await ctx.record_step(record)
        log.info("step_completed", step=spec.name, attempts=result.attempts)
        return record

    async def _clone(self, state: _RunState) -> Path:
        return await self.activities.clone_repository(state.run_id, state.repository)

    def _after_clone(self, state: _RunState, workspace: Path) -> dict[str, Any]:
        state.workspace = Path(workspace)
        return {"workspace": str(workspace)}

    async def _create_branch(self, state: _RunState) -> str:
        task = state.input.task
        branch = generate_branch_name(task.ticket_id, task.title, self.branch_prefix)
        return await self.activities.create_branch(self._workspace(state), state.repository.base_branch, branch)

    def _after_create_branch(self, state: _RunState, branch: str) -> dict[str, Any]:
        state.repository = replace(state.repository, feature_branch=branch)
        return {"branch": branch}

    async def _apply_changes(self, state: _RunState) -> CodeChangeResult:
        return await self.activities.apply_changes(state.input.task, state.input.plan, self._workspace(state))

    def _after_apply_changes(self, state: _RunState, changes: CodeChangeResult) -> dict[str, Any]:
        state.changes = changes
        return {"files_modified": list(changes.files_modified), "files_created": list(changes.files_created)}

    async def _run_tests(self, state: _RunState) -> TestRunResult:
        return await self.activities.run_tests(self._workspace(state))

    def _after_run_tests(self, state: _RunState, result: TestRunResult) -> dict[str, Any]:
        if not result.passed:
            raise ToleratedStepError(
                "; ".join(result.failures) or "Tests failed",
                step=RUN_TESTS,
                ticket_id=state.input.task.ticket_id,
            )
        return {"passed": True, "project_type": result.project_type}

    async def _commit_and_push(self, state: _RunState) -> str | None:
        message = commit_message(state.input.task, state.changes.summary)
        return await self.activities.commit_and_push(self._workspace(state), state.repository.feature_branch, message)

    def _after_commit_and_push(self, state: _RunState, sha: str | None) -> dict[str, Any]:
        return {"commit": sha, "branch": state.repository.feature_branch}

    async def _open_review_request(self, state: _RunState) -> ReviewRequest:
        task = state.input.task
        return await self.activities.open_review_request(
            state.repository,
            review_title(task),
            review_description(task, state.input.plan),
        )

    def _after_open_review_request(self, state: _RunState, review: ReviewRequest) -> dict[str, Any]:
        state.review_request = review
        return {"number": review.number, "url": review.url}

    async def _update_tracker(self, state: _RunState) -> None:
        # open_review_request is fatal, so the review request is always set here
        assert state.review_request is not None
        await self.activities.update_tracker(state.input.task.ticket_id, state.review_request)

    def _after_update_tracker(self, state: _RunState, _: None) -> dict[str, Any]:
        return {}

    @staticmethod
    def _workspace(state: _RunState) -> Path:
        if state.workspace is None:
            raise FatalStepError("Workspace is not available", step=CLONE_REPOSITORY)
        return state.workspace
