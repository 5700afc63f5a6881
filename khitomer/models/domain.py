"""
Domain models for the task pipeline.

This module contains the data classes and enums representing the business
entities that flow through the system: tracker tasks, implementation plans,
repository coordinates, review requests, and the records a pipeline run
produces. Provider-specific payloads (Jira issues, GitHub pull requests) are
converted into these models at the provider boundary.

Example:
    Creating a task as the tracker provider would::

        task = Task(
            ticket_id="PROJ-42",
            title="Fix login bug",
            description="Users cannot log in with SSO",
            repository_owner="org",
            repository_name="app",
        )
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class Complexity(str, Enum):
    """Estimated complexity vocabulary used in plan prompts."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ActivityType(str, Enum):
    """Known activity-type tags for plan steps.

    The vocabulary is open: plans may carry tags outside this set, so
    ``PlanStep.activity_type`` is a plain string and these members are only
    the well-known values.
    """

    CODEGEN = "codegen"
    TESTING = "testing"
    DEPLOYMENT = "deployment"
    REVIEW = "review"


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run.

    A run starts RUNNING and reaches exactly one terminal state, which is
    never changed afterwards.
    """

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StepStatus(str, Enum):
    """Outcome recorded for one pipeline step."""

    COMPLETED = "completed"
    """Activity returned normally."""

    FAILED = "failed"
    """Fatal step failed after retries; the run failed with it."""

    TOLERATED_FAILURE = "tolerated_failure"
    """Step failed but the run continued (tests, tracker update)."""

    CANCELLED = "cancelled"
    """Cancellation was requested while the step was between attempts."""


@dataclass(frozen=True)
class Task:
    """A unit of work extracted from the tracker.

    Created by the tracker provider when a matching item is observed and
    never mutated afterwards. The tracker remains the source of truth.
    """

    ticket_id: str
    """Tracker key (e.g. "PROJ-42"); unique across tasks."""

    title: str
    """Ticket summary line."""

    description: str = ""
    """Ticket body text; may be empty."""

    repository_owner: str = ""
    """Owner (user or organization) of the target repository."""

    repository_name: str = ""
    """Name of the target repository."""

    base_branch: str = "main"
    """Branch the feature branch is created from and the review targets."""

    assignee: str = ""
    """Display name of the assignee, empty when unassigned."""

    url: str = ""
    """Browse URL of the ticket in the tracker UI."""

    repository_url: str = ""
    """Web URL of the target repository."""

    status: str = ""
    """Tracker status the item was found in."""

    @property
    def repository_full_name(self) -> str:
        return f"{self.repository_owner}/{self.repository_name}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        return cls(**data)


@dataclass(frozen=True)
class PlanStep:
    """One ordered step of an implementation plan."""

    order: int
    description: str
    activity_type: str = ActivityType.CODEGEN.value
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ImplementationPlan:
    """Structured plan derived from a task by the plan source.

    Created once per task and consumed read-only by the pipeline.
    """

    summary: str
    """Free-text description of the approach."""

    complexity: str = ""
    """Estimated complexity as given by the planner (normally low/medium/high)."""

    steps: tuple[PlanStep, ...] = ()
    """Steps in execution order, numbered from 1."""

    files_to_modify: tuple[str, ...] = ()
    """Existing repository paths the plan expects to change."""

    files_to_create: tuple[str, ...] = ()
    """New repository paths the plan expects to add."""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImplementationPlan":
        return cls(
            summary=data.get("summary", ""),
            complexity=data.get("complexity", ""),
            steps=tuple(PlanStep(**step) for step in data.get("steps", ())),
            files_to_modify=tuple(data.get("files_to_modify", ())),
            files_to_create=tuple(data.get("files_to_create", ())),
        )


@dataclass(frozen=True)
class RepositoryInfo:
    """Coordinates of the repository a run operates on.

    ``feature_branch`` is empty until the branch-creation step assigns it;
    the pipeline derives a new instance with ``dataclasses.replace`` rather
    than mutating in place.
    """

    owner: str
    name: str
    base_branch: str = "main"
    feature_branch: str = ""
    clone_url: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def for_task(cls, task: Task) -> "RepositoryInfo":
        """Build repository coordinates from a task."""
        return cls(
            owner=task.repository_owner,
            name=task.repository_name,
            base_branch=task.base_branch or "main",
            clone_url=task.repository_url or f"https://github.com/{task.repository_full_name}",
        )


@dataclass(frozen=True)
class ReviewRequest:
    """Handle for an opened review request (a GitHub pull request)."""

    number: int
    url: str
    title: str
    body: str = ""
    state: str = "open"


@dataclass(frozen=True)
class CodeChangeResult:
    """What the code generator reports after modifying a workspace."""

    summary: str = ""
    files_modified: tuple[str, ...] = ()
    files_created: tuple[str, ...] = ()


@dataclass(frozen=True)
class TestRunResult:
    """Outcome of running a project's test suite.

    ``passed`` is True when tests succeeded or when no recognizable project
    type was found (``project_type`` is then None).
    """

    __test__ = False

    passed: bool
    output: str = ""
    failures: tuple[str, ...] = ()
    project_type: str | None = None
    command: tuple[str, ...] = ()


@dataclass(frozen=True)
class PipelineInput:
    """Everything a pipeline run needs, fixed at start time."""

    task: Task
    plan: ImplementationPlan
    repository: RepositoryInfo

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineInput":
        return cls(
            task=Task.from_dict(data["task"]),
            plan=ImplementationPlan.from_dict(data["plan"]),
            repository=RepositoryInfo(**data["repository"]),
        )


@dataclass
class StepRecord:
    """History entry for one executed pipeline step."""

    name: str
    status: StepStatus
    attempts: int = 0
    error: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "error": self.error,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepRecord":
        return cls(
            name=data["name"],
            status=StepStatus(data["status"]),
            attempts=data.get("attempts", 0),
            error=data.get("error"),
            output=data.get("output") or {},
        )


@dataclass
class PipelineResult:
    """Structured terminal outcome returned by the pipeline.

    The pipeline never raises to its caller for step failures; it returns
    one of these instead.
    """

    status: RunStatus
    review_request: ReviewRequest | None = None
    failed_step: str | None = None
    error: str | None = None
    steps: list[StepRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED


@dataclass(frozen=True)
class RunHandle:
    """Returned by ``ExecutionRuntime.start``.

    ``attached`` is True when a run with the same identifier already existed
    and no new pipeline was started.
    """

    run_id: str
    attached: bool = False


@dataclass
class RunSnapshot:
    """Point-in-time view of a pipeline run, as reported by the runtime."""

    run_id: str
    status: RunStatus
    ticket_id: str = ""
    repository: str = ""
    current_step: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
    review_request: ReviewRequest | None = None
    failed_step: str | None = None
    error: str | None = None
    cancel_requested: bool = False
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "ticket_id": self.ticket_id,
            "repository": self.repository,
            "current_step": self.current_step,
            "steps": [step.to_dict() for step in self.steps],
            "review_request": asdict(self.review_request) if self.review_request else None,
            "failed_step": self.failed_step,
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunSnapshot":
        review = data.get("review_request")
        return cls(
            run_id=data["run_id"],
            status=RunStatus(data["status"]),
            ticket_id=data.get("ticket_id", ""),
            repository=data.get("repository", ""),
            current_step=data.get("current_step"),
            steps=[StepRecord.from_dict(step) for step in data.get("steps", [])],
            review_request=ReviewRequest(**review) if review else None,
            failed_step=data.get("failed_step"),
            error=data.get("error"),
            cancel_requested=data.get("cancel_requested", False),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )
