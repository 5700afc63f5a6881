"""Type definitions for persisted run state.

These TypedDicts describe the JSON documents ``RunStateStore`` writes to
``<state_directory>/<run_id>.json``. They mirror ``RunSnapshot`` and
``StepRecord`` in plain-JSON form so a run stays readable by any process
that shares the state directory (for example ``khitomer status``).

Example:
    A run that failed at the push step::

        state: RunState = {
            "run_id": "implementation-PROJ-42-app",
            "status": "failed",
            "ticket_id": "PROJ-42",
            "repository": "org/app",
            "current_step": None,
            "steps": [
                {"name": "clone_repository", "status": "completed", "attempts": 1, "error": None, "output": {}},
                ...
                {"name": "commit_and_push", "status": "failed", "attempts": 3, "error": "push failed", "output": {}},
            ],
            "review_request": None,
            "failed_step": "commit_and_push",
            "error": "git push failed",
            "cancel_requested": False,
            "input": {...},
            "created_at": "2024-01-15T10:30:00+00:00",
            "updated_at": "2024-01-15T10:42:10+00:00",
        }
"""

from typing import Any, NotRequired, TypedDict


class StepState(TypedDict):
    """One entry of a run's step history."""

    name: str
    """Pipeline step name, e.g. "clone_repository"."""

    status: str
    """One of "completed", "failed", "tolerated_failure"."""

    attempts: int
    """Attempts made, including the successful one."""

    error: str | None
    """Last error message when the step did not complete."""

    output: dict[str, Any]
    """Step-specific values (workspace path, branch, commit sha, ...)."""


class ReviewRequestState(TypedDict):
    number: int
    url: str
    title: str
    body: str
    state: str


class RunState(TypedDict):
    """Complete persisted state of a pipeline run."""

    run_id: str
    """Deterministic id, "implementation-<ticket>-<repo>"."""

    status: str
    """One of "running", "succeeded", "failed", "cancelled".

    Never changes once a terminal value is written.
    """

    ticket_id: str
    repository: str
    """Repository full name, "owner/repo"."""

    current_step: str | None
    """Step currently executing; None before the first step and after the end."""

    steps: list[StepState]
    review_request: ReviewRequestState | None
    failed_step: str | None
    error: str | None

    cancel_requested: bool
    """Set by ``cancel``; observed by the run between steps."""

    created_at: str
    updated_at: str

    input: NotRequired[dict[str, Any]]
    """Serialized PipelineInput the run was started with."""

    cancel_reason: NotRequired[str]


__all__ = ["ReviewRequestState", "RunState", "StepState"]
