"""Core domain models for the task pipeline.

Key Models:
    - Task: Tracker work item with its target repository
    - ImplementationPlan / PlanStep: Machine-generated plan for a task
    - RepositoryInfo: Repository coordinates for a run
    - ReviewRequest: Opened pull request handle
    - PipelineInput / PipelineResult: Pipeline run input and outcome
    - RunSnapshot / StepRecord: Runtime view of a run and its step history

Example:
    >>> from khitomer.models import Task, RepositoryInfo
    >>> task = Task(ticket_id="PROJ-1", title="Fix login", repository_owner="org", repository_name="app")
    >>> RepositoryInfo.for_task(task).full_name
    'org/app'
"""

from khitomer.models.domain import (
    ActivityType,
    CodeChangeResult,
    Complexity,
    ImplementationPlan,
    PipelineInput,
    PipelineResult,
    PlanStep,
    RepositoryInfo,
    ReviewRequest,
    RunHandle,
    RunSnapshot,
    RunStatus,
    StepRecord,
    StepStatus,
    Task,
    TestRunResult,
)

__all__ = [
    "ActivityType",
    "CodeChangeResult",
    "Complexity",
    "ImplementationPlan",
    "PipelineInput",
    "PipelineResult",
    "PlanStep",
    "RepositoryInfo",
    "ReviewRequest",
    "RunHandle",
    "RunSnapshot",
    "RunStatus",
    "StepRecord",
    "StepStatus",
    "Task",
    "TestRunResult",
]
