"""Pipeline engine: orchestration loop, pipeline state machine, execution runtime, run state."""

from khitomer.engine.activities import PipelineActivities
from khitomer.engine.naming import generate_branch_name, make_run_id
from khitomer.engine.orchestrator import Orchestrator
from khitomer.engine.pipeline import (
    DEFAULT_ACTIVITY_OPTIONS,
    STEP_ORDER,
    ActivityOptions,
    ActivityResult,
    ImplementationPipeline,
    WorkflowContext,
)
from khitomer.engine.runtime import ExecutionRuntime, LocalRuntime, LocalWorkflowContext
from khitomer.engine.state_manager import RunStateStore

__all__ = [
    "DEFAULT_ACTIVITY_OPTIONS",
    "STEP_ORDER",
    "ActivityOptions",
    "ActivityResult",
    "ExecutionRuntime",
    "ImplementationPipeline",
    "LocalRuntime",
    "LocalWorkflowContext",
    "Orchestrator",
    "PipelineActivities",
    "RunStateStore",
    "WorkflowContext",
    "generate_branch_name",
    "make_run_id",
]
