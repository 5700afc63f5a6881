"""Plan acquisition: the PlanSource contract, the completion-backed planner, and the response grammar."""

from khitomer.planning.ai_planner import CompletionPlanSource
from khitomer.planning.base import PlanSource, StaticPlanSource
from khitomer.planning.parser import SYSTEM_PROMPT, build_prompt, parse_plan, parse_step

__all__ = [
    "SYSTEM_PROMPT",
    "CompletionPlanSource",
    "PlanSource",
    "StaticPlanSource",
    "build_prompt",
    "parse_plan",
    "parse_step",
]
