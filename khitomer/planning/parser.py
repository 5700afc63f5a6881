"""
Prompt construction and response parsing for machine-generated plans.

The completion backend is asked to answer in a small line-oriented grammar::

    SUMMARY: <summary>
    STEPS:
    1. <step description> [TYPE: codegen|testing|deployment|review]
    2. ...
    FILES_MODIFY: <comma-separated list>
    FILES_CREATE: <comma-separated list>
    COMPLEXITY: <low|medium|high>

Parsing is permissive. Lines outside a known section are ignored, step lines
that yield no description are skipped, and missing sections fall back to
defaults, so a malformed answer degrades to a thinner plan rather than an
error.
"""

from khitomer.models.domain import ActivityType, Complexity, ImplementationPlan, PlanStep, Task

SYSTEM_PROMPT = (
    "You are an expert software engineer that creates detailed implementation plans "
    "for code changes based on Jira tickets."
)

_SUMMARY = "SUMMARY:"
_STEPS = "STEPS:"
_FILES_MODIFY = "FILES_MODIFY:"
_FILES_CREATE = "FILES_CREATE:"
_COMPLEXITY = "COMPLEXITY:"
_COMPLEXITY_VALUES = "|".join(level.value for level in Complexity)
_TYPE_MARKER = "[TYPE:"


def build_prompt(task: Task) -> str:
    """Render the user prompt for ``task``."""
    return (
        "Create a detailed implementation plan for the following Jira ticket:\n\n"
        f"**Ticket ID:** {task.ticket_id}\n"
        f"**Title:** {task.title}\n"
        f"**Description:** {task.description}\n"
        f"**Repository:** {task.repository_owner}/{task.repository_name}\n\n"
        "Please provide:\n"
        "1. A summary of the implementation approach\n"
        "2. A list of steps to complete the implementation\n"
        "3. Files that need to be modified or created\n"
        "4. An estimated complexity (low, medium, high)\n\n"
        "Format your response as:\n"
        f"{_SUMMARY} <summary>\n"
        f"{_STEPS}\n"
        "1. <step description> [TYPE: codegen|testing|deployment|review]\n"
        "2. ...\n"
        f"{_FILES_MODIFY} <comma-separated list>\n"
        f"{_FILES_CREATE} <comma-separated list>\n"
        f"{_COMPLEXITY} <{_COMPLEXITY_VALUES}>\n"
    )


def parse_step(line: str, order: int) -> PlanStep | None:
    """Parse one line of the STEPS section.

    Everything up to and including the first ``.`` is treated as the
    ordinal and dropped. A ``[TYPE: tag]`` suffix sets the activity type;
    a missing or empty tag means ``codegen``.

    Returns:
        The step, or None when no description remains.

    Example:
        >>> parse_step("1. Add the login route [TYPE: codegen]", 1)
        PlanStep(order=1, description='Add the login route', activity_type='codegen', parameters={})
    """
    text = line.strip()
    dot = text.find(".")
    if dot != -1:
        text = text[dot + 1 :].strip()

    activity_type = ActivityType.CODEGEN.value
    marker = text.find(_TYPE_MARKER)
    if marker != -1:
        end = text.find("]", marker)
        if end != -1:
            tag = text[marker + len(_TYPE_MARKER) : end].strip()
            if tag:
                activity_type = tag
            text = text[:marker].strip()

    if not text:
        return None
    return PlanStep(order=order, description=text, activity_type=activity_type)


def _split_files(value: str) -> tuple[str, ...]:
    return tuple(path for path in (part.strip() for part in value.split(",")) if path)


def parse_plan(text: str, ticket_id: str) -> ImplementationPlan:
    """Parse a completion into an ImplementationPlan.

    Args:
        text: Raw completion text
        ticket_id: Ticket the plan is for, used in the default summary

    Returns:
        The parsed plan. Steps are numbered 1..n in the order they appear.
    """
    summary = ""
    complexity = ""
    steps: list[PlanStep] = []
    files_to_modify: tuple[str, ...] = ()
    files_to_create: tuple[str, ...] = ()
    section = ""

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith(_SUMMARY):
            summary = line[len(_SUMMARY) :].strip()
            section = "summary"
        elif line.startswith(_STEPS):
            section = "steps"
        elif line.startswith(_FILES_MODIFY):
            files_to_modify = _split_files(line[len(_FILES_MODIFY) :])
            section = ""
        elif line.startswith(_FILES_CREATE):
            files_to_create = _split_files(line[len(_FILES_CREATE) :])
            section = ""
        elif line.startswith(_COMPLEXITY):
            complexity = line[len(_COMPLEXITY) :].strip().lower()
            section = ""
        elif section == "steps":
            step = parse_step(line, len(steps) + 1)
            if step is not None:
                steps.append(step)

    return ImplementationPlan(
        summary=summary or f"Implementation plan for {ticket_id}",
        complexity=complexity,
        steps=tuple(steps),
        files_to_modify=files_to_modify,
        files_to_create=files_to_create,
    )
