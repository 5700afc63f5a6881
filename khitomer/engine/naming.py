"""Deterministic names derived from tasks: run ids, branches, commit and review text."""

from pathlib import Path

from khitomer.models.domain import ImplementationPlan, Task

DEFAULT_BRANCH_PREFIX = "khitomer"
BRANCH_TITLE_LENGTH = 30


def make_run_id(ticket_id: str, repository_name: str) -> str:
    """Run identifier for a ticket/repository pair.

    Re-dispatching the same ticket maps to the same run, which is what lets
    the runtime refuse a second concurrent pipeline.

    Example:
        >>> make_run_id("PROJ-1", "app")
        'implementation-PROJ-1-app'
    """
    return f"implementation-{ticket_id}-{repository_name}"


def truncate(text: str, max_length: int) -> str:
    return text if len(text) <= max_length else text[:max_length]


def sanitize_branch_name(text: str) -> str:
    """Keep ``[A-Za-z0-9_-]``, turn spaces into ``-``, drop everything else."""
    chars = []
    for char in text:
        if char.isascii() and (char.isalnum() or char in "-_"):
            chars.append(char)
        elif char == " ":
            chars.append("-")
    return "".join(chars)


def generate_branch_name(ticket_id: str, title: str, prefix: str = DEFAULT_BRANCH_PREFIX) -> str:
    """Feature branch name for a ticket.

    Two titles that agree on their first 30 characters produce the same
    branch; no collision handling is attempted.

    Example:
        >>> generate_branch_name("PROJ-1", "Fix login bug!!")
        'khitomer/PROJ-1-Fix-login-bug'
    """
    return f"{prefix}/{ticket_id}-{sanitize_branch_name(truncate(title, BRANCH_TITLE_LENGTH))}"


def review_title(task: Task) -> str:
    return f"{task.ticket_id}: {task.title}"


def review_description(task: Task, plan: ImplementationPlan) -> str:
    """Markdown body of the review request."""
    body = f"## Implementation for {task.ticket_id}\n\n"
    body += f"**Jira Ticket:** {task.ticket_id}\n"
    body += f"**Description:** {task.description}\n\n"
    body += "## Implementation Plan\n\n"
    body += f"{plan.summary}\n\n"
    body += "## Steps\n\n"
    for index, step in enumerate(plan.steps, start=1):
        body += f"{index}. {step.description}\n"
    return body


def commit_message(task: Task, change_summary: str = "") -> str:
    message = f"{task.ticket_id}: {task.title}"
    if change_summary.strip():
        message += f"\n\n{change_summary.strip()}"
    return message


def tracker_comment(review_url: str) -> str:
    return f"Pull request created: {review_url}"


def workspace_path(root: str | Path, owner: str, repo: str, run_id: str) -> Path:
    """Per-run working copy location under ``root``."""
    return Path(root) / owner / repo / run_id
