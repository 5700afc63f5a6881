"""Code generator that runs an external coding agent CLI in the workspace."""

import subprocess
from pathlib import Path

import structlog

from khitomer.exceptions import CodeGenerationError, ConfigurationError
from khitomer.models.domain import CodeChangeResult, ImplementationPlan, Task
from khitomer.providers.base import CodeGenerator
from khitomer.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

DEFAULT_AGENT_COMMAND = ("claude", "--print", "--dangerously-skip-permissions")


def build_agent_prompt(task: Task, plan: ImplementationPlan) -> str:
    """Render the instructions handed to the coding agent."""
    lines = [
        f"# Task: {task.ticket_id} - {task.title}",
        "",
        "## Description",
        task.description or "(no description)",
        "",
        "## Implementation Plan",
        plan.summary,
        "",
        "## Steps",
    ]
    lines.extend(f"{step.order}. {step.description}" for step in plan.steps)

    if plan.files_to_modify:
        lines.extend(["", "## Files to Modify"])
        lines.extend(f"- {path}" for path in plan.files_to_modify)
    if plan.files_to_create:
        lines.extend(["", "## Files to Create"])
        lines.extend(f"- {path}" for path in plan.files_to_create)

    lines.extend(
        [
            "",
            "Implement the plan by editing files in the current directory.",
            "Do not commit, push, or create branches; the changes are committed for you.",
        ]
    )
    return "\n".join(lines)


def parse_porcelain(output: str) -> tuple[list[str], list[str]]:
    """Split ``git status --porcelain`` output into (modified, created) paths."""
    modified: list[str] = []
    created: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        if code == "??" or "A" in code:
            created.append(path)
        else:
            modified.append(path)
    return modified, created


class ExternalAgentCodeGenerator(CodeGenerator):
    """Runs an agent CLI (Claude Code by default) with the prompt on stdin.

    The agent edits files in place; the result is read back from the working
    copy's git status rather than from the agent's output.
    """

    def __init__(self, command: list[str] | tuple[str, ...] | None = None, timeout: float = 1800.0):
        self.command = tuple(command or DEFAULT_AGENT_COMMAND)
        self.timeout = timeout

    async def apply(self, task: Task, plan: ImplementationPlan, workspace: Path) -> CodeChangeResult:
        prompt = build_agent_prompt(task, plan)
        log.info("code_agent_started", agent=self.command[0], ticket_id=task.ticket_id, prompt_length=len(prompt))

        try:
            stdout, stderr, code = await run_command(
                *self.command,
                cwd=workspace,
                check=False,
                timeout=self.timeout,
                input_text=prompt,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"Code agent executable not found in PATH: {self.command[0]}") from e
        except TimeoutError as e:
            raise CodeGenerationError(f"Code agent timed out after {self.timeout}s") from e

        if code != 0:
            log.error("code_agent_failed", exit_code=code, stderr=stderr[-2000:])
            raise CodeGenerationError(f"Code agent exited with code {code}: {stderr.strip()[-500:]}", exit_code=code)

        try:
            status, _, _ = await run_command(
                "git", "status", "--porcelain", "--untracked-files=all", cwd=workspace
            )
        except subprocess.CalledProcessError as e:
            raise CodeGenerationError(f"Cannot read workspace status: {e.stderr}") from e

        modified, created = parse_porcelain(status)
        log.info("code_agent_complete", files_modified=len(modified), files_created=len(created))

        summary = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        return CodeChangeResult(summary=summary, files_modified=tuple(modified), files_created=tuple(created))
