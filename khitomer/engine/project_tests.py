"""
Project test-suite detection and execution.

A working copy is matched against a small marker table; the first marker
present whose runner is on PATH decides the command. Anything unrecognized
counts as passed, so repositories without a supported toolchain still get
a review request.
"""

import shutil
from pathlib import Path

import structlog

from khitomer.models.domain import TestRunResult
from khitomer.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

# (project type, marker files, command)
PROJECT_MARKERS: tuple[tuple[str, tuple[str, ...], tuple[str, ...]], ...] = (
    ("go", ("go.mod",), ("go", "test", "./...")),
    ("python", ("pyproject.toml", "setup.py", "pytest.ini"), ("python", "-m", "pytest", "-q")),
    ("node", ("package.json",), ("npm", "test")),
    ("rust", ("Cargo.toml",), ("cargo", "test")),
)

MAX_OUTPUT_CHARS = 20_000


def detect_project(workspace: Path) -> tuple[str, tuple[str, ...]] | None:
    """Return (project type, test command) for ``workspace``, or None."""
    for project_type, markers, command in PROJECT_MARKERS:
        if not any((workspace / marker).exists() for marker in markers):
            continue
        if shutil.which(command[0]) is None:
            log.info("test_runner_not_found", project_type=project_type, runner=command[0])
            continue
        return project_type, command
    return None


async def run_project_tests(workspace: Path, timeout: float = 900.0) -> TestRunResult:
    """Run the detected test suite in ``workspace``.

    A failing suite or a timeout is reported as ``passed=False`` rather
    than raised.
    """
    detected = detect_project(Path(workspace))
    if detected is None:
        log.info("no_test_suite_detected", path=str(workspace))
        return TestRunResult(passed=True, output="No recognizable project type; tests skipped")

    project_type, command = detected
    log.info("running_tests", project_type=project_type, command=" ".join(command), path=str(workspace))

    try:
        stdout, stderr, code = await run_command(*command, cwd=workspace, check=False, timeout=timeout)
    except TimeoutError:
        log.warning("tests_timed_out", project_type=project_type, timeout=timeout)
        return TestRunResult(
            passed=False,
            failures=(f"Test run exceeded {timeout}s",),
            project_type=project_type,
            command=command,
        )

    output = (stdout + stderr)[-MAX_OUTPUT_CHARS:]
    if code != 0:
        log.warning("tests_failed", project_type=project_type, exit_code=code)
        return TestRunResult(
            passed=False,
            output=output,
            failures=(f"{' '.join(command)} exited with code {code}",),
            project_type=project_type,
            command=command,
        )

    log.info("tests_passed", project_type=project_type)
    return TestRunResult(passed=True, output=output, project_type=project_type, command=command)
