"""Custom exception hierarchy for the khitomer task pipeline.

The hierarchy separates failures by how the system reacts to them: transient
collaborator failures are retried, fatal step failures end a run, tolerated
step failures are recorded and skipped, and planning failures only abort the
dispatch of a single task.

Exception Hierarchy:
    KhitomerError (base)
    ├── ConfigurationError
    ├── ExternalServiceError (transient)
    │   ├── TrackerError
    │   ├── HostingError
    │   └── CompletionError
    ├── GitOperationError
    ├── CodeGenerationError
    ├── PlanningError
    ├── StepError
    │   ├── FatalStepError
    │   └── ToleratedStepError
    ├── RunNotFoundError
    └── RunCancelledError

Example Usage:
    >>> from khitomer.exceptions import PlanningError
    >>> try:
    ...     plan = await plan_source.generate_plan(task)
    ... except PlanningError as e:
    ...     log.error("planning_failed", ticket_id=e.ticket_id, error=e.message)
"""


class KhitomerError(Exception):
    """Base exception for all khitomer errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(KhitomerError):
    """Configuration-related errors.

    Raised at startup when configuration files are missing or invalid, or
    when required credentials and URLs are not provided. Never retried.
    """

    pass


class ExternalServiceError(KhitomerError):
    """Failure talking to an external collaborator.

    Covers network errors, HTTP error statuses, and timeouts on the
    tracker, the hosting service, or the completion backend. Pipeline
    activities let these propagate so the runtime's retry policy applies;
    the poller logs them and moves on to the next status.

    Client errors (4xx other than 408 and 429) and failures raised with
    ``transient=False`` are deterministic: retry policies fail fast on them.

    Attributes:
        status_code: HTTP status code, when the failure came from a response
        response_text: Response body, when available
        transient: Whether another attempt could succeed
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_text: str | None = None,
        transient: bool | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
            response_text: Response body text (if applicable)
            transient: Override the status-code based classification
        """
        self.status_code = status_code
        self.response_text = response_text
        if transient is None:
            transient = status_code is None or status_code >= 500 or status_code in (408, 429)
        self.transient = transient

        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"

        super().__init__(full_message)
        self.message = message


class TrackerError(ExternalServiceError):
    """Tracker (Jira) API call failed."""

    pass


class HostingError(ExternalServiceError):
    """VCS hosting (GitHub) API call failed."""

    pass


class CompletionError(ExternalServiceError):
    """Completion backend call failed."""

    pass


class GitOperationError(KhitomerError):
    """A git command failed in a run workspace.

    Attributes:
        command: The git subcommand that failed (e.g. "push")
        stderr: Captured standard error, with credentials masked
    """

    def __init__(self, message: str, command: str | None = None, stderr: str | None = None) -> None:
        self.command = command
        self.stderr = stderr
        full_message = message
        if stderr:
            full_message = f"{message}: {stderr.strip()}"
        super().__init__(full_message)
        self.message = message


class CodeGenerationError(KhitomerError):
    """The code generator failed to modify the workspace.

    Attributes:
        exit_code: Exit code of the agent process, when it ran
    """

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(message)


class PlanningError(KhitomerError):
    """Plan generation failed for a task.

    Raised when the completion backend errors or returns nothing usable.
    Aborts the dispatch of that one task only.

    Attributes:
        ticket_id: Ticket the plan was requested for
    """

    def __init__(self, message: str, ticket_id: str | None = None) -> None:
        self.ticket_id = ticket_id
        full_message = message if not ticket_id else f"{message} (ticket: {ticket_id})"
        super().__init__(full_message)
        self.message = message


class StepError(KhitomerError):
    """A pipeline step failed after its retries were exhausted.

    Attributes:
        step: Name of the pipeline step
        ticket_id: Ticket the run belongs to
    """

    def __init__(self, message: str, step: str | None = None, ticket_id: str | None = None) -> None:
        self.step = step
        self.ticket_id = ticket_id

        parts = [message]
        if step:
            parts.append(f"step: {step}")
        if ticket_id:
            parts.append(f"ticket: {ticket_id}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        self.message = message


class FatalStepError(StepError):
    """Failure of a step that terminates the run as failed."""

    pass


class ToleratedStepError(StepError):
    """Failure of a step that is recorded but does not end the run."""

    pass


class RunNotFoundError(KhitomerError):
    """No pipeline run is known under the requested identifier."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


class RunCancelledError(KhitomerError):
    """Raised inside a run when cancellation was requested between steps."""

    def __init__(self, run_id: str, reason: str | None = None) -> None:
        self.run_id = run_id
        self.reason = reason
        super().__init__(f"Run {run_id} cancelled" + (f": {reason}" if reason else ""))


# Failures that no retry can fix; activity retry policies fail fast on these.
NON_RETRYABLE_ERRORS: tuple[type[KhitomerError], ...] = (ConfigurationError, PlanningError)
