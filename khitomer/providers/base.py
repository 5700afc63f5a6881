"""
Abstract base classes for the external collaborators.

This module defines the narrow contracts the pipeline depends on. Concrete
implementations live beside it (Jira, GitHub, OpenAI-compatible completion,
an external code agent); tests substitute ``AsyncMock(spec=...)`` doubles.

All methods are async to support non-blocking I/O with HTTP clients and
subprocesses.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from khitomer.models.domain import CodeChangeResult, ImplementationPlan, ReviewRequest, Task


class TrackerProvider(ABC):
    """Contract for the work-item tracker (Jira).

    Implementations convert tracker items into ``Task`` objects. Items
    without a resolvable repository reference are silently excluded from
    search results.
    """

    @abstractmethod
    async def search_by_status(self, status: str) -> list[Task]:
        """Return tasks currently in ``status``.

        Raises:
            TrackerError: If the search request fails.
        """
        pass

    @abstractmethod
    async def get_task(self, ticket_id: str, repository: tuple[str, str] | None = None) -> Task:
        """Return the task for a single ticket.

        Args:
            ticket_id: Ticket key
            repository: (owner, name) used when the ticket carries no
                repository reference of its own

        Raises:
            TrackerError: If the ticket cannot be read or has no repository
                reference and none was given.
        """
        pass

    @abstractmethod
    async def add_comment(self, ticket_id: str, text: str) -> None:
        """Post a comment on a ticket.

        Raises:
            TrackerError: If the comment cannot be created.
        """
        pass

    @abstractmethod
    async def transition_status(self, ticket_id: str, target_status: str) -> None:
        """Move a ticket to ``target_status`` via an available transition.

        Raises:
            TrackerError: If no transition leads to the status or the
                transition request fails.
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None


class HostingProvider(ABC):
    """Contract for the VCS hosting service (GitHub) and working copies."""

    @abstractmethod
    async def clone(self, owner: str, repo: str, branch: str, workspace: Path) -> Path:
        """Clone ``owner/repo`` at ``branch`` into ``workspace``.

        Any existing content at ``workspace`` is replaced, so re-running
        after a partial clone is safe.

        Returns:
            Path of the working copy.

        Raises:
            GitOperationError: If the clone fails.
        """
        pass

    @abstractmethod
    async def create_branch(self, workspace: Path, base: str, new: str) -> str:
        """Create (or re-checkout) ``new`` from ``base`` in the working copy.

        Returns:
            The branch name checked out.
        """
        pass

    @abstractmethod
    async def commit(self, workspace: Path, message: str) -> str | None:
        """Stage all changes and commit them.

        Returns:
            The new commit SHA, or None when there was nothing to commit.
        """
        pass

    @abstractmethod
    async def push(self, workspace: Path, branch: str) -> None:
        """Push ``branch`` to the origin remote."""
        pass

    @abstractmethod
    async def open_review_request(
        self,
        owner: str,
        repo: str,
        base: str,
        head: str,
        title: str,
        body: str,
    ) -> ReviewRequest:
        """Open a pull request from ``head`` into ``base``.

        Must not create a duplicate when an open pull request for the same
        head already exists; the existing one is returned instead.

        Raises:
            HostingError: If the API request fails.
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None


class CompletionBackend(ABC):
    """Contract for the text-completion service used for planning."""

    @abstractmethod
    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the first completion for the prompt pair.

        Raises:
            CompletionError: If the request fails or returns no choices.
        """
        pass

    async def close(self) -> None:
        """Release client resources."""
        return None


class CodeGenerator(ABC):
    """Contract for the opaque code-modification step.

    Implementations are assumed idempotent for the same plan and workspace.
    """

    @abstractmethod
    async def apply(self, task: Task, plan: ImplementationPlan, workspace: Path) -> CodeChangeResult:
        """Modify the working copy according to ``plan``."""
        pass
