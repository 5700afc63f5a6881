"""
Pipeline activities: the side-effecting steps of an implementation run.

Each method performs one externally visible operation through a provider
and is safe to re-run, which is what lets the runtime retry it:

- ``clone_repository`` replaces any partial workspace
- ``create_branch`` re-checks-out the same deterministic branch
- ``commit_and_push`` is a no-op commit on an unchanged tree
- ``open_review_request`` returns the already-open pull request

Errors propagate unchanged; retry and fatal/tolerated classification belong
to the runtime and the pipeline.
"""

from pathlib import Path

import structlog

from khitomer.engine.naming import tracker_comment, workspace_path
from khitomer.engine.project_tests import run_project_tests
from khitomer.models.domain import (
    CodeChangeResult,
    ImplementationPlan,
    RepositoryInfo,
    ReviewRequest,
    Task,
    TestRunResult,
)
from khitomer.providers.base import CodeGenerator, HostingProvider, TrackerProvider

log = structlog.get_logger(__name__)


class PipelineActivities:
    """Bundle of collaborators used by the pipeline steps.

    Attributes:
        tracker: Tracker provider for the final comment
        hosting: Hosting provider for git and review requests
        code_generator: Opaque code-modification collaborator
        workspace_root: Root under which per-run workspaces are created
        test_timeout: Seconds allowed for one project test run
        review_status: Tracker status applied after commenting, if set
    """

    def __init__(
        self,
        tracker: TrackerProvider,
        hosting: HostingProvider,
        code_generator: CodeGenerator,
        workspace_root: str | Path,
        test_timeout: float = 900.0,
        review_status: str | None = None,
    ) -> None:
        self.tracker = tracker
        self.hosting = hosting
        self.code_generator = code_generator
        self.workspace_root = Path(workspace_root)
        self.test_timeout = test_timeout
        self.review_status = review_status

    async def clone_repository(self, run_id: str, repository: RepositoryInfo) -> Path:
        workspace = workspace_path(self.workspace_root, repository.owner, repository.name, run_id)
        log.info("clone_repository", repository=repository.full_name, branch=repository.base_branch)
        return await self.hosting.clone(repository.owner, repository.name, repository.base_branch, workspace)

    async def create_branch(self, workspace: Path, base_branch: str, branch_name: str) -> str:
        log.info("create_branch", branch=branch_name, base=base_branch)
        return await self.hosting.create_branch(workspace, base_branch, branch_name)

    async def apply_changes(self, task: Task, plan: ImplementationPlan, workspace: Path) -> CodeChangeResult:
        log.info("apply_changes", steps=len(plan.steps))
        return await self.code_generator.apply(task, plan, workspace)

    async def run_tests(self, workspace: Path) -> TestRunResult:
        return await run_project_tests(workspace, timeout=self.test_timeout)

    async def commit_and_push(self, workspace: Path, branch: str, message: str) -> str | None:
        """Commit everything and push ``branch``. Returns the commit sha, if any.

        The branch is pushed even when there was nothing new to commit so a
        retry after a failed push still publishes the earlier commit.
        """
        sha = await self.hosting.commit(workspace, message)
        await self.hosting.push(workspace, branch)
        log.info("commit_and_push", branch=branch, sha=sha)
        return sha

    async def open_review_request(self, repository: RepositoryInfo, title: str, body: str) -> ReviewRequest:
        return await self.hosting.open_review_request(
            repository.owner,
            repository.name,
            repository.base_branch,
            repository.feature_branch,
            title,
            body,
        )

    async def update_tracker(self, ticket_id: str, review: ReviewRequest) -> None:
        await self.tracker.add_comment(ticket_id, tracker_comment(review.url))
        if self.review_status:
            await self.tracker.transition_status(ticket_id, self.review_status)
        log.info("tracker_updated", review_url=review.url, status=self.review_status)
