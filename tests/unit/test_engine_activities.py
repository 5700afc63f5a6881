"""Tests for pipeline activities and project test detection."""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from khitomer.engine.activities import PipelineActivities
from khitomer.engine.project_tests import detect_project, run_project_tests
from khitomer.exceptions import GitOperationError
from khitomer.models.domain import CodeChangeResult, RepositoryInfo
from khitomer.providers.base import CodeGenerator, HostingProvider, TrackerProvider


@pytest.fixture
def tracker() -> AsyncMock:
    return AsyncMock(spec=TrackerProvider)


@pytest.fixture
def hosting() -> AsyncMock:
    return AsyncMock(spec=HostingProvider)


@pytest.fixture
def code_generator() -> AsyncMock:
    return AsyncMock(spec=CodeGenerator)


@pytest.fixture
def activities(tracker, hosting, code_generator, tmp_path) -> PipelineActivities:
    return PipelineActivities(tracker, hosting, code_generator, workspace_root=tmp_path / "workspaces")


class TestActivities:
    @pytest.mark.asyncio
    async def test_clone_uses_per_run_workspace(self, activities, hosting, tmp_path):
        repository = RepositoryInfo(owner="org", name="app", base_branch="develop")
        hosting.clone.side_effect = lambda owner, repo, branch, workspace: workspace

        workspace = await activities.clone_repository("implementation-PROJ-1-app", repository)

        assert workspace == tmp_path / "workspaces" / "org" / "app" / "implementation-PROJ-1-app"
        hosting.clone.assert_awaited_once_with("org", "app", "develop", workspace)

    @pytest.mark.asyncio
    async def test_apply_changes_delegates(self, activities, code_generator, sample_task, sample_plan, tmp_path):
        code_generator.apply.return_value = CodeChangeResult(summary="done")

        result = await activities.apply_changes(sample_task, sample_plan, tmp_path)

        assert result.summary == "done"
        code_generator.apply.assert_awaited_once_with(sample_task, sample_plan, tmp_path)

    @pytest.mark.asyncio
    async def test_commit_and_push_pushes_even_without_new_commit(self, activities, hosting, tmp_path):
        hosting.commit.return_value = None

        sha = await activities.commit_and_push(tmp_path, "khitomer/PROJ-1-Fix", "PROJ-1: Fix")

        assert sha is None
        hosting.push.assert_awaited_once_with(tmp_path, "khitomer/PROJ-1-Fix")

    @pytest.mark.asyncio
    async def test_push_failure_propagates(self, activities, hosting, tmp_path):
        hosting.commit.return_value = "abc123"
        hosting.push.side_effect = GitOperationError("git push failed", command="push")

        with pytest.raises(GitOperationError):
            await activities.commit_and_push(tmp_path, "khitomer/PROJ-1-Fix", "PROJ-1: Fix")

    @pytest.mark.asyncio
    async def test_open_review_request_targets_feature_branch(self, activities, hosting, sample_review):
        hosting.open_review_request.return_value = sample_review
        repository = RepositoryInfo(owner="org", name="app", base_branch="main", feature_branch="khitomer/PROJ-42-Fix")

        review = await activities.open_review_request(repository, "title", "body")

        assert review == sample_review
        hosting.open_review_request.assert_awaited_once_with(
            "org", "app", "main", "khitomer/PROJ-42-Fix", "title", "body"
        )

    @pytest.mark.asyncio
    async def test_update_tracker_comments_only_by_default(self, activities, tracker, sample_review):
        await activities.update_tracker("PROJ-42", sample_review)

        tracker.add_comment.assert_awaited_once_with(
            "PROJ-42", "Pull request created: https://github.com/org/app/pull/7"
        )
        tracker.transition_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_tracker_transitions_when_configured(
        self, tracker, hosting, code_generator, tmp_path, sample_review
    ):
        activities = PipelineActivities(tracker, hosting, code_generator, tmp_path, review_status="In Review")

        await activities.update_tracker("PROJ-42", sample_review)

        tracker.transition_status.assert_awaited_once_with("PROJ-42", "In Review")


class TestProjectTests:
    def test_nothing_detected(self, tmp_path):
        assert detect_project(tmp_path) is None

    def test_detects_go_module(self, tmp_path):
        (tmp_path / "go.mod").write_text("module example.com/app\n")

        with patch("khitomer.engine.project_tests.shutil.which", return_value="/usr/bin/go"):
            assert detect_project(tmp_path) == ("go", ("go", "test", "./..."))

    def test_missing_runner_falls_through(self, tmp_path):
        (tmp_path / "go.mod").write_text("module example.com/app\n")
        (tmp_path / "package.json").write_text("{}")

        def which(name: str) -> str | None:
            return None if name == "go" else f"/usr/bin/{name}"

        with patch("khitomer.engine.project_tests.shutil.which", side_effect=which):
            assert detect_project(tmp_path) == ("node", ("npm", "test"))

    @pytest.mark.asyncio
    async def test_unrecognized_project_passes(self, tmp_path):
        result = await run_project_tests(tmp_path)

        assert result.passed
        assert result.project_type is None

    @pytest.mark.asyncio
    async def test_failing_suite_reported(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("[package]\n")

        with (
            patch("khitomer.engine.project_tests.shutil.which", return_value="/usr/bin/cargo"),
            patch(
                "khitomer.engine.project_tests.run_command",
                new_callable=AsyncMock,
                return_value=("test result: FAILED", "", 101),
            ) as run_command,
        ):
            result = await run_project_tests(tmp_path, timeout=30)

        assert not result.passed
        assert result.project_type == "rust"
        assert result.failures == ("cargo test exited with code 101",)
        assert "FAILED" in result.output
        run_command.assert_awaited_once_with("cargo", "test", cwd=tmp_path, check=False, timeout=30)

    @pytest.mark.asyncio
    async def test_timeout_reported_as_failure(self, tmp_path):
        (tmp_path / "package.json").write_text("{}")

        with (
            patch("khitomer.engine.project_tests.shutil.which", return_value="/usr/bin/npm"),
            patch("khitomer.engine.project_tests.run_command", new_callable=AsyncMock, side_effect=TimeoutError()),
        ):
            result = await run_project_tests(Path(tmp_path), timeout=1)

        assert not result.passed
        assert result.failures == ("Test run exceeded 1s",)
