"""CLI entry point for khitomer."""

import asyncio
import json
import signal
import sys
from dataclasses import dataclass, replace

import click
import structlog
import uvicorn

from khitomer.api.server import create_app
from khitomer.config.settings import KhitomerSettings
from khitomer.engine.activities import PipelineActivities
from khitomer.engine.naming import make_run_id
from khitomer.engine.orchestrator import Orchestrator
from khitomer.engine.pipeline import (
    APPLY_CHANGES,
    RUN_TESTS,
    ActivityOptions,
    ImplementationPipeline,
)
from khitomer.engine.runtime import LocalRuntime
from khitomer.engine.state_manager import RunStateStore
from khitomer.exceptions import ConfigurationError, KhitomerError
from khitomer.intake.poller import DedupStore, JsonFileDedupStore, MemoryDedupStore, Poller
from khitomer.models.domain import PipelineInput, RepositoryInfo, RunSnapshot, RunStatus
from khitomer.planning.ai_planner import CompletionPlanSource
from khitomer.providers.external_agent import ExternalAgentCodeGenerator
from khitomer.providers.github_rest import GitHubHostingProvider
from khitomer.providers.jira_rest import JiraRestProvider
from khitomer.providers.openai_compatible import OpenAICompatibleBackend
from khitomer.utils.cancellation import CancellationSignal
from khitomer.utils.logging_config import configure_logging

log = structlog.get_logger(__name__)

# Headroom over the collaborator's own timeout so it reports first.
TIMEOUT_MARGIN = 60.0


@dataclass
class Services:
    """Collaborators and engine objects wired from settings."""

    settings: KhitomerSettings
    tracker: JiraRestProvider
    hosting: GitHubHostingProvider
    completion: OpenAICompatibleBackend
    planner: CompletionPlanSource
    runtime: LocalRuntime

    async def close(self) -> None:
        await self.runtime.close()
        await self.tracker.close()
        await self.hosting.close()
        await self.completion.close()


def build_services(settings: KhitomerSettings) -> Services:
    """Wire providers, planner, pipeline, and runtime from ``settings``."""
    tracker = JiraRestProvider(
        base_url=str(settings.tracker.base_url),
        username=settings.tracker.username,
        api_token=settings.tracker.api_token.get_secret_value(),
        project_key=settings.tracker.project_key,
        custom_field=settings.tracker.custom_field,
        default_base_branch=settings.tracker.default_base_branch,
        hosting_web_url=settings.hosting.web_url,
        timeout=settings.tracker.timeout,
    )
    hosting = GitHubHostingProvider(
        token=settings.hosting.token.get_secret_value(),
        api_url=settings.hosting.api_url,
        web_url=settings.hosting.web_url,
        author_name=settings.hosting.author_name,
        author_email=settings.hosting.author_email,
    )
    api_key = settings.completion.api_key.get_secret_value() if settings.completion.api_key else None
    completion = OpenAICompatibleBackend(
        base_url=settings.completion.base_url,
        model=settings.completion.model,
        api_key=api_key,
        temperature=settings.completion.temperature,
        timeout=settings.completion.timeout,
    )
    code_generator = ExternalAgentCodeGenerator(
        command=settings.code_agent.command,
        timeout=settings.code_agent.timeout,
    )

    activities = PipelineActivities(
        tracker=tracker,
        hosting=hosting,
        code_generator=code_generator,
        workspace_root=settings.workspace_root,
        test_timeout=settings.runtime.test_timeout,
        review_status=settings.tracker.review_status,
    )
    options = ActivityOptions(
        start_to_close_timeout=settings.runtime.activity_timeout,
        retry_policy=settings.runtime.retry.to_policy(),
    )
    pipeline = ImplementationPipeline(
        activities,
        options=options,
        step_options={
            APPLY_CHANGES: ActivityOptions(
                start_to_close_timeout=max(
                    options.start_to_close_timeout, settings.code_agent.timeout + TIMEOUT_MARGIN
                ),
                retry_policy=options.retry_policy,
            ),
            RUN_TESTS: ActivityOptions(
                start_to_close_timeout=max(
                    options.start_to_close_timeout, settings.runtime.test_timeout + TIMEOUT_MARGIN
                ),
                retry_policy=options.retry_policy,
            ),
        },
        branch_prefix=settings.hosting.branch_prefix,
    )
    runtime = LocalRuntime(pipeline, RunStateStore(settings.state_dir), task_queue=settings.runtime.task_queue)

    return Services(
        settings=settings,
        tracker=tracker,
        hosting=hosting,
        completion=completion,
        planner=CompletionPlanSource(completion),
        runtime=runtime,
    )


def _build_dedup_store(settings: KhitomerSettings) -> DedupStore:
    if settings.tracker.dedup_state_file:
        return JsonFileDedupStore(settings.tracker.dedup_state_file)
    return MemoryDedupStore()


def _load_settings(ctx: click.Context) -> KhitomerSettings:
    settings = ctx.obj.get("settings")
    if settings is not None:
        return settings

    config = ctx.obj["config_path"]
    try:
        settings = KhitomerSettings.from_yaml(config)
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug("config_error", exc_info=True)
        sys.exit(1)

    ctx.obj["settings"] = settings
    return settings


def _echo_json(data: dict | list) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _run(coro_factory, name: str) -> None:  # type: ignore[no-untyped-def]
    """Run a command coroutine with the shared CLI error handling."""
    try:
        asyncio.run(coro_factory())
    except KhitomerError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.exception(f"{name}_unexpected_error")
        sys.exit(1)


@click.group()
@click.option(
    "--config",
    default="khitomer.yaml",
    envvar="KHITOMER_CONFIG",
    help="Path to configuration file",
)
@click.option("--log-level", default="INFO", help="Logging level")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str) -> None:
    """khitomer: Jira ticket to GitHub pull request automation."""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj.setdefault("settings", None)


@cli.command()
@click.option("--api/--no-api", default=True, help="Serve the admin API alongside the orchestrator")
@click.pass_context
def serve(ctx: click.Context, api: bool) -> None:
    """Poll the tracker and run pipelines until interrupted."""
    settings = _load_settings(ctx)
    _run(lambda: _serve(settings, api), "serve")


@cli.command()
@click.argument("ticket_id")
@click.option("--owner", help="Repository owner (defaults to the ticket's repository field)")
@click.option("--repo", help="Repository name (defaults to the ticket's repository field)")
@click.option("--base-branch", help="Base branch (defaults to the configured base branch)")
@click.pass_context
def trigger(
    ctx: click.Context,
    ticket_id: str,
    owner: str | None,
    repo: str | None,
    base_branch: str | None,
) -> None:
    """Plan a ticket and run its pipeline in this process."""
    settings = _load_settings(ctx)
    _run(lambda: _trigger(settings, ticket_id, owner, repo, base_branch), "trigger")


@cli.command()
@click.argument("run_id", required=False)
@click.pass_context
def status(ctx: click.Context, run_id: str | None) -> None:
    """Show a run, or list all runs when RUN_ID is omitted."""
    settings = _load_settings(ctx)
    _run(lambda: _status(settings, run_id), "status")


@cli.command()
@click.argument("run_id")
@click.pass_context
def cancel(ctx: click.Context, run_id: str) -> None:
    """Request cancellation of a run."""
    settings = _load_settings(ctx)
    _run(lambda: _cancel(settings, run_id), "cancel")


@cli.command()
@click.argument("run_id")
@click.pass_context
def retry(ctx: click.Context, run_id: str) -> None:
    """Run a failed or cancelled run again from its stored input."""
    settings = _load_settings(ctx)
    _run(lambda: _retry(settings, run_id), "retry")


@cli.command()
@click.argument("ticket_id")
@click.pass_context
def plan(ctx: click.Context, ticket_id: str) -> None:
    """Print the implementation plan for a ticket without starting a run."""
    settings = _load_settings(ctx)
    _run(lambda: _plan(settings, ticket_id), "plan")


async def _serve(settings: KhitomerSettings, with_api: bool) -> None:
    services = build_services(settings)
    stop = CancellationSignal()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.cancel, f"received {sig.name}")

    recovered = await services.runtime.recover()
    if recovered:
        click.echo(f"Marked {len(recovered)} interrupted run(s) as failed")

    poller = Poller(
        services.tracker,
        settings.tracker.status_filter,
        settings.tracker.poll_interval,
        dedup=_build_dedup_store(settings),
    )
    orchestrator = Orchestrator(poller, services.planner, services.runtime, queue_size=settings.runtime.queue_size)

    server = None
    server_task = None
    if with_api:
        app = create_app(services.runtime, plan_source=services.planner, tracker=services.tracker)
        server = uvicorn.Server(uvicorn.Config(app, host=settings.api.host, port=settings.api.port, log_config=None))
        server.install_signal_handlers = lambda: None  # type: ignore[method-assign]
        server_task = asyncio.create_task(server.serve(), name="admin-api")
        click.echo(f"Admin API listening on http://{settings.api.host}:{settings.api.port}")

    click.echo(f"Polling {settings.tracker.project_key} every {settings.tracker.poll_interval}s")
    try:
        reason = await orchestrator.run(stop)
        click.echo(f"Stopped: {reason}")
    finally:
        if server is not None and server_task is not None:
            server.should_exit = True
            await server_task
        await services.close()


async def _trigger(
    settings: KhitomerSettings,
    ticket_id: str,
    owner: str | None,
    repo: str | None,
    base_branch: str | None,
) -> None:
    services = build_services(settings)
    try:
        task = await services.tracker.get_task(ticket_id, repository=(owner, repo) if owner and repo else None)
        if owner or repo:
            task = replace(
                task,
                repository_owner=owner or task.repository_owner,
                repository_name=repo or task.repository_name,
                repository_url="",
            )
        if base_branch:
            task = replace(task, base_branch=base_branch)

        implementation_plan = await services.planner.generate_plan(task)
        repository = RepositoryInfo.for_task(task)
        run_id = make_run_id(task.ticket_id, repository.name)
        pipeline_input = PipelineInput(task=task, plan=implementation_plan, repository=repository)
        await _start_and_wait(services, run_id, pipeline_input)
    finally:
        await services.close()


async def _retry(settings: KhitomerSettings, run_id: str) -> None:
    services = build_services(settings)
    try:
        state = await services.runtime.store.load(run_id)
        if state["status"] not in (RunStatus.FAILED.value, RunStatus.CANCELLED.value):
            click.echo(f"Run {run_id} is {state['status']}; only failed or cancelled runs can be retried")
            return
        await _start_and_wait(services, run_id, PipelineInput.from_dict(state["input"]))
    finally:
        await services.close()


async def _start_and_wait(services: Services, run_id: str, pipeline_input: PipelineInput) -> None:
    """Start the run in this process and wait for it; exit non-zero unless it succeeds."""
    handle = await services.runtime.start(run_id, pipeline_input)
    if handle.attached:
        click.echo(f"Run {handle.run_id} already exists; use 'khitomer status {handle.run_id}'")
        return

    click.echo(f"Run {handle.run_id} started")
    snapshot = await services.runtime.wait(handle.run_id)
    _echo_snapshot(snapshot)
    if snapshot.status is not RunStatus.SUCCEEDED:
        sys.exit(1)


async def _status(settings: KhitomerSettings, run_id: str | None) -> None:
    store = RunStateStore(settings.state_dir)
    if run_id is None:
        runs = await store.list_runs()
        if not runs:
            click.echo("No runs found.")
            return
        for state in runs:
            click.echo(f"{state['run_id']}: {state['status']} (updated {state['updated_at']})")
        return

    state = await store.load(run_id)
    _echo_snapshot(RunSnapshot.from_dict(dict(state)))


async def _cancel(settings: KhitomerSettings, run_id: str) -> None:
    """Flag the run in the shared state directory; a ``serve`` process running it stops at its next check."""
    store = RunStateStore(settings.state_dir)
    async with store.transaction(run_id) as state:
        if state["status"] != RunStatus.RUNNING.value:
            click.echo(f"Run {run_id} already {state['status']}")
            return
        state["cancel_requested"] = True
        state["cancel_reason"] = "cancelled from CLI"
    click.echo(f"Cancellation requested for {run_id}")


async def _plan(settings: KhitomerSettings, ticket_id: str) -> None:
    services = build_services(settings)
    try:
        task = await services.tracker.get_task(ticket_id)
        implementation_plan = await services.planner.generate_plan(task)
        _echo_json(implementation_plan.to_dict())
    finally:
        await services.close()


def _echo_snapshot(snapshot: RunSnapshot) -> None:
    _echo_json(snapshot.to_dict())


if __name__ == "__main__":
    cli()
