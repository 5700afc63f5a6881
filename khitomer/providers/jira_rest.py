"""Jira tracker provider using direct REST API calls."""

from typing import Any

import httpx
import structlog

from khitomer.exceptions import TrackerError
from khitomer.models.domain import Task
from khitomer.providers.base import TrackerProvider
from khitomer.utils.retry import RetryPolicy, async_retry

log = structlog.get_logger(__name__)

SEARCH_PAGE_SIZE = 50


def parse_repository_reference(value: str, web_url: str = "https://github.com") -> tuple[str, str] | None:
    """Parse ``owner/repo`` or a full hosting URL into (owner, repo).

    Returns None when the value does not name a repository.

    Example:
        >>> parse_repository_reference("https://github.com/org/app")
        ('org', 'app')
        >>> parse_repository_reference("org/app")
        ('org', 'app')
        >>> parse_repository_reference("just-a-name") is None
        True
    """
    reference = value.strip()
    prefix = web_url.rstrip("/") + "/"

    if reference.startswith(prefix):
        parts = [part for part in reference[len(prefix) :].split("/") if part]
        if len(parts) >= 2:
            return parts[0], parts[1].removesuffix(".git")
        return None

    if "://" in reference:
        return None

    parts = reference.split("/")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    return None


class JiraRestProvider(TrackerProvider):
    """Jira implementation using the REST API v2.

    The target repository is read from the custom field whose display name
    contains ``custom_field`` (case-insensitive). Issues without a
    resolvable repository are excluded from search results.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        api_token: str,
        project_key: str,
        custom_field: str = "Repository",
        default_base_branch: str = "main",
        hosting_web_url: str = "https://github.com",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize Jira provider.

        Args:
            base_url: Jira base URL (e.g., https://example.atlassian.net)
            username: Account email or username for basic auth
            api_token: API token for basic auth
            project_key: Project searched by ``search_by_status``
            custom_field: Display name (or part of it) of the repository field
            default_base_branch: Base branch assigned to every task
            hosting_web_url: Base of repository URLs accepted in the field
            timeout: Request timeout in seconds
            client: Pre-built HTTP client (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.project_key = project_key
        self.custom_field = custom_field
        self.default_base_branch = default_base_branch
        self.hosting_web_url = hosting_web_url.rstrip("/")
        self.client = client or httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/api/2",
            auth=(username, api_token),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def search_by_status(self, status: str) -> list[Task]:
        """Search the project for issues in ``status``."""
        jql = f'project = {self.project_key} AND status = "{status}"'
        log.debug("jira_search", jql=jql)

        tasks: list[Task] = []
        start_at = 0
        while True:
            data = await self._request(
                "GET",
                "/search",
                params={"jql": jql, "startAt": start_at, "maxResults": SEARCH_PAGE_SIZE, "expand": "names"},
            )
            issues = data.get("issues", [])
            names = data.get("names", {})
            for issue in issues:
                task = self._issue_to_task(issue, names)
                if task is None:
                    log.debug("jira_issue_without_repository", issue=issue.get("key"), field=self.custom_field)
                    continue
                tasks.append(task)

            start_at += len(issues)
            if not issues or start_at >= data.get("total", 0):
                break

        log.info("jira_search_complete", status=status, count=len(tasks))
        return tasks

    @async_retry(RetryPolicy(maximum_attempts=3), exceptions=(TrackerError,))
    async def get_task(self, ticket_id: str, repository: tuple[str, str] | None = None) -> Task:
        """Read a single issue as a task, falling back to ``repository`` without a field value."""
        data = await self._request("GET", f"/issue/{ticket_id}", params={"expand": "names"})
        task = self._issue_to_task(data, data.get("names", {}), fallback=repository)
        if task is None:
            raise TrackerError(
                f"Repository information not found in custom field {self.custom_field} for {ticket_id}",
                transient=False,
            )
        return task

    async def add_comment(self, ticket_id: str, text: str) -> None:
        log.info("jira_add_comment", ticket_id=ticket_id)
        await self._request("POST", f"/issue/{ticket_id}/comment", json={"body": text})

    async def transition_status(self, ticket_id: str, target_status: str) -> None:
        """Apply the transition whose destination matches ``target_status``."""
        data = await self._request("GET", f"/issue/{ticket_id}/transitions")

        transition_id = None
        for transition in data.get("transitions", []):
            if transition.get("to", {}).get("name", "").lower() == target_status.lower():
                transition_id = transition.get("id")
                break

        if transition_id is None:
            raise TrackerError(f"Transition to status {target_status} not found for {ticket_id}", transient=False)

        await self._request("POST", f"/issue/{ticket_id}/transitions", json={"transition": {"id": transition_id}})
        log.info("jira_transitioned", ticket_id=ticket_id, status=target_status)

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode the JSON body, mapping failures to TrackerError."""
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TrackerError(
                f"Jira request {method} {path} failed",
                status_code=e.response.status_code,
                response_text=e.response.text,
            ) from e
        except httpx.RequestError as e:
            raise TrackerError(f"Jira request {method} {path} failed: {e}") from e

        if not response.content:
            return {}
        return response.json()

    def _issue_to_task(
        self,
        issue: dict[str, Any],
        names: dict[str, str],
        fallback: tuple[str, str] | None = None,
    ) -> Task | None:
        """Convert a Jira issue payload into a Task, or None without a repository."""
        fields = issue.get("fields") or {}
        reference = self._extract_repository(fields, names) or fallback
        if reference is None:
            return None

        owner, repo = reference
        assignee = fields.get("assignee") or {}
        status = fields.get("status") or {}
        key = issue.get("key", "")

        return Task(
            ticket_id=key,
            title=fields.get("summary") or "",
            description=fields.get("description") or "",
            repository_owner=owner,
            repository_name=repo,
            base_branch=self.default_base_branch,
            assignee=assignee.get("displayName", ""),
            url=f"{self.base_url}/browse/{key}",
            repository_url=f"{self.hosting_web_url}/{owner}/{repo}",
            status=status.get("name", ""),
        )

    def _extract_repository(self, fields: dict[str, Any], names: dict[str, str]) -> tuple[str, str] | None:
        wanted = self.custom_field.lower()
        for field_id, value in fields.items():
            display_name = names.get(field_id, field_id)
            if wanted not in display_name.lower():
                continue
            if isinstance(value, dict):
                value = value.get("value")
            if not isinstance(value, str):
                continue
            reference = parse_repository_reference(value, self.hosting_web_url)
            if reference is not None:
                return reference
        return None
