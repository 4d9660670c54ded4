"""GitHub issues source.

Syncs issues (not pull requests) from enabled repositories in two phases:
every open issue first, then issues closed within the recent window.
Channels are identified by the numeric repository id; the "owner/repo"
name is looked up once on enable and kept in the store.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    GITHUB_EVENT_HEADER,
    GITHUB_ISSUES_WEBHOOK_EVENTS,
    KEY_REPO_INFO,
    SOURCE_GITHUB_ISSUES,
)
from twister.exceptions import SourceError
from twister.logging import get_logger
from twister.models import (
    Action,
    ActionType,
    Channel,
    GitHubIssuesConfig,
    NewLinkWithNotes,
    SyncPage,
)
from twister.sources.github import (
    GitHubBase,
    comment_note,
    description_note,
    github_contact,
    parse_timestamp,
)

if TYPE_CHECKING:
    import httpx

    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

PHASE_OPEN = "open"
PHASE_CLOSED = "closed"


def issue_source(repo_id: str, number: int) -> str:
    return f"github:issue:{repo_id}:{number}"


def issue_to_link(
    issue: dict[str, Any],
    repo_id: str,
    full_name: str,
    *,
    comments: list[dict[str, Any]] | None = None,
    with_notes: bool = True,
) -> NewLinkWithNotes:
    """Map a GitHub issue to a thread."""
    body = issue.get("body")
    has_description = bool(body and body.strip())

    notes = []
    if with_notes:
        notes.append(description_note(body, issue.get("created_at"), issue.get("user")))
        notes.extend(comment_note(c) for c in comments or [])

    html_url = issue.get("html_url")
    return NewLinkWithNotes(
        source=issue_source(repo_id, issue["number"]),
        type="issue",
        title=issue.get("title") or f"#{issue['number']}",
        created=parse_timestamp(issue.get("created_at")),
        author=github_contact(issue.get("user")),
        assignee=github_contact(issue.get("assignee")),
        status="closed" if issue.get("closed_at") else "open",
        meta={
            "githubIssueNumber": issue["number"],
            "githubRepoId": repo_id,
            "githubRepoFullName": full_name,
            "projectId": repo_id,
        },
        actions=(
            [Action(type=ActionType.EXTERNAL, title="Open in GitHub", url=html_url)]
            if html_url
            else None
        ),
        source_url=html_url,
        notes=notes,
        preview=body if has_description else None,
    )


class GitHubIssuesSource(GitHubBase):
    """Issues from GitHub repositories, synced open-then-recently-closed."""

    name: ClassVar[str] = SOURCE_GITHUB_ISSUES
    link_types: ClassVar[tuple[str, ...]] = ("issue",)
    config_schema: ClassVar[type[GitHubIssuesConfig]] = GitHubIssuesConfig
    webhook_events: ClassVar[tuple[str, ...]] = GITHUB_ISSUES_WEBHOOK_EVENTS
    first_phase: ClassVar[str | None] = PHASE_OPEN

    @property
    def config(self) -> GitHubIssuesConfig:
        return self._config  # type: ignore[return-value]

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        repos = await self.list_repos(token)
        return [Channel(id=str(r["id"]), title=r["full_name"]) for r in repos]

    def channel_keys(self, channel_id: str) -> list[str]:
        return [*super().channel_keys(channel_id), KEY_REPO_INFO + channel_id]

    async def prepare_channel(self, channel_id: str, channel: Channel) -> None:
        full_name = channel.title or ""
        if "/" not in full_name:
            token = await self.get_token(channel_id)
            async with self.client(token) as client:
                repo = await self._request(client, "GET", f"/repositories/{channel_id}")
            full_name = repo["full_name"]

        owner, _, repo_name = full_name.partition("/")
        await self.set(
            KEY_REPO_INFO + channel_id,
            {"owner": owner, "repo": repo_name, "full_name": full_name},
        )

    async def repo_for(self, channel_id: str) -> tuple[str, str]:
        info = await self.get(KEY_REPO_INFO + channel_id)
        if not info:
            raise SourceError(
                "Repository info missing for channel",
                self.name,
                {"channel_id": channel_id},
            )
        return info["owner"], info["repo"]

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        owner, repo = await self.repo_for(channel_id)
        phase = state.phase or PHASE_OPEN

        params: dict[str, Any] = {
            "state": phase,
            "per_page": self.config.page_size,
            "page": state.page,
            "sort": "updated",
            "direction": "desc",
        }
        if state.time_min is not None:
            params["since"] = state.time_min.isoformat()
        elif phase == PHASE_CLOSED:
            since = datetime.now(UTC) - timedelta(days=self.config.closed_days)
            params["since"] = since.isoformat()

        issues = await self._request(client, "GET", f"/repos/{owner}/{repo}/issues", params=params)
        issues = issues or []

        # The issues endpoint also returns pull requests
        items = [issue for issue in issues if not issue.get("pull_request")]

        if len(issues) == self.config.page_size:
            return SyncPage(items=items, has_more=True)
        if phase == PHASE_OPEN:
            return SyncPage(items=items, next_phase=PHASE_CLOSED)
        return SyncPage(items=items)

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes:
        owner, repo = await self.repo_for(channel_id)
        comments = await self.fetch_optional(
            client,
            f"/repos/{owner}/{repo}/issues/{item['number']}/comments",
            paginate=True,
        )
        return issue_to_link(item, channel_id, f"{owner}/{repo}", comments=comments)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        event = request.header(GITHUB_EVENT_HEADER)
        payload = self.payload(request)
        issue = payload.get("issue") or {}
        if not issue or issue.get("pull_request"):
            return

        owner, repo = await self.repo_for(channel_id)
        full_name = f"{owner}/{repo}"

        if event == "issues":
            link = issue_to_link(issue, channel_id, full_name, with_notes=False)
            await self.save_link(link, channel_id)

        elif event == "issue_comment":
            link = issue_to_link(issue, channel_id, full_name, with_notes=False)
            link.notes = [comment_note(payload["comment"])]
            await self.save_link(link, channel_id)

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    async def update_issue(
        self,
        meta: dict[str, Any],
        *,
        status: str | None = None,
        assignee_login: str | None = None,
    ) -> None:
        """Push a thread's status and assignee back to the issue.

        "done", "closed" and "completed" close the issue; anything else
        reopens it. No assignee login clears the assignees.
        """
        owner, _, repo = meta["githubRepoFullName"].partition("/")
        done = status in ("done", "closed", "completed")
        await self._write(
            {"syncableId": meta["projectId"], **meta},
            "PATCH",
            f"/repos/{owner}/{repo}/issues/{meta['githubIssueNumber']}",
            {
                "state": "closed" if done else "open",
                "assignees": [assignee_login] if assignee_login else [],
            },
        )

    async def add_issue_comment(self, meta: dict[str, Any], body: str) -> str:
        owner, _, repo = meta["githubRepoFullName"].partition("/")
        comment = await self._write(
            {"syncableId": meta["projectId"], **meta},
            "POST",
            f"/repos/{owner}/{repo}/issues/{meta['githubIssueNumber']}/comments",
            {"body": body},
        )
        return f"comment-{comment['id']}"
