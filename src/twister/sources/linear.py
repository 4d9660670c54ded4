"""Linear source.

Syncs issues from Linear teams over the GraphQL API, with cursor
pagination, and ingests Issue and Comment webhooks signed with the
per-webhook secret Linear hands out at creation.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    KEY_WEBHOOK_ID,
    KEY_WEBHOOK_SECRET,
    LINEAR_API_BASE_URL,
    LINEAR_GRAPHQL_PATH,
    LINEAR_SIGNATURE_HEADER,
    SOURCE_LINEAR,
)
from twister.exceptions import SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    Action,
    ActionType,
    AuthProvider,
    Channel,
    LinearConfig,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    SyncPage,
)
from twister.plugins.base import Source, is_local_url
from twister.sources.github import parse_timestamp
from twister.webhooks import verify_signature

if TYPE_CHECKING:
    import httpx

    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

TEAMS_QUERY = """
query Teams {
  teams {
    nodes { id name key }
  }
}
"""

USER_FIELDS = "email name avatarUrl"

ISSUE_FIELDS = f"""
  id
  identifier
  title
  description
  url
  createdAt
  completedAt
  canceledAt
  project {{ id }}
  creator {{ {USER_FIELDS} }}
  assignee {{ {USER_FIELDS} }}
  comments(first: 100) {{
    nodes {{ id body createdAt user {{ {USER_FIELDS} }} }}
  }}
"""

TEAM_ISSUES_QUERY = f"""
query TeamIssues($teamId: String!, $first: Int!, $after: String) {{
  team(id: $teamId) {{
    issues(first: $first, after: $after, orderBy: updatedAt) {{
      nodes {{ {ISSUE_FIELDS} }}
      pageInfo {{ hasNextPage endCursor }}
    }}
  }}
}}
"""

WEBHOOK_CREATE_MUTATION = """
mutation WebhookCreate($input: WebhookCreateInput!) {
  webhookCreate(input: $input) {
    success
    webhook { id secret }
  }
}
"""

WEBHOOK_DELETE_MUTATION = """
mutation WebhookDelete($id: String!) {
  webhookDelete(id: $id) { success }
}
"""

ISSUE_STATES_QUERY = """
query IssueStates($id: String!) {
  issue(id: $id) {
    team { states { nodes { id name type } } }
  }
}
"""

ISSUE_UPDATE_MUTATION = """
mutation IssueUpdate($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) { success }
}
"""

COMMENT_CREATE_MUTATION = """
mutation CommentCreate($input: CommentCreateInput!) {
  commentCreate(input: $input) {
    success
    comment { id }
  }
}
"""


def linear_contact(user: dict[str, Any] | None) -> NewContact | None:
    if not user or not (user.get("email") or user.get("name")):
        return None
    return NewContact(
        email=user.get("email"),
        name=user.get("name"),
        avatar=user.get("avatarUrl"),
    )


def linear_comment_note(comment: dict[str, Any]) -> NewNote:
    return NewNote(
        key=f"comment-{comment['id']}",
        content=comment.get("body"),
        content_type="markdown",
        created=parse_timestamp(comment.get("createdAt")),
        author=linear_contact(comment.get("user")),
    )


def issue_to_link(
    issue: dict[str, Any],
    channel_id: str,
    *,
    with_notes: bool = True,
) -> NewLinkWithNotes:
    """Map a Linear issue (GraphQL node or webhook data) to a thread.

    Webhook data is partial: it names the creator only by id and may omit
    the assignee. Author and assignee are therefore set only when the issue
    says something about them, so an upsert never wipes what a full sync
    stored.
    """
    description = issue.get("description")
    has_description = bool(description and description.strip())

    notes: list[NewNote] = []
    if with_notes:
        notes.append(
            NewNote(
                key="description",
                content=description if has_description else None,
                content_type="markdown",
                created=parse_timestamp(issue.get("createdAt")),
                author=linear_contact(issue.get("creator")),
            )
        )
        comment_nodes = (issue.get("comments") or {}).get("nodes") or []
        notes.extend(linear_comment_note(c) for c in comment_nodes)

    people: dict[str, Any] = {}
    author = linear_contact(issue.get("creator"))
    if author is not None:
        people["author"] = author
    if issue.get("assignee"):
        people["assignee"] = linear_contact(issue["assignee"])
    elif "assignee" in issue or ("assigneeId" in issue and issue["assigneeId"] is None):
        people["assignee"] = None

    meta: dict[str, Any] = {"linearId": issue["id"], "projectId": channel_id}
    linear_project = (issue.get("project") or {}).get("id") or issue.get("projectId")
    if linear_project:
        meta["linearProjectId"] = linear_project

    done = bool(issue.get("completedAt") or issue.get("canceledAt"))
    url = issue.get("url")
    return NewLinkWithNotes(
        source=f"linear:issue:{issue['id']}",
        type="issue",
        title=issue.get("title"),
        created=parse_timestamp(issue.get("createdAt")),
        status="done" if done else "open",
        meta=meta,
        actions=[Action(type=ActionType.EXTERNAL, title="Open in Linear", url=url)] if url else None,
        source_url=url,
        notes=notes,
        preview=description if has_description else None,
        **people,
    )


class LinearSource(Source):
    """Issues from Linear teams.

    Channels are teams. Each batch requests one page of the team's issues
    (with their comments inline) and continues while the connection reports
    another page.
    """

    name: ClassVar[str] = SOURCE_LINEAR
    provider: ClassVar[AuthProvider] = AuthProvider.LINEAR
    scopes: ClassVar[tuple[str, ...]] = ("read", "write")
    link_types: ClassVar[tuple[str, ...]] = ("issue",)
    config_schema: ClassVar[type[LinearConfig]] = LinearConfig
    base_url: ClassVar[str] = LINEAR_API_BASE_URL

    @property
    def config(self) -> LinearConfig:
        return self._config  # type: ignore[return-value]

    async def _graphql(
        self,
        client: httpx.AsyncClient,
        query: str,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run a GraphQL operation and return its `data`.

        Raises:
            SourceError: If the response carries GraphQL errors.
        """
        result = await self._request(
            client,
            "POST",
            LINEAR_GRAPHQL_PATH,
            json={"query": query, "variables": variables or {}},
        )
        if result.get("errors"):
            raise SourceError("Linear GraphQL error", self.name, {"errors": result["errors"]})
        return result.get("data") or {}

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        async with self.client(token) as client:
            data = await self._graphql(client, TEAMS_QUERY)
        return [Channel(id=t["id"], title=t["name"]) for t in data["teams"]["nodes"]]

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        data = await self._graphql(
            client,
            TEAM_ISSUES_QUERY,
            {"teamId": channel_id, "first": self.config.page_size, "after": state.cursor},
        )
        issues = data["team"]["issues"]
        page_info = issues.get("pageInfo") or {}
        return SyncPage(
            items=issues.get("nodes") or [],
            has_more=bool(page_info.get("hasNextPage")),
            cursor=page_info.get("endCursor"),
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes:
        return issue_to_link(item, channel_id)

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def setup_webhook(self, channel_id: str) -> None:
        url = await self.create_webhook_url(channel_id)
        if is_local_url(url):
            logger.info(
                "Skipping webhook registration for local URL",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return

        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            data = await self._graphql(
                client,
                WEBHOOK_CREATE_MUTATION,
                {
                    "input": {
                        "url": url,
                        "teamId": channel_id,
                        "resourceTypes": ["Issue", "Comment"],
                        "label": "Plot",
                    }
                },
            )

        webhook = (data.get("webhookCreate") or {}).get("webhook") or {}
        if webhook.get("id"):
            await self.set(KEY_WEBHOOK_ID + channel_id, webhook["id"])
        if webhook.get("secret"):
            await self.set(KEY_WEBHOOK_SECRET + channel_id, webhook["secret"])

    async def teardown_webhook(self, channel_id: str) -> None:
        webhook_id = await self.get(KEY_WEBHOOK_ID + channel_id)
        if not webhook_id:
            return
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            await self._graphql(client, WEBHOOK_DELETE_MUTATION, {"id": webhook_id})

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        secret = await self.require_secret(channel_id)
        body = self.require_raw_body(request)
        if not verify_signature(secret, body, request.header(LINEAR_SIGNATURE_HEADER)):
            raise WebhookVerificationError("Signature missing or invalid", self.name)

        sent_ms = self.payload(request).get("webhookTimestamp")
        if sent_ms is not None:
            age = abs(time.time() * 1000 - float(sent_ms)) / 1000
            if age > self.config.webhook_tolerance_seconds:
                raise WebhookVerificationError(
                    "Webhook timestamp outside tolerance",
                    self.name,
                    {"age_seconds": round(age)},
                )

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        payload = self.payload(request)
        kind = payload.get("type")
        data = payload.get("data") or {}

        if kind == "Issue":
            link = issue_to_link(data, channel_id, with_notes=False)
            await self.save_link(link, channel_id)

        elif kind == "Comment":
            issue_id = data.get("issueId") or (data.get("issue") or {}).get("id")
            if not issue_id:
                logger.warning("Comment webhook without issue id", extra={"comment_id": data.get("id")})
                return
            link = NewLinkWithNotes(
                source=f"linear:issue:{issue_id}",
                type="issue",
                notes=[linear_comment_note(data)],
            )
            await self.save_link(link, channel_id)

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    async def update_issue_status(self, meta: dict[str, Any], status: str) -> None:
        """Move the issue to a completed or unstarted workflow state."""
        token = await self.get_token(meta["syncableId"])
        done = status in ("done", "closed", "completed")
        wanted = ("completed",) if done else ("unstarted", "backlog")

        async with self.client(token) as client:
            data = await self._graphql(client, ISSUE_STATES_QUERY, {"id": meta["linearId"]})
            states = data["issue"]["team"]["states"]["nodes"]
            target = next(
                (s for kind in wanted for s in states if s.get("type") == kind),
                None,
            )
            if target is None:
                raise SourceError(
                    "No matching workflow state",
                    self.name,
                    {"wanted": list(wanted)},
                )
            await self._graphql(
                client,
                ISSUE_UPDATE_MUTATION,
                {"id": meta["linearId"], "input": {"stateId": target["id"]}},
            )

    async def add_issue_comment(self, meta: dict[str, Any], body: str) -> str:
        token = await self.get_token(meta["syncableId"])
        async with self.client(token) as client:
            data = await self._graphql(
                client,
                COMMENT_CREATE_MUTATION,
                {"input": {"issueId": meta["linearId"], "body": body}},
            )
        return f"comment-{data['commentCreate']['comment']['id']}"
