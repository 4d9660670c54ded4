"""GitHub pull request source.

Syncs open pull requests, plus those merged or closed within the recent
window, from repositories the user enables. Each PR becomes a thread with
its description, issue comments and review summaries as notes.

Also provides `GitHubSource`'s shared plumbing (`GitHubBase`) used by the
GitHub issues source: repository listing, repository webhooks, signature
verification and the contact/comment mapping helpers.

Example:
    source = GitHubSource(tools, GitHubConfig(recent_days=14))
    await source.on_channel_enabled(Channel(id="acme/api", title="acme/api"))
"""

from __future__ import annotations

import uuid
from abc import abstractmethod
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    COMMENTS_PAGE_SIZE,
    GITHUB_API_BASE_URL,
    GITHUB_API_VERSION,
    GITHUB_EVENT_HEADER,
    GITHUB_PR_WEBHOOK_EVENTS,
    GITHUB_SIGNATURE_HEADER,
    KEY_WEBHOOK_ID,
    KEY_WEBHOOK_SECRET,
    SOURCE_GITHUB,
)
from twister.exceptions import AuthUnavailableError, SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    Action,
    ActionType,
    AuthProvider,
    Channel,
    GitHubConfig,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    SyncPage,
)
from twister.plugins.base import Source, is_local_url
from twister.webhooks import verify_signature

if TYPE_CHECKING:
    import httpx

    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

REVIEW_PREFIXES = {
    "APPROVED": "**Approved**",
    "CHANGES_REQUESTED": "**Changes Requested**",
    "DISMISSED": "**Dismissed**",
}


# =============================================================================
# MAPPING HELPERS
# =============================================================================


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps (with a trailing Z)."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def github_contact(user: dict[str, Any] | None) -> NewContact | None:
    """Map a GitHub user to a contact with their noreply address."""
    if not user:
        return None
    login = user.get("login", "")
    return NewContact(
        email=f"{user.get('id')}+{login}@users.noreply.github.com",
        name=login,
        avatar=user.get("avatar_url"),
    )


def comment_note(comment: dict[str, Any]) -> NewNote:
    return NewNote(
        key=f"comment-{comment['id']}",
        content=comment.get("body"),
        created=parse_timestamp(comment.get("created_at")),
        author=github_contact(comment.get("user")),
    )


def review_note(review: dict[str, Any]) -> NewNote | None:
    """Map a review summary to a note; None for empty COMMENTED reviews."""
    state = review.get("state", "")
    body = review.get("body") or ""
    if state == "COMMENTED" and not body:
        return None

    prefix = REVIEW_PREFIXES.get(state)
    if prefix:
        content = f"{prefix}\n\n{body}" if body else prefix
    else:
        content = body

    if not content:
        return None

    return NewNote(
        key=f"review-{review['id']}",
        content=content,
        created=parse_timestamp(review.get("submitted_at")),
        author=github_contact(review.get("user")),
    )


def description_note(body: str | None, created: str | None, author: dict | None) -> NewNote:
    has_description = bool(body and body.strip())
    return NewNote(
        key="description",
        content=body if has_description else None,
        created=parse_timestamp(created),
        author=github_contact(author),
    )


def pr_source(owner: str, repo: str, number: int) -> str:
    return f"github:pr:{owner}/{repo}/{number}"


def pr_to_link(
    pr: dict[str, Any],
    owner: str,
    repo: str,
    *,
    comments: list[dict[str, Any]] | None = None,
    reviews: list[dict[str, Any]] | None = None,
    with_notes: bool = True,
    initial_sync: bool = False,
) -> NewLinkWithNotes:
    """Map a pull request to a thread.

    Args:
        pr: Pull request payload from the REST API or a webhook.
        owner: Repository owner.
        repo: Repository name.
        comments: Issue comments on the PR.
        reviews: Review summaries on the PR.
        with_notes: False for metadata-only upserts (notes left untouched).
        initial_sync: Closed-without-merge PRs are archived only outside it.

    Returns:
        The thread to upsert.
    """
    merged = bool(pr.get("merged_at"))
    body = pr.get("body")
    has_description = bool(body and body.strip())

    notes: list[NewNote] = []
    if with_notes:
        notes.append(description_note(body, pr.get("created_at"), pr.get("user")))
        notes.extend(comment_note(c) for c in comments or [])
        for review in reviews or []:
            note = review_note(review)
            if note is not None:
                notes.append(note)

    link = NewLinkWithNotes(
        source=pr_source(owner, repo, pr["number"]),
        type="pull_request",
        title=pr.get("title"),
        created=parse_timestamp(pr.get("created_at")),
        author=github_contact(pr.get("user")),
        assignee=github_contact(pr.get("assignee")),
        status="done" if merged else None,
        meta={
            "provider": "github",
            "owner": owner,
            "repo": repo,
            "prNumber": pr["number"],
            "prNodeId": pr.get("id"),
        },
        actions=[Action(type=ActionType.EXTERNAL, title="Open in GitHub", url=pr["html_url"])],
        source_url=pr["html_url"],
        notes=notes,
        preview=body if has_description else None,
    )

    if not initial_sync and pr.get("state") == "closed" and not merged:
        link.archived = True

    return link


def split_repo(channel_id: str) -> tuple[str, str]:
    """Split an "owner/repo" channel id."""
    owner, _, repo = channel_id.partition("/")
    if not owner or not repo:
        raise ValueError(f"Expected 'owner/repo', got {channel_id!r}")
    return owner, repo


# =============================================================================
# SHARED GITHUB PLUMBING
# =============================================================================


class GitHubBase(Source):
    """Repository listing, webhooks and verification shared by GitHub sources."""

    provider: ClassVar[AuthProvider] = AuthProvider.GITHUB
    scopes: ClassVar[tuple[str, ...]] = ("repo",)
    base_url: ClassVar[str] = GITHUB_API_BASE_URL
    webhook_events: ClassVar[tuple[str, ...]] = ()

    def client_headers(self, token: AuthToken) -> dict[str, str]:
        headers = super().client_headers(token)
        headers["Accept"] = "application/vnd.github+json"
        headers["X-GitHub-Api-Version"] = GITHUB_API_VERSION
        return headers

    @abstractmethod
    async def repo_for(self, channel_id: str) -> tuple[str, str]:
        """Return (owner, repo) for a channel."""
        ...

    async def list_repos(self, token: AuthToken) -> list[dict[str, Any]]:
        """All repositories the user owns, collaborates on, or reaches via orgs."""
        repos: list[dict[str, Any]] = []
        page = 1
        async with self.client(token) as client:
            while True:
                batch = await self._request(
                    client,
                    "GET",
                    "/user/repos",
                    params={
                        "affiliation": "owner,collaborator,organization_member",
                        "sort": "pushed",
                        "per_page": COMMENTS_PAGE_SIZE,
                        "page": page,
                    },
                )
                repos.extend(batch or [])
                if not batch or len(batch) < COMMENTS_PAGE_SIZE:
                    break
                page += 1
        return repos

    async def fetch_optional(
        self,
        client: httpx.AsyncClient,
        path: str,
        *,
        paginate: bool = False,
    ) -> list[dict[str, Any]]:
        """Fetch an enrichment list; failures are logged and yield []."""
        results: list[dict[str, Any]] = []
        page = 1
        try:
            while True:
                batch = await self._request(
                    client,
                    "GET",
                    path,
                    params={"per_page": COMMENTS_PAGE_SIZE, "page": page},
                )
                results.extend(batch or [])
                if not paginate or not batch or len(batch) < COMMENTS_PAGE_SIZE:
                    break
                page += 1
        except AuthUnavailableError:
            raise
        except SourceError as e:
            logger.warning(
                "Failed to fetch enrichment, continuing without it",
                extra={"path": path, "error": str(e)},
            )
        return results

    async def setup_webhook(self, channel_id: str) -> None:
        url = await self.create_webhook_url(channel_id)
        if is_local_url(url):
            logger.info(
                "Skipping webhook registration for local URL",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return

        owner, repo = await self.repo_for(channel_id)
        secret = uuid.uuid4().hex
        await self.set(KEY_WEBHOOK_SECRET + channel_id, secret)

        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            hook = await self._request(
                client,
                "POST",
                f"/repos/{owner}/{repo}/hooks",
                json={
                    "name": "web",
                    "active": True,
                    "events": list(self.webhook_events),
                    "config": {
                        "url": url,
                        "content_type": "json",
                        "secret": secret,
                        "insecure_ssl": "0",
                    },
                },
            )

        await self.set(KEY_WEBHOOK_ID + channel_id, hook["id"])
        logger.info(
            "Registered repository webhook",
            extra={"source": self.name, "channel_id": channel_id, "hook_id": hook["id"]},
        )

    async def teardown_webhook(self, channel_id: str) -> None:
        hook_id = await self.get(KEY_WEBHOOK_ID + channel_id)
        if not hook_id:
            return

        owner, repo = await self.repo_for(channel_id)
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            await self._request(client, "DELETE", f"/repos/{owner}/{repo}/hooks/{hook_id}")

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        secret = await self.require_secret(channel_id)
        body = self.require_raw_body(request)
        if not verify_signature(
            secret,
            body,
            request.header(GITHUB_SIGNATURE_HEADER),
            prefix="sha256=",
        ):
            raise WebhookVerificationError("Signature missing or invalid", self.name)

    async def _write(self, meta: dict[str, Any], method: str, path: str, body: dict) -> Any:
        channel_id = meta.get("syncableId") or f"{meta['owner']}/{meta['repo']}"
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            return await self._request(client, method, path, json=body)


# =============================================================================
# PULL REQUEST SOURCE
# =============================================================================


class GitHubSource(GitHubBase):
    """Pull requests from GitHub repositories.

    Channels are repositories identified as "owner/repo". The initial sync
    walks PRs by most recently updated and stops at the first page whose
    PRs all closed before the recent window.
    """

    name: ClassVar[str] = SOURCE_GITHUB
    link_types: ClassVar[tuple[str, ...]] = ("pull_request",)
    config_schema: ClassVar[type[GitHubConfig]] = GitHubConfig
    webhook_events: ClassVar[tuple[str, ...]] = GITHUB_PR_WEBHOOK_EVENTS

    @property
    def config(self) -> GitHubConfig:
        return self._config  # type: ignore[return-value]

    async def repo_for(self, channel_id: str) -> tuple[str, str]:
        return split_repo(channel_id)

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        repos = await self.list_repos(token)
        return [Channel(id=r["full_name"], title=r["full_name"]) for r in repos]

    def _is_recent(self, pr: dict[str, Any], cutoff: datetime) -> bool:
        if pr.get("state") == "open":
            return True
        closed = parse_timestamp(pr.get("merged_at") or pr.get("closed_at"))
        return closed is not None and closed >= cutoff

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        owner, repo = split_repo(channel_id)
        prs = await self._request(
            client,
            "GET",
            f"/repos/{owner}/{repo}/pulls",
            params={
                "state": "all",
                "sort": "updated",
                "direction": "desc",
                "per_page": self.config.page_size,
                "page": state.page,
            },
        )
        prs = prs or []

        cutoff = datetime.now(UTC) - timedelta(days=self.config.recent_days)
        relevant = [pr for pr in prs if self._is_recent(pr, cutoff)]

        has_more = len(prs) == self.config.page_size and bool(relevant)
        return SyncPage(items=relevant, has_more=has_more)

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes:
        owner, repo = split_repo(channel_id)
        number = item["number"]
        comments = await self.fetch_optional(client, f"/repos/{owner}/{repo}/issues/{number}/comments")
        reviews = await self.fetch_optional(client, f"/repos/{owner}/{repo}/pulls/{number}/reviews")
        return pr_to_link(
            item,
            owner,
            repo,
            comments=comments,
            reviews=reviews,
            initial_sync=state.initial_sync,
        )

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        event = request.header(GITHUB_EVENT_HEADER)
        payload = self.payload(request)
        owner, repo = split_repo(channel_id)

        if event == "pull_request":
            link = pr_to_link(payload["pull_request"], owner, repo, with_notes=False)
            await self.save_link(link, channel_id)

        elif event == "pull_request_review":
            note = review_note(payload["review"])
            if note is None:
                return
            link = pr_to_link(payload["pull_request"], owner, repo, with_notes=False)
            link.notes = [note]
            await self.save_link(link, channel_id)

        elif event == "issue_comment":
            issue = payload.get("issue", {})
            if not issue.get("pull_request"):
                return  # comment on a plain issue
            link = NewLinkWithNotes(
                source=pr_source(owner, repo, issue["number"]),
                type="pull_request",
                title=issue.get("title"),
                notes=[comment_note(payload["comment"])],
            )
            await self.save_link(link, channel_id)

        else:
            logger.debug("Ignoring GitHub event", extra={"event": event})

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    async def add_pr_comment(self, meta: dict[str, Any], body: str) -> str:
        """Post a general comment on a PR; returns the note key it maps to."""
        comment = await self._write(
            meta,
            "POST",
            f"/repos/{meta['owner']}/{meta['repo']}/issues/{meta['prNumber']}/comments",
            {"body": body},
        )
        return f"comment-{comment['id']}"

    async def update_pr_status(self, meta: dict[str, Any], done: bool) -> None:
        """Approve the PR when its thread is marked done."""
        if not done:
            return
        await self._write(
            meta,
            "POST",
            f"/repos/{meta['owner']}/{meta['repo']}/pulls/{meta['prNumber']}/reviews",
            {"event": "APPROVE"},
        )

    async def close_pr(self, meta: dict[str, Any]) -> None:
        await self._write(
            meta,
            "PATCH",
            f"/repos/{meta['owner']}/{meta['repo']}/pulls/{meta['prNumber']}",
            {"state": "closed"},
        )
