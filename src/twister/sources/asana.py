"""Asana source.

Tasks from Asana projects. Webhooks follow Asana's handshake: the first
request carries an X-Hook-Secret that is stored and echoed back, and every
later delivery is signed with it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, ClassVar

from twister.constants import (
    ASANA_API_BASE_URL,
    ASANA_APP_URL,
    ASANA_SECRET_HEADER,
    ASANA_SIGNATURE_HEADER,
    ASANA_TASK_FIELDS,
    KEY_WEBHOOK_HANDSHAKE,
    KEY_WEBHOOK_ID,
    KEY_WEBHOOK_SECRET,
    SOURCE_ASANA,
)
from twister.exceptions import AuthUnavailableError, SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    Action,
    ActionType,
    AsanaConfig,
    AuthProvider,
    Channel,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    SyncPage,
    WebhookResponse,
)
from twister.plugins.base import Source, is_local_url
from twister.sources.github import parse_timestamp
from twister.webhooks import verify_signature

if TYPE_CHECKING:
    import httpx

    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

STORY_FIELDS = "created_at,text,type,resource_subtype,created_by.email,created_by.name"


def asana_contact(user: dict[str, Any] | None) -> NewContact | None:
    if not user or not user.get("email"):
        return None
    return NewContact(
        email=user["email"],
        name=user.get("name"),
        avatar=(user.get("photo") or {}).get("image_128x128"),
    )


def task_url(project_id: str, task_gid: str) -> str:
    return f"{ASANA_APP_URL}/{project_id}/{task_gid}"


def story_note(story: dict[str, Any]) -> NewNote:
    return NewNote(
        key=f"story-{story['gid']}",
        content=story.get("text") or "",
        created=parse_timestamp(story.get("created_at")),
        author=asana_contact(story.get("created_by")),
    )


def task_to_link(
    task: dict[str, Any],
    project_id: str,
    *,
    with_notes: bool = True,
) -> NewLinkWithNotes:
    """Map an Asana task to a thread.

    Unassigned tasks carry an explicit null assignee so an upsert clears a
    previous one.
    """
    notes_text = task.get("notes")
    description = notes_text if notes_text and notes_text.strip() else None
    url = task.get("permalink_url") or task_url(project_id, task["gid"])

    notes: list[NewNote] = []
    if with_notes:
        notes.append(
            NewNote(
                key="description",
                content=description,
                created=parse_timestamp(task.get("created_at")),
            )
        )

    return NewLinkWithNotes(
        source=f"asana:task:{task['gid']}",
        type="task",
        title=task.get("name"),
        created=parse_timestamp(task.get("created_at")),
        author=asana_contact(task.get("created_by")),
        assignee=asana_contact(task.get("assignee")),
        status="done" if task.get("completed") else "open",
        meta={"taskGid": task["gid"], "projectId": project_id},
        actions=[Action(type=ActionType.EXTERNAL, title="Open in Asana", url=url)],
        source_url=url,
        notes=notes,
        preview=description,
    )


class AsanaSource(Source):
    """Tasks from Asana projects, paged with Asana's offset tokens."""

    name: ClassVar[str] = SOURCE_ASANA
    provider: ClassVar[AuthProvider] = AuthProvider.ASANA
    scopes: ClassVar[tuple[str, ...]] = ("default",)
    link_types: ClassVar[tuple[str, ...]] = ("task",)
    config_schema: ClassVar[type[AsanaConfig]] = AsanaConfig
    base_url: ClassVar[str] = ASANA_API_BASE_URL

    async def _data(self, client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
        """Call the API and unwrap Asana's {"data": ...} envelope."""
        result = await self._request(client, method, path, **kwargs)
        return (result or {}).get("data")

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        channels: list[Channel] = []
        async with self.client(token) as client:
            workspaces = await self._data(client, "GET", "/workspaces") or []
            for workspace in workspaces:
                projects = await self._data(
                    client,
                    "GET",
                    "/projects",
                    params={"workspace": workspace["gid"], "limit": 100, "archived": "false"},
                )
                channels.extend(Channel(id=p["gid"], title=p.get("name")) for p in projects or [])
        return channels

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        params: dict[str, Any] = {
            "project": channel_id,
            "limit": self.config.page_size,
            "opt_fields": ASANA_TASK_FIELDS,
        }
        if state.cursor:
            params["offset"] = state.cursor
        if state.time_min is not None:
            params["modified_since"] = state.time_min.isoformat()

        result = await self._request(client, "GET", "/tasks", params=params) or {}
        next_offset = (result.get("next_page") or {}).get("offset")
        return SyncPage(
            items=result.get("data") or [],
            has_more=bool(next_offset),
            cursor=next_offset,
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes:
        link = task_to_link(item, channel_id)
        stories = await self._data(
            client,
            "GET",
            f"/tasks/{item['gid']}/stories",
            params={"opt_fields": STORY_FIELDS},
        )
        link.notes.extend(
            story_note(s) for s in stories or [] if s.get("resource_subtype", "comment_added") == "comment_added"
        )
        return link

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
        # Asana performs the X-Hook-Secret handshake before this returns, and
        # only that first handshake may set the secret
        await self.clear(KEY_WEBHOOK_SECRET + channel_id)
        await self.set(KEY_WEBHOOK_HANDSHAKE + channel_id, True)
        try:
            async with self.client(token) as client:
                webhook = await self._data(
                    client,
                    "POST",
                    "/webhooks",
                    json={"data": {"resource": channel_id, "target": url}},
                )
        finally:
            await self.clear(KEY_WEBHOOK_HANDSHAKE + channel_id)
        if webhook and webhook.get("gid"):
            await self.set(KEY_WEBHOOK_ID + channel_id, webhook["gid"])

    async def teardown_webhook(self, channel_id: str) -> None:
        webhook_id = await self.get(KEY_WEBHOOK_ID + channel_id)
        if not webhook_id:
            return
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            await self._request(client, "DELETE", f"/webhooks/{webhook_id}")

    async def handshake(self, channel_id: str, request: WebhookRequest) -> WebhookResponse | None:
        secret = request.header(ASANA_SECRET_HEADER)
        if not secret:
            return None
        if await self.get(KEY_WEBHOOK_SECRET + channel_id) or not await self.get(
            KEY_WEBHOOK_HANDSHAKE + channel_id
        ):
            logger.warning(
                "Rejecting unexpected Asana handshake",
                extra={"channel_id": channel_id},
            )
            return WebhookResponse(status=403)
        await self.set(KEY_WEBHOOK_SECRET + channel_id, secret)
        await self.clear(KEY_WEBHOOK_HANDSHAKE + channel_id)
        logger.info("Completed Asana webhook handshake", extra={"channel_id": channel_id})
        return WebhookResponse(status=200, headers={"X-Hook-Secret": secret})

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        secret = await self.require_secret(channel_id)
        body = self.require_raw_body(request)
        if not verify_signature(secret, body, request.header(ASANA_SIGNATURE_HEADER)):
            raise WebhookVerificationError("Signature missing or invalid", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        events = self.payload(request).get("events") or []
        if not events:
            return

        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            for event in events:
                try:
                    await self._handle_event(client, channel_id, event)
                except AuthUnavailableError:
                    raise
                except SourceError as e:
                    logger.warning(
                        "Failed to process Asana event",
                        extra={"channel_id": channel_id, "error": str(e)},
                    )

    async def _handle_event(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        event: dict[str, Any],
    ) -> None:
        resource = event.get("resource") or {}
        kind = resource.get("resource_type")

        if kind == "story":
            task_gid = (event.get("parent") or {}).get("gid")
            if task_gid:
                await self._upsert_story(client, channel_id, task_gid, resource.get("gid"))
        elif kind == "task":
            if (event.get("change") or {}).get("field") == "stories":
                await self._upsert_story(client, channel_id, resource["gid"], None)
            elif event.get("action") != "deleted":
                task = await self._data(
                    client,
                    "GET",
                    f"/tasks/{resource['gid']}",
                    params={"opt_fields": ASANA_TASK_FIELDS},
                )
                await self.save_link(task_to_link(task, channel_id, with_notes=False), channel_id)

    async def _upsert_story(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        task_gid: str,
        story_gid: str | None,
    ) -> None:
        """Upsert one story as a note; without a story gid, the latest one."""
        if story_gid:
            story = await self._data(
                client,
                "GET",
                f"/stories/{story_gid}",
                params={"opt_fields": STORY_FIELDS},
            )
        else:
            stories = await self._data(
                client,
                "GET",
                f"/tasks/{task_gid}/stories",
                params={"opt_fields": STORY_FIELDS},
            )
            story = stories[-1] if stories else None

        if not story:
            return

        link = NewLinkWithNotes(
            source=f"asana:task:{task_gid}",
            type="task",
            meta={"taskGid": task_gid, "projectId": channel_id},
            notes=[story_note(story)],
        )
        await self.save_link(link, channel_id)

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    async def update_task(
        self,
        meta: dict[str, Any],
        *,
        title: str | None = None,
        completed: bool | None = None,
        assignee_gid: str | None = None,
    ) -> None:
        """Push title, completion and assignee back to the task.

        The assignee is always written, so None unassigns the task.
        """
        fields: dict[str, Any] = {"assignee": assignee_gid}
        if title:
            fields["name"] = title
        if completed is not None:
            fields["completed"] = completed

        token = await self.get_token(meta["projectId"])
        async with self.client(token) as client:
            await self._request(client, "PUT", f"/tasks/{meta['taskGid']}", json={"data": fields})

    async def add_task_comment(self, meta: dict[str, Any], body: str) -> str:
        token = await self.get_token(meta["projectId"])
        async with self.client(token) as client:
            story = await self._data(
                client,
                "POST",
                f"/tasks/{meta['taskGid']}/stories",
                json={"data": {"text": body}},
            )
        return f"story-{story['gid']}"
