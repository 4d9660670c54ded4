"""Google Calendar source.

Syncs events from enabled calendars, with recurring series kept as a single
thread and their modified or cancelled instances folded in as schedule
occurrences. Changes are pushed through an events watch that expires and is
renewed a day ahead by a scheduled task; deliveries close to expiry renew
it in the background as well.

The "primary" calendar alias is resolved to the calendar's real id on
enable, so all store keys use the real id.
"""

from __future__ import annotations

import re
import uuid
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import parse_qs, quote, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from twister.constants import (
    CALENDAR_API_BASE_URL,
    CALENDAR_CHANNEL_ID_HEADER,
    CALENDAR_CHANNEL_TOKEN_HEADER,
    CALENDAR_INCREMENTAL_DAYS_BACK,
    CALENDAR_RESOURCE_STATE_HEADER,
    KEY_LAST_SYNC_TOKEN,
    KEY_WATCH,
    KEY_WATCH_RENEWAL_TASK,
    SOURCE_GOOGLE_CALENDAR,
)
from twister.exceptions import SourceError, WebhookVerificationError
from twister.logging import get_logger
from twister.models import (
    Action,
    ActionType,
    AuthProvider,
    Channel,
    GoogleCalendarConfig,
    NewContact,
    NewLinkWithNotes,
    NewNote,
    Schedule,
    ScheduleOccurrence,
    SyncPage,
    Tag,
    WatchRegistration,
    WebhookResponse,
)
from twister.plugins.base import Source, callback_handler, is_local_url
from twister.sources.github import parse_timestamp
from twister.webhooks import constant_time_equals

if TYPE_CHECKING:
    import httpx

    from twister.host.base import Tools
    from twister.models import AuthToken, SyncState, WebhookRequest

logger = get_logger(__name__)

KEY_PRIMARY_ALIAS = "calendar_alias_primary"

RSVP_TAGS = {
    "accepted": Tag.ATTEND,
    "declined": Tag.SKIP,
    "tentative": Tag.UNDECIDED,
    "needsAction": Tag.UNDECIDED,
}

CONFERENCING_PATTERNS = (
    ("zoom", re.compile(r"https://[\w.-]*zoom\.us/(?:j|my|w)/[^\s\"'<>]+")),
    ("microsoft_teams", re.compile(r"https://teams\.microsoft\.com/l/meetup-join/[^\s\"'<>]+")),
    ("webex", re.compile(r"https://[\w.-]*webex\.com/[^\s\"'<>]+")),
    ("google_meet", re.compile(r"https://meet\.google\.com/[a-z0-9-]+")),
)

_HTML_PATTERN = re.compile(r"<(?:[a-zA-Z][^>]*|/[a-zA-Z]+)>")


# =============================================================================
# RECURRENCE PARSING
# =============================================================================


def parse_ical_datetime(value: str, tzid: str | None = None) -> datetime | date:
    """Parse iCalendar DATE ("20240105") or DATE-TIME ("20240105T100000Z")."""
    if "T" not in value:
        return datetime.strptime(value, "%Y%m%d").date()

    parsed = datetime.strptime(value.rstrip("Z"), "%Y%m%dT%H%M%S")
    if value.endswith("Z"):
        return parsed.replace(tzinfo=UTC)
    if tzid:
        try:
            return parsed.replace(tzinfo=ZoneInfo(tzid))
        except ZoneInfoNotFoundError:
            logger.debug("Unknown TZID, treating as UTC", extra={"tzid": tzid})
    return parsed.replace(tzinfo=UTC)


def rrule_parts(recurrence: list[str] | None) -> dict[str, str]:
    rule = next((r for r in recurrence or [] if r.startswith("RRULE:")), None)
    if rule is None:
        return {}
    parts = {}
    for item in rule[len("RRULE:") :].split(";"):
        key, _, value = item.partition("=")
        if key:
            parts[key.upper()] = value
    return parts


def parse_rrule(recurrence: list[str] | None) -> str | None:
    rule = next((r for r in recurrence or [] if r.startswith("RRULE:")), None)
    return rule[len("RRULE:") :] if rule else None


def parse_exdates(recurrence: list[str] | None) -> list[datetime | date]:
    """Collect EXDATE values, honouring a TZID parameter when present."""
    dates: list[datetime | date] = []
    for rule in recurrence or []:
        if not rule.startswith("EXDATE"):
            continue
        params, _, values = rule.partition(":")
        tzid = None
        for param in params.split(";")[1:]:
            key, _, value = param.partition("=")
            if key.upper() == "TZID":
                tzid = value
        dates.extend(parse_ical_datetime(v, tzid) for v in values.split(",") if v)
    return dates


# =============================================================================
# EVENT MAPPING
# =============================================================================


def event_time(value: dict[str, Any] | None) -> datetime | date | None:
    """Timed events carry dateTime; all-day events carry a bare date."""
    if not value:
        return None
    if value.get("dateTime"):
        return datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
    if value.get("date"):
        return date.fromisoformat(value["date"])
    return None


def event_schedule(event: dict[str, Any]) -> Schedule:
    schedule = Schedule(start=event_time(event.get("start")), end=event_time(event.get("end")))

    recurrence = event.get("recurrence")
    if recurrence and not event.get("recurringEventId"):
        schedule.recurrence_rule = parse_rrule(recurrence)
        parts = rrule_parts(recurrence)
        if parts.get("COUNT", "").isdigit():
            schedule.recurrence_count = int(parts["COUNT"])
        elif parts.get("UNTIL"):
            schedule.recurrence_until = parse_ical_datetime(parts["UNTIL"])
        exdates = parse_exdates(recurrence)
        if exdates:
            schedule.recurrence_exdates = exdates
    return schedule


def attendee_tags(event: dict[str, Any]) -> dict[Tag, list[NewContact]] | None:
    """Group human attendees by RSVP status."""
    tags: dict[Tag, list[NewContact]] = {}
    for attendee in event.get("attendees") or []:
        if not attendee.get("email") or attendee.get("resource"):
            continue
        tag = RSVP_TAGS.get(attendee.get("responseStatus", ""))
        if tag is None:
            continue
        tags.setdefault(tag, []).append(
            NewContact(email=attendee["email"], name=attendee.get("displayName"))
        )
    return tags or None


def conferencing_actions(event: dict[str, Any]) -> list[Action]:
    """Video call links from the conference data, hangoutLink and description."""
    actions: list[Action] = []
    seen: set[str] = set()

    def add(url: str, provider: str) -> None:
        if url not in seen:
            seen.add(url)
            actions.append(Action(type=ActionType.CONFERENCING, url=url, provider=provider))

    conference = event.get("conferenceData") or {}
    solution = ((conference.get("conferenceSolution") or {}).get("key") or {}).get("type")
    for entry in conference.get("entryPoints") or []:
        if entry.get("entryPointType") == "video" and entry.get("uri"):
            add(entry["uri"], "google_meet" if solution == "hangoutsMeet" else _detect_provider(entry["uri"]))

    if event.get("hangoutLink"):
        add(event["hangoutLink"], "google_meet")

    text = " ".join(filter(None, [event.get("location"), event.get("description")]))
    for provider, pattern in CONFERENCING_PATTERNS:
        for match in pattern.findall(text):
            add(match, provider)

    return actions


def _detect_provider(url: str) -> str:
    for provider, pattern in CONFERENCING_PATTERNS:
        if pattern.match(url):
            return provider
    return "other"


def event_source(event_id: str) -> str:
    return f"google-calendar:{event_id}"


def event_to_link(event: dict[str, Any], calendar_id: str) -> NewLinkWithNotes:
    """Map a single or master recurring event to a thread.

    RSVP tags are only attached to non-recurring events; for series they
    belong on the individual occurrences.
    """
    schedule = event_schedule(event)
    is_recurring = schedule.recurrence_rule is not None
    all_day = isinstance(schedule.start, date) and not isinstance(schedule.start, datetime)

    actions = conferencing_actions(event)
    if event.get("htmlLink"):
        actions.append(
            Action(type=ActionType.EXTERNAL, title="View in Calendar", url=event["htmlLink"])
        )

    description = event.get("description")
    has_description = bool(description and description.strip())
    notes = []
    if has_description:
        notes.append(
            NewNote(
                key="description",
                content=description,
                content_type="html" if _HTML_PATTERN.search(description) else "text",
                created=parse_timestamp(event.get("created")),
            )
        )

    organizer = event.get("organizer") or {}
    return NewLinkWithNotes(
        source=event_source(event["id"]),
        type="note" if all_day else "event",
        title=event.get("summary") or "",
        created=parse_timestamp(event.get("created")),
        author=(
            NewContact(email=organizer["email"], name=organizer.get("displayName"))
            if organizer.get("email")
            else None
        ),
        meta={
            "id": event["id"],
            "calendarId": calendar_id,
            "htmlLink": event.get("htmlLink"),
            "hangoutLink": event.get("hangoutLink"),
        },
        actions=actions or None,
        source_url=event.get("htmlLink"),
        notes=notes,
        preview=description if has_description else None,
        schedules=[schedule],
        tags=None if is_recurring else attendee_tags(event),
    )


def cancelled_event_link(event: dict[str, Any], calendar_id: str) -> NewLinkWithNotes:
    return NewLinkWithNotes(
        source=event_source(event["id"]),
        type="event",
        title=event.get("summary") or "",
        created=parse_timestamp(event.get("created")),
        meta={"id": event["id"], "calendarId": calendar_id},
        notes=[
            NewNote(
                key="cancellation",
                content="This event was cancelled.",
                content_type="text",
                created=parse_timestamp(event.get("updated")) or datetime.now(UTC),
            )
        ],
        preview="Cancelled",
    )


def occurrence_link(event: dict[str, Any], *, initial_sync: bool) -> NewLinkWithNotes | None:
    """Fold a recurring-series instance into its master as an occurrence."""
    original = event_time(event.get("originalStartTime"))
    if original is None:
        logger.warning("Recurring instance without original start", extra={"event_id": event.get("id")})
        return None

    start = event_time(event.get("start")) or original
    end = event_time(event.get("end"))

    if event.get("status") == "cancelled":
        occurrence = ScheduleOccurrence(occurrence=original, start=start, end=end, archived=True)
    else:
        occurrence = ScheduleOccurrence(occurrence=original, start=start, tags=attendee_tags(event))
        if end is not None:
            occurrence.end = end
        if initial_sync:
            occurrence.unread = False

    return NewLinkWithNotes(
        source=event_source(event["recurringEventId"]),
        type="event",
        schedule_occurrences=[occurrence],
    )


# =============================================================================
# SOURCE
# =============================================================================


class GoogleCalendarSource(Source):
    """Events from Google calendars."""

    name: ClassVar[str] = SOURCE_GOOGLE_CALENDAR
    provider: ClassVar[AuthProvider] = AuthProvider.GOOGLE
    scopes: ClassVar[tuple[str, ...]] = (
        "https://www.googleapis.com/auth/calendar.calendarlist.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    )
    link_types: ClassVar[tuple[str, ...]] = ("event", "note")
    config_schema: ClassVar[type[GoogleCalendarConfig]] = GoogleCalendarConfig
    base_url: ClassVar[str] = CALENDAR_API_BASE_URL

    def __init__(self, tools: Tools, config: GoogleCalendarConfig | None = None) -> None:
        super().__init__(tools, config)
        self._renewing: set[str] = set()

    @property
    def config(self) -> GoogleCalendarConfig:
        return self._config  # type: ignore[return-value]

    @staticmethod
    def events_path(calendar_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}/events"

    async def get_channels(self, token: AuthToken) -> list[Channel]:
        async with self.client(token) as client:
            result = await self._request(client, "GET", "/users/me/calendarList") or {}
        return [Channel(id=c["id"], title=c.get("summary")) for c in result.get("items") or []]

    async def resolve_channel_id(self, channel_id: str, *, enabling: bool) -> str:
        if channel_id != "primary":
            return channel_id

        if not enabling:
            resolved = await self.get(KEY_PRIMARY_ALIAS)
            if resolved:
                await self.clear(KEY_PRIMARY_ALIAS)
                return str(resolved)

        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            calendar = await self._request(client, "GET", "/calendars/primary")
        if enabling:
            await self.set(KEY_PRIMARY_ALIAS, calendar["id"])
        return calendar["id"]

    def initial_time_min(self) -> datetime:
        """January 1st of the first year in the full-sync window."""
        now = datetime.now(UTC)
        return datetime(now.year - self.config.initial_years_back, 1, 1, tzinfo=UTC)

    async def start_sync(self, channel_id: str, *, time_min: datetime | None = None) -> None:
        await super().start_sync(channel_id, time_min=time_min or self.initial_time_min())

    # =========================================================================
    # SYNC
    # =========================================================================

    async def fetch_page(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        state: SyncState,
    ) -> SyncPage:
        params: dict[str, Any] = {
            "singleEvents": "false",
            "showDeleted": "true",
            "maxResults": self.config.page_size,
        }
        if state.cursor:
            params["pageToken"] = state.cursor
        elif state.sync_token:
            params["syncToken"] = state.sync_token
        else:
            if state.time_min is not None:
                params["timeMin"] = state.time_min.isoformat()
            if state.time_max is not None:
                params["timeMax"] = state.time_max.isoformat()

        try:
            result = await self._request(client, "GET", self.events_path(channel_id), params=params)
        except SourceError as e:
            if e.details.get("status_code") != 410 or "syncToken" not in params:
                raise
            # Sync token invalidated; start over with a full listing
            logger.info("Calendar sync token expired, running full sync")
            await self.clear(KEY_LAST_SYNC_TOKEN + channel_id)
            params.pop("syncToken")
            params["timeMin"] = self.initial_time_min().isoformat()
            result = await self._request(client, "GET", self.events_path(channel_id), params=params)

        result = result or {}
        next_token = result.get("nextPageToken")
        return SyncPage(
            items=result.get("items") or [],
            has_more=bool(next_token),
            cursor=next_token,
            sync_token=result.get("nextSyncToken"),
        )

    async def transform(
        self,
        client: httpx.AsyncClient,
        channel_id: str,
        item: dict[str, Any],
        state: SyncState,
    ) -> NewLinkWithNotes | None:
        if item.get("recurringEventId") and item.get("originalStartTime"):
            return occurrence_link(item, initial_sync=state.initial_sync)

        if item.get("status") == "cancelled":
            if state.initial_sync:
                return None
            return cancelled_event_link(item, channel_id)

        return event_to_link(item, channel_id)

    # =========================================================================
    # WATCH
    # =========================================================================

    async def load_watch(self, channel_id: str) -> WatchRegistration | None:
        raw = await self.get(KEY_WATCH + channel_id)
        return None if raw is None else WatchRegistration.model_validate(raw)

    async def setup_webhook(self, channel_id: str) -> None:
        url = await self.create_webhook_url(channel_id)
        if is_local_url(url):
            logger.info(
                "Skipping calendar watch for local URL",
                extra={"source": self.name, "channel_id": channel_id},
            )
            return

        watch_id = str(uuid.uuid4())
        secret = str(uuid.uuid4())
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            result = await self._request(
                client,
                "POST",
                f"{self.events_path(channel_id)}/watch",
                json={
                    "id": watch_id,
                    "type": "web_hook",
                    "address": url,
                    "token": urlencode({"secret": secret}),
                },
            )

        watch = WatchRegistration(
            watch_id=watch_id,
            resource_id=result.get("resourceId"),
            secret=secret,
            expiry=datetime.fromtimestamp(int(result["expiration"]) / 1000, UTC),
        )
        await self.set(KEY_WATCH + channel_id, watch.model_dump(mode="json"))
        await self.schedule_watch_renewal(channel_id)

    async def teardown_webhook(self, channel_id: str) -> None:
        watch = await self.load_watch(channel_id)
        if watch is None or not watch.watch_id:
            return
        token = await self.get_token(channel_id)
        async with self.client(token) as client:
            await self._request(
                client,
                "POST",
                "/channels/stop",
                json={"id": watch.watch_id, "resourceId": watch.resource_id},
            )

    async def schedule_watch_renewal(self, channel_id: str) -> None:
        """Schedule `renew_watch` ahead of expiry, or renew now if that time passed."""
        watch = await self.load_watch(channel_id)
        if watch is None or watch.expiry is None:
            logger.warning("No watch to schedule renewal for", extra={"channel_id": channel_id})
            return

        renew_at = watch.expiry - timedelta(hours=self.config.renewal_hours)
        if renew_at <= datetime.now(UTC):
            await self.renew_watch(channel_id)
            return

        task_id = await self.run_task("renew_watch", channel_id, run_at=renew_at)
        await self.set(KEY_WATCH_RENEWAL_TASK + channel_id, task_id)
        logger.debug(
            "Scheduled watch renewal",
            extra={"channel_id": channel_id, "run_at": renew_at.isoformat()},
        )

    @callback_handler
    async def renew_watch(self, channel_id: str) -> None:
        """Replace the channel's watch with a fresh one. Errors are logged."""
        if channel_id in self._renewing:
            return
        if await self.load_watch(channel_id) is None:
            logger.warning("No watch to renew", extra={"channel_id": channel_id})
            return

        self._renewing.add(channel_id)
        try:
            renewal_task = await self.get(KEY_WATCH_RENEWAL_TASK + channel_id)
            if renewal_task:
                await self.tools.tasks.cancel_task(renewal_task)
                await self.clear(KEY_WATCH_RENEWAL_TASK + channel_id)

            await self._teardown_webhook_safely(channel_id)
            await self.setup_webhook(channel_id)
        except Exception as e:
            logger.error(
                "Failed to renew watch",
                extra={"channel_id": channel_id, "error": str(e)},
            )
        finally:
            self._renewing.discard(channel_id)

    # =========================================================================
    # WEBHOOK INGEST
    # =========================================================================

    async def handshake(self, channel_id: str, request: WebhookRequest) -> WebhookResponse | None:
        if request.header(CALENDAR_RESOURCE_STATE_HEADER) == "sync":
            return WebhookResponse(status=200)
        return None

    async def verify_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        watch = await self.load_watch(channel_id)
        if watch is None or not watch.watch_id or not watch.secret:
            raise WebhookVerificationError(
                "No active watch for channel",
                self.name,
                {"channel_id": channel_id},
            )

        header_id = request.header(CALENDAR_CHANNEL_ID_HEADER) or ""
        if not constant_time_equals(header_id, watch.watch_id):
            raise WebhookVerificationError("Unknown or expired watch", self.name)

        token = request.header(CALENDAR_CHANNEL_TOKEN_HEADER) or ""
        secret = (parse_qs(token).get("secret") or [""])[0]
        if not constant_time_equals(secret, watch.secret):
            raise WebhookVerificationError("Watch secret mismatch", self.name)

    async def route_webhook(self, channel_id: str, request: WebhookRequest) -> None:
        watch = await self.load_watch(channel_id)
        if watch is not None and watch.expiry is not None:
            renew_by = datetime.now(UTC) + timedelta(hours=self.config.renewal_hours)
            if watch.expiry < renew_by:
                self.spawn(self.renew_watch(channel_id), "renew_watch")

        sync_token = await self.get(KEY_LAST_SYNC_TOKEN + channel_id)
        if sync_token:
            await self.start_incremental_sync(channel_id, sync_token=sync_token)
        else:
            time_min = datetime.now(UTC) - timedelta(days=CALENDAR_INCREMENTAL_DAYS_BACK)
            await self.start_incremental_sync(channel_id, time_min=time_min)

    # =========================================================================
    # WRITE-BACK
    # =========================================================================

    async def update_event_rsvp(self, channel_id: str, event_id: str, status: str) -> bool:
        """Set the user's response on an event.

        Returns:
            True if the event was patched; False when the user is not an
            attendee or already has that response.
        """
        token = await self.get_token(channel_id)
        path = f"{self.events_path(channel_id)}/{quote(event_id, safe='')}"
        async with self.client(token) as client:
            event = await self._request(client, "GET", path)
            primary = await self._request(client, "GET", "/users/me/calendarList/primary")
            user_email = (primary.get("id") or "").lower()

            attendees = event.get("attendees") or []
            mine = next(
                (
                    a
                    for a in attendees
                    if a.get("self") or (a.get("email") or "").lower() == user_email
                ),
                None,
            )
            if mine is None:
                logger.warning("User is not an attendee", extra={"event_id": event_id})
                return False
            if mine.get("responseStatus") == status:
                return False

            mine["responseStatus"] = status
            await self._request(client, "PATCH", path, json={"attendees": attendees})
        return True
