"""Pydantic models for twister.

This module contains the data models shared by the host primitives, the
sync engine, the sources and the CLI.

Models are organized by domain:
- Config models (per-source configs, TwisterConfig, CliConfig, TwistManifest)
- Host models (AuthToken, Channel, WebhookRequest, Callback)
- Thread models (NewContact, NewNote, Action, Schedule, NewLinkWithNotes)
- Sync models (SyncState, SyncPage, WatchRegistration)
- Plot API models (Priority, LogEntry)

Thread models distinguish "omitted" from "explicitly null": fields that were
never set are left out of `to_upsert()`, so an upsert only touches what the
transformer actually produced.
"""

from __future__ import annotations

import re
from datetime import date, datetime  # noqa: TC003 - Required at runtime for Pydantic
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from twister.constants import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_STORE_PATH,
    DEFAULT_TASK_BACKOFF_SECONDS,
    DEFAULT_TASK_MAX_ATTEMPTS,
    DEFAULT_WEBHOOK_BASE_URL,
    GITHUB_RECENT_DAYS,
    GMAIL_DEFAULT_PAGE_SIZE,
    LINEAR_WEBHOOK_TOLERANCE_SECONDS,
    MAX_PAGE_SIZE,
    MIN_PAGE_SIZE,
    PLOT_DEFAULT_API_URL,
    SLACK_SIGNATURE_TOLERANCE_SECONDS,
)

# =============================================================================
# CONFIG MODELS
# =============================================================================


class SourceConfig(BaseModel):
    """Settings shared by every source."""

    page_size: int = Field(
        default=DEFAULT_PAGE_SIZE,
        ge=MIN_PAGE_SIZE,
        le=MAX_PAGE_SIZE,
        description="Items fetched per batch",
    )


class GitHubConfig(SourceConfig):
    """GitHub pull request source configuration."""

    recent_days: int = Field(
        default=GITHUB_RECENT_DAYS,
        ge=1,
        description="Closed PRs older than this are not synced",
    )


class GitHubIssuesConfig(SourceConfig):
    """GitHub issues source configuration."""

    closed_days: int = Field(
        default=GITHUB_RECENT_DAYS,
        ge=1,
        description="Window for the closed-issues phase of the initial sync",
    )


class LinearConfig(SourceConfig):
    """Linear source configuration."""

    webhook_tolerance_seconds: int = Field(
        default=LINEAR_WEBHOOK_TOLERANCE_SECONDS,
        ge=1,
        description="Maximum age of a signed webhook delivery",
    )


class AsanaConfig(SourceConfig):
    """Asana source configuration."""


class GmailConfig(SourceConfig):
    """Gmail source configuration."""

    page_size: int = Field(
        default=GMAIL_DEFAULT_PAGE_SIZE,
        ge=MIN_PAGE_SIZE,
        le=MAX_PAGE_SIZE,
        description="Threads fetched per batch",
    )


class GoogleCalendarConfig(SourceConfig):
    """Google Calendar source configuration."""

    initial_years_back: int = Field(default=2, ge=0, description="History window for full sync")
    renewal_hours: int = Field(
        default=24,
        ge=1,
        description="Renew the push watch this many hours before it expires",
    )


class SlackConfig(SourceConfig):
    """Slack source configuration."""

    signing_secret: str = Field(default="", description="Slack app signing secret (from env)")
    signature_tolerance_seconds: int = Field(
        default=SLACK_SIGNATURE_TOLERANCE_SECONDS,
        ge=1,
        description="Maximum age of a signed request",
    )


class SourcesConfig(BaseModel):
    """Configuration for all built-in sources."""

    github: GitHubConfig = Field(default_factory=GitHubConfig)
    github_issues: GitHubIssuesConfig = Field(default_factory=GitHubIssuesConfig)
    linear: LinearConfig = Field(default_factory=LinearConfig)
    asana: AsanaConfig = Field(default_factory=AsanaConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    google_calendar: GoogleCalendarConfig = Field(default_factory=GoogleCalendarConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)

    def for_source(self, name: str) -> SourceConfig | None:
        """Return the config section for a source name, if there is one."""
        value = getattr(self, name.replace("-", "_"), None)
        return value if isinstance(value, SourceConfig) else None


class StoreConfig(BaseModel):
    """Local host store configuration."""

    path: str = Field(default=DEFAULT_STORE_PATH, description="SQLite path or ':memory:'")


class WebhooksConfig(BaseModel):
    """Local host webhook configuration."""

    base_url: str = Field(
        default=DEFAULT_WEBHOOK_BASE_URL,
        description="Public base URL that inbound webhooks are served under",
    )


class TasksConfig(BaseModel):
    """Task queue retry policy."""

    max_attempts: int | None = Field(
        default=DEFAULT_TASK_MAX_ATTEMPTS,
        ge=1,
        description="Attempts per task before it is dropped (null for unbounded)",
    )
    backoff_seconds: float = Field(
        default=DEFAULT_TASK_BACKOFF_SECONDS,
        ge=0,
        description="Delay multiplied by the attempt number between retries",
    )


class TwisterConfig(BaseModel):
    """Root configuration for a local twister host."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    webhooks: WebhooksConfig = Field(default_factory=WebhooksConfig)
    tasks: TasksConfig = Field(default_factory=TasksConfig)
    tokens: dict[str, str] = Field(
        default_factory=dict,
        description="Provider name to access token, for local runs",
    )
    sources: SourcesConfig = Field(default_factory=SourcesConfig)


class CliConfig(BaseModel):
    """Contents of ~/.plot/config.json."""

    model_config = ConfigDict(populate_by_name=True)

    api_url: str | None = Field(default=None, alias="apiUrl")
    api_token: str | None = Field(default=None, alias="apiToken")
    deploy_token: str | None = Field(default=None, alias="deployToken")


_ENTRY_PATTERN = re.compile(r"^[A-Za-z_][\w.]*:[A-Za-z_]\w*$")


class TwistManifest(BaseModel):
    """A twist's twist.yaml manifest."""

    name: str = Field(..., min_length=1, description="Package name")
    display_name: str | None = Field(default=None, description="Human-readable name")
    description: str | None = Field(default=None, description="What the twist does")
    twist_id: str | None = Field(default=None, description="Assigned on first deploy/generate")
    kind: Literal["twist", "source"] = Field(default="twist")
    entry: str = Field(..., description="Entry point as 'module:ClassName'")

    @field_validator("entry")
    @classmethod
    def _check_entry(cls, value: str) -> str:
        if not _ENTRY_PATTERN.match(value):
            raise ValueError("entry must look like 'module:ClassName'")
        return value

    @property
    def entry_module(self) -> str:
        return self.entry.split(":", 1)[0]

    @property
    def entry_class(self) -> str:
        return self.entry.split(":", 1)[1]


# =============================================================================
# HOST MODELS
# =============================================================================


class AuthProvider(str, Enum):
    """Providers an integration token can come from."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    NOTION = "notion"
    SLACK = "slack"
    ATLASSIAN = "atlassian"
    LINEAR = "linear"
    MONDAY = "monday"
    GITHUB = "github"
    ASANA = "asana"
    HUBSPOT = "hubspot"


class AuthToken(BaseModel):
    """An access token handed out by the host for one channel."""

    token: str = Field(..., description="Bearer token")
    scopes: list[str] = Field(default_factory=list)
    provider: AuthProvider


class Channel(BaseModel):
    """A syncable container (repo, team, project, label, calendar, channel)."""

    id: str
    title: str | None = None


class WebhookRequest(BaseModel):
    """An inbound webhook as delivered by the host."""

    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    params: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    raw_body: str | None = None

    @field_validator("headers")
    @classmethod
    def _lower_headers(cls, value: dict[str, str]) -> dict[str, str]:
        return {k.lower(): v for k, v in value.items()}

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())


class WebhookResponse(BaseModel):
    """Response returned to the provider for handshakes."""

    status: int = 200
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None


class Callback(BaseModel):
    """A persisted callback: which handler to run on which source, with what.

    Arguments must be JSON-serializable. Extra arguments supplied at run
    time (a webhook request, say) are appended after the bound ones.
    """

    target: str = Field(..., description="Name of the source that owns the handler")
    handler_name: str = Field(..., description="Name of a @callback_handler method")
    args: list[Any] = Field(default_factory=list)


# =============================================================================
# THREAD MODELS
# =============================================================================


class NewContact(BaseModel):
    """A person referenced by a thread, note, or tag."""

    email: str | None = None
    name: str | None = None
    avatar: str | None = None
    external_id: str | None = Field(default=None, description="Provider id when no email exists")


class ActionType(str, Enum):
    EXTERNAL = "external"
    CONFERENCING = "conferencing"


class Action(BaseModel):
    """A link the user can follow from a thread."""

    type: ActionType
    title: str | None = None
    url: str
    provider: str | None = None


class NewNote(BaseModel):
    """One note on a thread; notes with a key are upserted by that key."""

    key: str | None = None
    content: str | None = None
    content_type: Literal["text", "markdown", "html"] | None = None
    created: datetime | None = None
    author: NewContact | None = None
    mentions: list[NewContact] | None = None


class Tag(str, Enum):
    """RSVP-style tags attached to contacts."""

    ATTEND = "attend"
    SKIP = "skip"
    UNDECIDED = "undecided"


class Schedule(BaseModel):
    """When a thread happens, including recurrence."""

    start: datetime | date | None = None
    end: datetime | date | None = None
    recurrence_rule: str | None = None
    recurrence_count: int | None = None
    recurrence_until: datetime | date | None = None
    recurrence_exdates: list[datetime | date] | None = None


class ScheduleOccurrence(BaseModel):
    """An exception to a recurring schedule, keyed by its original start."""

    occurrence: datetime | date
    start: datetime | date | None = None
    end: datetime | date | None = None
    archived: bool | None = None
    unread: bool | None = None
    tags: dict[Tag, list[NewContact]] | None = None


class NewLinkWithNotes(BaseModel):
    """A canonical thread with its notes, ready to be upserted by `source`."""

    source: str = Field(..., description="Stable provider-derived identity")
    type: str
    title: str | None = None
    created: datetime | None = None
    author: NewContact | None = None
    assignee: NewContact | None = None
    status: str | None = None
    channel_id: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)
    actions: list[Action] | None = None
    source_url: str | None = None
    notes: list[NewNote] = Field(default_factory=list)
    preview: str | None = None
    unread: bool | None = None
    archived: bool | None = None
    schedules: list[Schedule] | None = None
    schedule_occurrences: list[ScheduleOccurrence] | None = None
    tags: dict[Tag, list[NewContact]] | None = None

    def to_upsert(self) -> dict[str, Any]:
        """Serialize only the fields that were set, as JSON-compatible data."""
        data = self.model_dump(mode="json", exclude_unset=True)
        data["source"] = self.source
        data["type"] = self.type
        data.setdefault("notes", [])
        data.setdefault("meta", {})
        return data


# =============================================================================
# SYNC MODELS
# =============================================================================


class SyncState(BaseModel):
    """Cursor and counters of an in-progress sync run for one channel."""

    page: int = Field(default=1, ge=1, description="Page number for page-based APIs")
    offset: int = Field(default=0, ge=0, description="Offset for offset-based APIs")
    cursor: str | None = Field(default=None, description="Opaque next-page token")
    batch_number: int = Field(default=1, ge=1)
    items_processed: int = Field(default=0, ge=0)
    initial_sync: bool = Field(default=True, description="First sync after enablement")
    phase: str | None = Field(default=None, description="Current phase of a multi-phase sync")
    sync_token: str | None = Field(default=None, description="Provider delta token")
    time_min: datetime | None = None
    time_max: datetime | None = None


class SyncPage(BaseModel):
    """One fetched page, as returned by a source to the sync engine."""

    items: list[Any] = Field(default_factory=list)
    has_more: bool = False
    cursor: str | None = None
    phase: str | None = Field(
        default=None,
        description="Phase the page was actually fetched in, when the source switched mid-run",
    )
    next_phase: str | None = Field(default=None, description="Phase to continue with")
    sync_token: str | None = Field(default=None, description="Delta token to keep for next run")


class WatchRegistration(BaseModel):
    """A provider push subscription that expires (Calendar, Gmail)."""

    watch_id: str | None = None
    resource_id: str | None = None
    secret: str | None = None
    expiry: datetime | None = None
    history_id: str | None = None
    topic: str | None = None


# =============================================================================
# PLOT API MODELS
# =============================================================================


class Priority(BaseModel):
    """A Plot priority."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    parent_id: str | None = Field(default=None, alias="parentId")


class LogEntry(BaseModel):
    """One entry of a deployed twist's log stream."""

    timestamp: datetime | None = None
    severity: str = "INFO"
    message: str = ""
