"""Constants and configuration defaults for twister.

This module contains the magic values, default configurations, and provider
endpoints used throughout the package. Import from here instead of
hardcoding values.
"""

from typing import Final

# =============================================================================
# VERSION
# =============================================================================
VERSION: Final[str] = "0.1.0"

# =============================================================================
# HTTP CLIENT DEFAULTS
# =============================================================================
DEFAULT_HTTP_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_USER_AGENT: Final[str] = f"plot-twister/{VERSION}"

# =============================================================================
# SYNC ENGINE
# =============================================================================
DEFAULT_PAGE_SIZE: Final[int] = 50
MIN_PAGE_SIZE: Final[int] = 20
MAX_PAGE_SIZE: Final[int] = 50
COMMENTS_PAGE_SIZE: Final[int] = 100
INCREMENTAL_PHASE: Final[str] = "incremental"

# =============================================================================
# TASK QUEUE
# =============================================================================
DEFAULT_TASK_MAX_ATTEMPTS: Final[int] = 5
DEFAULT_TASK_BACKOFF_SECONDS: Final[float] = 30.0

# =============================================================================
# STORE KEY PREFIXES (suffixed with the channel id)
# =============================================================================
KEY_SYNC_STATE: Final[str] = "sync_state_"
KEY_SYNC_ENABLED: Final[str] = "sync_enabled_"
KEY_SYNC_LOCK: Final[str] = "sync_lock_"
KEY_WEBHOOK_ID: Final[str] = "webhook_id_"
KEY_WEBHOOK_SECRET: Final[str] = "webhook_secret_"
KEY_WEBHOOK_URL: Final[str] = "webhook_url_"
KEY_WEBHOOK_HANDSHAKE: Final[str] = "webhook_handshake_"
KEY_WATCH: Final[str] = "watch_"
KEY_WATCH_RENEWAL_TASK: Final[str] = "watch_renewal_task_"
KEY_LAST_SYNC_TOKEN: Final[str] = "last_sync_token_"
KEY_REPO_INFO: Final[str] = "repo_info_"

# =============================================================================
# SOURCE NAMES
# =============================================================================
SOURCE_GITHUB: Final[str] = "github"
SOURCE_GITHUB_ISSUES: Final[str] = "github-issues"
SOURCE_LINEAR: Final[str] = "linear"
SOURCE_ASANA: Final[str] = "asana"
SOURCE_GMAIL: Final[str] = "gmail"
SOURCE_GOOGLE_CALENDAR: Final[str] = "google-calendar"
SOURCE_SLACK: Final[str] = "slack"

# =============================================================================
# GITHUB API
# =============================================================================
GITHUB_API_BASE_URL: Final[str] = "https://api.github.com"
GITHUB_API_VERSION: Final[str] = "2022-11-28"
GITHUB_RECENT_DAYS: Final[int] = 30
GITHUB_PR_WEBHOOK_EVENTS: Final[tuple[str, ...]] = (
    "pull_request",
    "pull_request_review",
    "issue_comment",
)
GITHUB_ISSUES_WEBHOOK_EVENTS: Final[tuple[str, ...]] = ("issues", "issue_comment")
GITHUB_SIGNATURE_HEADER: Final[str] = "x-hub-signature-256"
GITHUB_EVENT_HEADER: Final[str] = "x-github-event"

# =============================================================================
# LINEAR API
# =============================================================================
LINEAR_API_BASE_URL: Final[str] = "https://api.linear.app"
LINEAR_GRAPHQL_PATH: Final[str] = "/graphql"
LINEAR_SIGNATURE_HEADER: Final[str] = "linear-signature"
LINEAR_WEBHOOK_TOLERANCE_SECONDS: Final[int] = 60

# =============================================================================
# ASANA API
# =============================================================================
ASANA_API_BASE_URL: Final[str] = "https://app.asana.com/api/1.0"
ASANA_APP_URL: Final[str] = "https://app.asana.com/0"
ASANA_SECRET_HEADER: Final[str] = "x-hook-secret"
ASANA_SIGNATURE_HEADER: Final[str] = "x-hook-signature"
ASANA_TASK_FIELDS: Final[str] = (
    "name,notes,completed,completed_at,created_at,modified_at,permalink_url,"
    "assignee.email,assignee.name,created_by.email,created_by.name"
)

# =============================================================================
# GMAIL API
# =============================================================================
GMAIL_API_BASE_URL: Final[str] = "https://gmail.googleapis.com/gmail/v1/users/me"
GMAIL_WEB_URL: Final[str] = "https://mail.google.com/mail/u/0/#inbox"
GMAIL_DEFAULT_PAGE_SIZE: Final[int] = 20
GMAIL_SEARCH_PREFIX: Final[str] = "search:"
GMAIL_LIST_PHASE: Final[str] = "list"
GMAIL_VISIBLE_SYSTEM_LABELS: Final[frozenset[str]] = frozenset(
    {"INBOX", "SENT", "DRAFT", "IMPORTANT", "STARRED"}
)

# =============================================================================
# GOOGLE CALENDAR API
# =============================================================================
CALENDAR_API_BASE_URL: Final[str] = "https://www.googleapis.com/calendar/v3"
CALENDAR_INITIAL_YEARS_BACK: Final[int] = 2
CALENDAR_INCREMENTAL_DAYS_BACK: Final[int] = 7
CALENDAR_WATCH_RENEWAL_HOURS: Final[int] = 24
CALENDAR_CHANNEL_ID_HEADER: Final[str] = "x-goog-channel-id"
CALENDAR_CHANNEL_TOKEN_HEADER: Final[str] = "x-goog-channel-token"
CALENDAR_RESOURCE_STATE_HEADER: Final[str] = "x-goog-resource-state"

# =============================================================================
# SLACK API
# =============================================================================
SLACK_API_BASE_URL: Final[str] = "https://slack.com/api"
SLACK_HISTORY_LIMIT: Final[int] = 50
SLACK_TITLE_LENGTH: Final[int] = 50
SLACK_SIGNATURE_HEADER: Final[str] = "x-slack-signature"
SLACK_TIMESTAMP_HEADER: Final[str] = "x-slack-request-timestamp"
SLACK_SIGNATURE_TOLERANCE_SECONDS: Final[int] = 300
SLACK_SKIPPED_SUBTYPES: Final[frozenset[str]] = frozenset({"channel_join", "channel_leave"})

# =============================================================================
# PLOT API (CLI)
# =============================================================================
PLOT_DEFAULT_API_URL: Final[str] = "https://api.plot.day"
PLOT_CONFIG_DIR_NAME: Final[str] = ".plot"
PLOT_CONFIG_FILE_NAME: Final[str] = "config.json"
TWIST_MANIFEST_FILE_NAME: Final[str] = "twist.yaml"
TWIST_SPEC_FILE_NAME: Final[str] = "plot-twist.md"
TWIST_ENVIRONMENTS: Final[tuple[str, ...]] = ("personal", "private", "review")

# =============================================================================
# CONFIG FILE
# =============================================================================
CONFIG_FILE_NAME: Final[str] = ".twister.yaml"
DEFAULT_STORE_PATH: Final[str] = ".twister/store.db"
DEFAULT_WEBHOOK_BASE_URL: Final[str] = "http://localhost:8787/hooks"

# =============================================================================
# LOGGING
# =============================================================================
LOG_FORMAT: Final[str] = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
