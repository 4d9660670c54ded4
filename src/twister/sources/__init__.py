"""Built-in sources.

This package contains one source per provider:
    - GitHubSource: Pull requests, with comments and review summaries
    - GitHubIssuesSource: Issues, open first then recently closed
    - LinearSource: Linear issues and comments
    - AsanaSource: Asana tasks and stories
    - GmailSource: Email threads from labels and searches
    - GoogleCalendarSource: Calendar events, including recurring series
    - SlackSource: Slack message threads

All sources implement the Source interface from the plugins module.
"""

from twister.plugins.base import Source
from twister.sources.asana import AsanaSource
from twister.sources.github import GitHubSource
from twister.sources.github_issues import GitHubIssuesSource
from twister.sources.gmail import GmailSource
from twister.sources.google_calendar import GoogleCalendarSource
from twister.sources.linear import LinearSource
from twister.sources.slack import SlackSource

__all__ = [
    "AsanaSource",
    "GitHubIssuesSource",
    "GitHubSource",
    "GmailSource",
    "GoogleCalendarSource",
    "LinearSource",
    "SlackSource",
    "Source",
]
