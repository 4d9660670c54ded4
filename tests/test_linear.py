"""Tests for the Linear source."""

from __future__ import annotations

import json
import time
from typing import Any

import pytest
from pytest_httpx import HTTPXMock

from twister.constants import KEY_WEBHOOK_ID, KEY_WEBHOOK_SECRET
from twister.exceptions import SourceError
from twister.host import LocalHost
from twister.models import AuthProvider, AuthToken, Channel, WebhookRequest
from twister.sources.linear import LinearSource, issue_to_link
from twister.webhooks import compute_signature

GRAPHQL_URL = "https://api.linear.app/graphql"

SAMPLE_ISSUE = {
    "id": "iss-1",
    "identifier": "ENG-12",
    "title": "Flaky login test",
    "description": "Fails about once a day.",
    "url": "https://linear.app/acme/issue/ENG-12",
    "createdAt": "2024-04-01T08:00:00.000Z",
    "completedAt": None,
    "canceledAt": None,
    "project": {"id": "proj-1"},
    "creator": {"email": "alice@example.com", "name": "Alice"},
    "assignee": None,
    "comments": {
        "nodes": [
            {
                "id": "c-1",
                "body": "Seen it too",
                "createdAt": "2024-04-02T08:00:00.000Z",
                "user": {"email": "bob@example.com", "name": "Bob"},
            }
        ]
    },
}


def issues_page(nodes: list[dict[str, Any]], *, has_next: bool, cursor: str | None) -> dict:
    return {
        "data": {
            "team": {
                "issues": {
                    "nodes": nodes,
                    "pageInfo": {"hasNextPage": has_next, "endCursor": cursor},
                }
            }
        }
    }


def sent_variables(request: Any) -> dict[str, Any]:
    return json.loads(request.content)["variables"]


@pytest.fixture
async def linear(host: LocalHost) -> LinearSource:
    """Attach the Linear source to the host."""
    source = await host.attach("linear")
    assert isinstance(source, LinearSource)
    return source


class TestIssueMapping:
    """Tests for issue_to_link."""

    def test_issue_with_comments(self) -> None:
        """Test the thread produced for a GraphQL issue node."""
        link = issue_to_link(SAMPLE_ISSUE, "team-1")

        assert link.source == "linear:issue:iss-1"
        assert link.status == "open"
        assert link.meta == {"linearId": "iss-1", "projectId": "team-1", "linearProjectId": "proj-1"}
        assert [n.key for n in link.notes] == ["description", "comment-c-1"]
        assert link.notes[1].content_type == "markdown"
        assert link.assignee is None

    def test_canceled_issue_is_done(self) -> None:
        """Test that canceled issues count as done."""
        link = issue_to_link({**SAMPLE_ISSUE, "canceledAt": "2024-04-03T00:00:00.000Z"}, "team-1")
        assert link.status == "done"

    def test_webhook_data_project_id(self) -> None:
        """Test that flat webhook payloads keep the channel and carry the Linear project."""
        data = {"id": "iss-2", "title": "Webhook issue", "projectId": "proj-9"}

        link = issue_to_link(data, "team-1", with_notes=False)

        assert link.meta == {"linearId": "iss-2", "projectId": "team-1", "linearProjectId": "proj-9"}
        assert link.notes == []

    def test_partial_webhook_data_leaves_people_unset(self) -> None:
        """Test that data without creator or assignee sends neither field."""
        data = {"id": "iss-2", "title": "Webhook issue", "creatorId": "u-1"}

        upsert = issue_to_link(data, "team-1", with_notes=False).to_upsert()

        assert "author" not in upsert
        assert "assignee" not in upsert

    def test_unassigned_webhook_clears_assignee(self) -> None:
        """Test that a null assigneeId is sent as an explicit null assignee."""
        data = {"id": "iss-2", "assigneeId": None}

        upsert = issue_to_link(data, "team-1", with_notes=False).to_upsert()

        assert upsert["assignee"] is None


class TestLinearSync:
    """Tests for the cursor-paginated team sync."""

    async def test_enable_and_paginate(
        self, host: LocalHost, linear: LinearSource, httpx_mock: HTTPXMock
    ) -> None:
        """Test webhook creation followed by two cursor pages."""
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={
                "data": {
                    "webhookCreate": {
                        "success": True,
                        "webhook": {"id": "wh-1", "secret": "lin-secret"},
                    }
                }
            },
        )
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json=issues_page([SAMPLE_ISSUE], has_next=True, cursor="cur-1"),
        )
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json=issues_page([{**SAMPLE_ISSUE, "id": "iss-2", "comments": None}], has_next=False, cursor=None),
        )

        await linear.on_channel_enabled(Channel(id="team-1", title="Engineering"))
        runs = await host.tasks.drain()

        assert runs == 2
        assert set(host.integrations.links) == {"linear:issue:iss-1", "linear:issue:iss-2"}
        assert await linear.get(KEY_WEBHOOK_ID + "team-1") == "wh-1"
        assert await linear.get(KEY_WEBHOOK_SECRET + "team-1") == "lin-secret"

        create, first, second = httpx_mock.get_requests()
        assert sent_variables(create)["input"]["teamId"] == "team-1"
        assert sent_variables(create)["input"]["resourceTypes"] == ["Issue", "Comment"]
        assert sent_variables(first) == {"teamId": "team-1", "first": 50, "after": None}
        assert sent_variables(second)["after"] == "cur-1"
        assert first.headers["Authorization"] == "Bearer lin-token"

    async def test_graphql_errors_raise(self, linear: LinearSource, httpx_mock: HTTPXMock) -> None:
        """Test that GraphQL error payloads become SourceError."""
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={"errors": [{"message": "Not authorized"}]},
        )

        with pytest.raises(SourceError) as exc_info:
            await linear.get_channels(AuthToken(token="t", provider=AuthProvider.LINEAR))
        assert exc_info.value.details["errors"][0]["message"] == "Not authorized"

    async def test_get_channels(self, linear: LinearSource, httpx_mock: HTTPXMock) -> None:
        """Test that teams become channels."""
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={"data": {"teams": {"nodes": [{"id": "team-1", "name": "Engineering", "key": "ENG"}]}}},
        )

        channels = await linear.get_channels(AuthToken(token="t", provider=AuthProvider.LINEAR))

        assert channels == [Channel(id="team-1", title="Engineering")]


class TestLinearWebhooks:
    """Tests for Linear webhook verification and routing."""

    @pytest.fixture
    async def secret(self, linear: LinearSource) -> str:
        """Store the webhook secret for team-1."""
        await linear.set(KEY_WEBHOOK_SECRET + "team-1", "lin-secret")
        return "lin-secret"

    @staticmethod
    def signed(payload: dict[str, Any], secret: str = "lin-secret") -> WebhookRequest:
        raw = json.dumps(payload)
        return WebhookRequest(
            headers={"Linear-Signature": compute_signature(secret, raw)},
            raw_body=raw,
        )

    async def test_issue_event(self, host: LocalHost, linear: LinearSource, secret: str) -> None:
        """Test that a fresh, signed Issue event upserts the issue."""
        payload = {
            "type": "Issue",
            "action": "update",
            "data": {"id": "iss-1", "title": "Renamed", "completedAt": "2024-04-05T00:00:00Z"},
            "webhookTimestamp": int(time.time() * 1000),
        }

        await linear.on_webhook("team-1", self.signed(payload))

        link = host.integrations.links["linear:issue:iss-1"]
        assert link["title"] == "Renamed"
        assert link["status"] == "done"

    async def test_issue_event_keeps_synced_author(
        self, host: LocalHost, linear: LinearSource, secret: str
    ) -> None:
        """Test that a partial Issue event leaves the author from the full sync alone."""
        await linear.save_link(issue_to_link(SAMPLE_ISSUE, "team-1"), "team-1")
        payload = {
            "type": "Issue",
            "action": "update",
            "data": {"id": "iss-1", "title": "Renamed", "creatorId": "u-alice"},
            "webhookTimestamp": int(time.time() * 1000),
        }

        await linear.on_webhook("team-1", self.signed(payload))

        link = host.integrations.links["linear:issue:iss-1"]
        assert link["title"] == "Renamed"
        assert link["author"]["email"] == "alice@example.com"
        assert link["meta"]["projectId"] == "team-1"
        assert link["meta"]["linearProjectId"] == "proj-1"

    async def test_comment_event(self, host: LocalHost, linear: LinearSource, secret: str) -> None:
        """Test that a Comment event adds a note to its issue."""
        payload = {
            "type": "Comment",
            "data": {"id": "c-9", "body": "Fixed in #42", "issueId": "iss-1"},
            "webhookTimestamp": int(time.time() * 1000),
        }

        await linear.on_webhook("team-1", self.signed(payload))

        notes = host.integrations.links["linear:issue:iss-1"]["notes"]
        assert [n["key"] for n in notes] == ["comment-c-9"]

    async def test_stale_timestamp_dropped(
        self, host: LocalHost, linear: LinearSource, secret: str
    ) -> None:
        """Test that replayed deliveries outside the tolerance are dropped."""
        payload = {
            "type": "Issue",
            "data": {"id": "iss-1", "title": "Replayed"},
            "webhookTimestamp": int((time.time() - 600) * 1000),
        }

        await linear.on_webhook("team-1", self.signed(payload))

        assert host.integrations.links == {}

    async def test_bad_signature_dropped(
        self, host: LocalHost, linear: LinearSource, secret: str
    ) -> None:
        """Test that deliveries signed with another secret are dropped."""
        payload = {"type": "Issue", "data": {"id": "iss-1"}}

        await linear.on_webhook("team-1", self.signed(payload, secret="other"))

        assert host.integrations.links == {}


class TestLinearWriteBack:
    """Tests for status and comment write-back."""

    META = {"linearId": "iss-1", "syncableId": "team-1"}

    STATES = {
        "data": {
            "issue": {
                "team": {
                    "states": {
                        "nodes": [
                            {"id": "s-backlog", "name": "Backlog", "type": "backlog"},
                            {"id": "s-todo", "name": "Todo", "type": "unstarted"},
                            {"id": "s-done", "name": "Done", "type": "completed"},
                        ]
                    }
                }
            }
        }
    }

    @pytest.mark.parametrize(("status", "state_id"), [("done", "s-done"), ("open", "s-todo")])
    async def test_update_status(
        self, linear: LinearSource, httpx_mock: HTTPXMock, status: str, state_id: str
    ) -> None:
        """Test that the matching workflow state is chosen."""
        httpx_mock.add_response(method="POST", url=GRAPHQL_URL, json=self.STATES)
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={"data": {"issueUpdate": {"success": True}}},
        )

        await linear.update_issue_status(self.META, status)

        update = httpx_mock.get_requests()[1]
        assert sent_variables(update) == {"id": "iss-1", "input": {"stateId": state_id}}

    async def test_no_matching_state(self, linear: LinearSource, httpx_mock: HTTPXMock) -> None:
        """Test that a team without a completed state raises."""
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={"data": {"issue": {"team": {"states": {"nodes": []}}}}},
        )

        with pytest.raises(SourceError):
            await linear.update_issue_status(self.META, "done")

    async def test_add_comment(self, linear: LinearSource, httpx_mock: HTTPXMock) -> None:
        """Test posting a comment returns its note key."""
        httpx_mock.add_response(
            method="POST",
            url=GRAPHQL_URL,
            json={"data": {"commentCreate": {"success": True, "comment": {"id": "c-77"}}}},
        )

        assert await linear.add_issue_comment(self.META, "Done") == "comment-c-77"
