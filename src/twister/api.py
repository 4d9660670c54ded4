"""Async client for the Plot API used by the `plot` CLI.

Example:
    async with PlotApi("https://api.plot.day", token) as api:
        priorities = await api.list_priorities()
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx

from twister.constants import DEFAULT_HTTP_TIMEOUT_SECONDS, DEFAULT_USER_AGENT
from twister.exceptions import CliError
from twister.logging import get_logger
from twister.models import LogEntry, Priority

logger = get_logger(__name__)


class PlotApi:
    """Thin wrapper over the Plot REST endpoints.

    Args:
        api_url: Base URL of the Plot API.
        token: Bearer token (deploy token or API token depending on the call).
        timeout: Request timeout in seconds; log streams are not time limited.
    """

    def __init__(
        self,
        api_url: str,
        token: str,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> PlotApi:
        self._client = httpx.AsyncClient(
            base_url=self.api_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "User-Agent": DEFAULT_USER_AGENT,
            },
            timeout=self._timeout,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("PlotApi must be used as an async context manager")
        return self._client

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Call the API and decode JSON.

        Raises:
            CliError: On HTTP errors (details carry status_code and body) or
                network failures.
        """
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CliError(
                f"Plot API returned HTTP {e.response.status_code}",
                {"status_code": e.response.status_code, "body": e.response.text[:500]},
            ) from e
        except httpx.RequestError as e:
            raise CliError("Could not reach the Plot API", {"url": self.api_url, "error": str(e)}) from e

        if not response.content:
            return None
        return response.json()

    # =========================================================================
    # TWISTS
    # =========================================================================

    async def generate(self, spec: str) -> dict[str, Any]:
        """Generate twist source files from a plain-language spec."""
        return await self._request("POST", "/v1/twist/generate", json={"spec": spec}) or {}

    async def deploy(self, twist_id: str | None, body: dict[str, Any]) -> dict[str, Any]:
        """Upload a bundled twist; a missing id deploys the personal twist."""
        return await self._request("POST", f"/v1/twist/{twist_id or 'personal'}", json=body) or {}

    async def stream_logs(
        self,
        twist_id: str,
        *,
        environment: str = "personal",
    ) -> AsyncIterator[tuple[str, Any]]:
        """Yield (event, data) pairs from the twist's server-sent log stream.

        Raises:
            CliError: If the stream cannot be opened.
        """
        params = {} if environment == "personal" else {"environment": environment}
        try:
            async with self.client.stream(
                "GET",
                f"/v1/twist/{twist_id}/logs",
                params=params,
                headers={"Accept": "text/event-stream"},
                timeout=None,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode(errors="replace")
                    raise CliError(
                        f"Failed to connect: HTTP {response.status_code}",
                        {"status_code": response.status_code, "body": body[:500]},
                    )
                async for event, data in parse_sse(response.aiter_lines()):
                    yield event, data
        except httpx.RequestError as e:
            raise CliError("Log stream failed", {"error": str(e)}) from e

    # =========================================================================
    # PRIORITIES
    # =========================================================================

    async def list_priorities(self) -> list[Priority]:
        data = await self._request("GET", "/v1/priorities") or []
        return [Priority.model_validate(p) for p in data]

    async def create_priority(self, title: str, parent_id: str | None = None) -> Priority:
        body: dict[str, Any] = {"title": title}
        if parent_id:
            body["parentId"] = parent_id
        return Priority.model_validate(await self._request("POST", "/v1/priority", json=body))


async def parse_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, Any]]:
    """Parse server-sent events; JSON data is decoded, anything else kept as text."""
    event = "message"
    data_lines: list[str] = []

    async for line in lines:
        if line == "":
            if data_lines:
                raw = "\n".join(data_lines)
                try:
                    data: Any = json.loads(raw)
                except json.JSONDecodeError:
                    data = raw
                yield event, data
            event, data_lines = "message", []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].lstrip())

    if data_lines:
        raw = "\n".join(data_lines)
        try:
            yield event, json.loads(raw)
        except json.JSONDecodeError:
            yield event, raw


def to_log_entry(data: Any) -> LogEntry:
    if isinstance(data, dict):
        return LogEntry.model_validate(data)
    return LogEntry(message=str(data))
