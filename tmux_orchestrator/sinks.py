"""Trigger sinks: where fired triggers are delivered.

A sink raises ``SinkUnavailableError`` when delivery fails. The coordinator
logs and records that error; it never reaches the code that produced the
error entry.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Protocol, runtime_checkable

import httpx

from .exceptions import SinkUnavailableError
from .models import TriggerEvent

logger = logging.getLogger(__name__)


@runtime_checkable
class TriggerSink(Protocol):
    """Receives trigger events."""

    sink_id: str

    async def deliver(self, event: TriggerEvent) -> None:
        """Deliver one event, raising SinkUnavailableError on failure."""
        ...

    async def close(self) -> None:
        """Release any resources held by the sink."""
        ...


class CallbackSink:
    """Delivers events to a plain or async callable."""

    def __init__(
        self,
        sink_id: str,
        callback: Callable[[TriggerEvent], Awaitable[None] | None],
    ) -> None:
        self.sink_id = sink_id
        self.callback = callback

    async def deliver(self, event: TriggerEvent) -> None:
        try:
            result = self.callback(event)
            if inspect.isawaitable(result):
                await result
        except SinkUnavailableError:
            raise
        except Exception as e:
            raise SinkUnavailableError(self.sink_id, reason=str(e), cause=e) from e

    async def close(self) -> None:
        pass


class LoggingSink:
    """Writes events to a logger; never fails."""

    def __init__(
        self,
        sink_id: str = "log",
        *,
        level: int = logging.WARNING,
        logger_name: str | None = None,
    ) -> None:
        self.sink_id = sink_id
        self.level = level
        self._logger = logging.getLogger(logger_name) if logger_name else logger

    async def deliver(self, event: TriggerEvent) -> None:
        self._logger.log(
            self.level,
            "Trigger %s for %s: %s",
            event.rule_id or event.sink_id,
            event.pane,
            event.reason,
        )

    async def close(self) -> None:
        pass


class WebhookSink:
    """POSTs events as JSON to an HTTP endpoint."""

    def __init__(
        self,
        sink_id: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the sink.

        Args:
            sink_id: Identifier used by trigger rules.
            url: Endpoint receiving the POST.
            headers: Extra request headers.
            timeout: Request timeout in seconds.
            client: Shared client; one is created (and owned) if omitted.
        """
        self.sink_id = sink_id
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def deliver(self, event: TriggerEvent) -> None:
        client = self._get_client()
        try:
            response = await client.post(
                self.url,
                json=event.to_dict(),
                headers=self.headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise SinkUnavailableError(
                self.sink_id, reason=f"timed out after {self.timeout:.1f}s", cause=e
            ) from e
        except httpx.HTTPError as e:
            raise SinkUnavailableError(self.sink_id, reason=str(e), cause=e) from e

        if response.status_code >= 400:
            raise SinkUnavailableError(self.sink_id, reason=f"HTTP {response.status_code}")
        logger.debug("Delivered trigger to %s (status %d)", self.url, response.status_code)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class JsonlSink:
    """Appends events as JSON lines to a file."""

    def __init__(self, sink_id: str, path: str | Path) -> None:
        self.sink_id = sink_id
        self.path = Path(path).expanduser()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def deliver(self, event: TriggerEvent) -> None:
        try:
            await asyncio.to_thread(self._append, json.dumps(event.to_dict()))
        except OSError as e:
            raise SinkUnavailableError(self.sink_id, reason=str(e), cause=e) from e

    async def close(self) -> None:
        pass
