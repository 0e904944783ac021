"""HTTP + SSE client for the opencode server running inside a sandbox.

Only two calls are consumed: prompt() for the final answer and
event_stream() for live progress.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "default"
OPENCODE_USERNAME = "opencode"


class SandboxClient:
    """Client bound to one sandbox endpoint. Construction does no I/O.

    Use as a context manager (or call close()) so the connection pool and any
    open event stream are released.
    """

    def __init__(
        self,
        base_url: str,
        password: str | None = None,
        timeout: float = 600.0,
        transport: httpx.BaseTransport | None = None,
        stream_read_timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.stream_read_timeout = stream_read_timeout
        auth = httpx.BasicAuth(OPENCODE_USERNAME, password) if password else None
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=auth,
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )
        self._streams: set[httpx.Response] = set()
        self._streams_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"SandboxClient(base_url={self.base_url!r})"

    def __enter__(self) -> SandboxClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def close(self) -> None:
        self.close_streams()
        self._client.close()

    def close_streams(self) -> None:
        """Abort open event streams; safe to call from another thread."""
        with self._streams_lock:
            streams = list(self._streams)
            self._streams.clear()
        for resp in streams:
            try:
                resp.close()
            except Exception as e:
                logger.debug("Closing event stream for %s failed: %s", self.base_url, e)

    def prompt(self, text: str, session_id: str = DEFAULT_SESSION) -> dict[str, Any]:
        """Send a text prompt and block until the sandbox answers. Returns {"parts": [...]}."""
        resp = self._client.post(
            f"/session/{session_id}/message",
            json={"parts": [{"type": "text", "text": text}]},
        )
        resp.raise_for_status()
        data = resp.json() or {}
        return {"parts": data.get("parts") or []}

    def event_stream(self, stop: threading.Event | None = None) -> Iterator[dict[str, Any]]:
        """Yield {"type", "properties"} events until the stream ends or `stop` is set.

        With a `stop` event the read timeout is finite, so a quiet stream is
        re-checked (and reconnected) every stream_read_timeout seconds.
        """
        read_timeout = self.stream_read_timeout if stop is not None else None
        while True:
            try:
                yield from self._read_events(stop, read_timeout)
                return
            except httpx.ReadTimeout:
                if stop is None or stop.is_set():
                    return
                logger.debug("Event stream for %s idle, reconnecting", self.base_url)
            except (httpx.HTTPError, httpx.StreamError):
                if stop is not None and stop.is_set():
                    return
                raise

    def _read_events(self, stop: threading.Event | None, read_timeout: float | None) -> Iterator[dict[str, Any]]:
        with self._client.stream(
            "GET",
            "/global/event",
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(read_timeout, connect=10.0),
        ) as resp:
            resp.raise_for_status()
            with self._streams_lock:
                self._streams.add(resp)
            try:
                data_buf: list[str] = []
                if stop is not None and stop.is_set():
                    return
                for line in resp.iter_lines():
                    if stop is not None and stop.is_set():
                        return
                    if line.startswith("data:"):
                        data_buf.append(line[5:].strip())
                    elif line == "" and data_buf:
                        event = _parse_event("\n".join(data_buf))
                        data_buf = []
                        if event is not None:
                            yield event
            finally:
                with self._streams_lock:
                    self._streams.discard(resp)


def _parse_event(data: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON sandbox event: %.200s", data)
        return None
    if not isinstance(parsed, dict):
        return None
    # Global events wrap the bus event as {"directory": ..., "payload": {...}}.
    payload = parsed.get("payload") if isinstance(parsed.get("payload"), dict) else parsed
    event_type = payload.get("type")
    if not event_type:
        return None
    return {"type": event_type, "properties": payload.get("properties") or {}}


def extract_response_text(data: dict[str, Any]) -> str:
    parts = data.get("parts") or []
    if not parts:
        return "No response"
    return "\n".join(part.get("text") or "" for part in parts if part.get("type") == "text")
