"""Tests for the sandbox HTTP/SSE client using httpx.MockTransport."""

import base64
import json
import threading

import httpx
import pytest

from sandbox.client import SandboxClient, _parse_event, extract_response_text
from tests.fakes.http import HangingEventStream, sse


class TestPrompt:
    def test_posts_text_part_and_returns_parts(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json={"info": {}, "parts": [{"type": "text", "text": "hi"}]})

        client = SandboxClient("http://sandbox:4096/", password="pw", transport=httpx.MockTransport(handler))
        result = client.prompt("list files")

        assert result == {"parts": [{"type": "text", "text": "hi"}]}
        assert seen["path"] == "/session/default/message"
        assert seen["body"] == {"parts": [{"type": "text", "text": "list files"}]}
        expected = base64.b64encode(b"opencode:pw").decode()
        assert seen["auth"] == f"Basic {expected}"

    def test_no_auth_without_password(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "authorization" not in request.headers
            return httpx.Response(200, json={})

        client = SandboxClient("http://sandbox:4096", transport=httpx.MockTransport(handler))
        assert client.prompt("x", session_id="s1") == {"parts": []}

    def test_http_error_raises(self):
        client = SandboxClient(
            "http://sandbox:4096",
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        with pytest.raises(httpx.HTTPStatusError):
            client.prompt("x")


class TestEventStream:
    def test_yields_command_events(self):
        body = sse(
            {"directory": "/w", "payload": {"type": "command.executed", "properties": {"command": "ls"}}},
            {"type": "session.idle"},
        ) + b"data: not-json\n\n"

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/global/event"
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        client = SandboxClient("http://sandbox:4096", transport=httpx.MockTransport(handler))
        events = list(client.event_stream())

        assert events == [
            {"type": "command.executed", "properties": {"command": "ls"}},
            {"type": "session.idle", "properties": {}},
        ]

    def test_stop_event_ends_stream(self):
        body = sse({"type": "a"}, {"type": "b"})
        client = SandboxClient(
            "http://sandbox:4096",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, content=body)),
        )
        stop = threading.Event()
        stop.set()
        assert list(client.event_stream(stop=stop)) == []


    def test_close_streams_unblocks_idle_reader(self):
        stream = HangingEventStream(sse({"type": "command.executed", "properties": {"command": "ls"}}))
        client = SandboxClient(
            "http://sandbox:4096",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)),
        )
        seen = []

        def reader():
            seen.extend(client.event_stream())

        worker = threading.Thread(target=reader, daemon=True)
        worker.start()
        assert stream.delivered.wait(5)

        client.close_streams()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert stream.closed.is_set()
        assert seen == [{"type": "command.executed", "properties": {"command": "ls"}}]

    def test_stop_plus_close_ends_stream_without_error(self):
        stream = HangingEventStream(sse({"type": "a"}))
        client = SandboxClient(
            "http://sandbox:4096",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)),
        )
        stop = threading.Event()
        events = client.event_stream(stop=stop)

        assert next(events) == {"type": "a", "properties": {}}
        stop.set()
        client.close_streams()
        assert list(events) == []


class TestLifecycle:
    def test_context_manager_closes_client(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
        with SandboxClient("http://sandbox:4096", transport=transport) as client:
            client.prompt("x")
            assert client.is_closed is False
        assert client.is_closed is True

    def test_close_aborts_open_stream(self):
        stream = HangingEventStream(sse({"type": "a"}))
        client = SandboxClient(
            "http://sandbox:4096",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream)),
        )
        events = client.event_stream()
        next(events)

        client.close()

        assert stream.closed.is_set()
        assert client.is_closed is True


class TestHelpers:
    def test_parse_event_ignores_untyped(self):
        assert _parse_event('{"properties": {}}') is None
        assert _parse_event("[1, 2]") is None

    def test_extract_response_text(self):
        data = {
            "parts": [
                {"type": "text", "text": "line one"},
                {"type": "tool", "tool": "bash"},
                {"type": "text", "text": "line two"},
            ]
        }
        assert extract_response_text(data) == "line one\nline two"

    def test_extract_response_text_empty(self):
        assert extract_response_text({"parts": []}) == "No response"
