"""Tests for HTTP server endpoints."""

from __future__ import annotations

import tempfile
from pathlib import Path

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from waswarm.http_server import create_app, deps_key
from waswarm.types import (
    SessionNotConnectedError,
    SessionNotFoundError,
    SessionView,
)

ACCOUNT = "237650000001"


class MockHttpDeps:
    """Stand-in for the connection supervisor."""

    def __init__(self) -> None:
        self.views: list[SessionView] = [
            SessionView(account_id=ACCOUNT, connected=True, retry_count=0),
        ]
        self.sent: list[tuple[str, str, str]] = []
        self.error: Exception | None = None

    def list_all(self) -> list[SessionView]:
        return list(self.views)

    async def send(self, number: str, conversation_id: str, text: str) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((number, conversation_id, text))


class TestSendEndpoint(AioHTTPTestCase):
    """Tests for POST /send."""

    async def get_application(self) -> web.Application:
        self.deps = MockHttpDeps()
        return create_app(self.deps, static_dir=Path(tempfile.mkdtemp()))

    async def test_send_defaults_to_own_chat(self):
        resp = await self.client.post("/send", json={"number": ACCOUNT, "message": "hi"})
        assert resp.status == 200
        assert await resp.json() == {"success": True}
        assert self.deps.sent == [(ACCOUNT, f"{ACCOUNT}@s.whatsapp.net", "hi")]

    async def test_number_is_cleaned(self):
        resp = await self.client.post(
            "/send", json={"number": "+237 650-000-001", "message": "hi"}
        )
        assert resp.status == 200
        assert self.deps.sent[0][0] == ACCOUNT

    async def test_bare_recipient_becomes_user_jid(self):
        resp = await self.client.post(
            "/send", json={"number": ACCOUNT, "message": "hi", "to": "237600000009"}
        )
        assert resp.status == 200
        assert self.deps.sent[0][1] == "237600000009@s.whatsapp.net"

    async def test_group_recipient_passed_through(self):
        group = "120363000000000000@g.us"
        resp = await self.client.post(
            "/send", json={"number": ACCOUNT, "message": "hi", "to": group}
        )
        assert resp.status == 200
        assert self.deps.sent[0][1] == group

    async def test_unknown_session_is_404(self):
        self.deps.error = SessionNotFoundError(ACCOUNT)
        resp = await self.client.post("/send", json={"number": ACCOUNT, "message": "hi"})
        assert resp.status == 404
        data = await resp.json()
        assert data["success"] is False
        assert data["error"] == "session not found"

    async def test_disconnected_session_is_409(self):
        self.deps.error = SessionNotConnectedError(ACCOUNT)
        resp = await self.client.post("/send", json={"number": ACCOUNT, "message": "hi"})
        assert resp.status == 409
        assert (await resp.json())["success"] is False

    async def test_transport_failure_is_500(self):
        self.deps.error = ConnectionError("socket closed")
        resp = await self.client.post("/send", json={"number": ACCOUNT, "message": "hi"})
        assert resp.status == 500
        assert (await resp.json())["error"] == "send failed"

    async def test_invalid_json_is_400(self):
        resp = await self.client.post(
            "/send", data="not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
        assert self.deps.sent == []

    async def test_missing_message_is_400(self):
        resp = await self.client.post("/send", json={"number": ACCOUNT})
        assert resp.status == 400
        assert (await resp.json())["success"] is False

    async def test_empty_message_is_400(self):
        resp = await self.client.post("/send", json={"number": ACCOUNT, "message": ""})
        assert resp.status == 400

    async def test_number_without_digits_is_400(self):
        resp = await self.client.post("/send", json={"number": "abc", "message": "hi"})
        assert resp.status == 400
        assert self.deps.sent == []


class TestHealthEndpoint(AioHTTPTestCase):
    """Tests for /health endpoint."""

    async def get_application(self) -> web.Application:
        self.deps = MockHttpDeps()
        idle = SessionView(account_id="237650000002", connected=False, retry_count=2)
        self.deps.views.append(idle)
        return create_app(self.deps, static_dir=Path(tempfile.mkdtemp()))

    async def test_health_lists_sessions(self):
        resp = await self.client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert isinstance(data["uptime_seconds"], int)
        assert data["sessions"] == [
            {"number": ACCOUNT, "connected": True, "retry_count": 0},
            {"number": "237650000002", "connected": False, "retry_count": 2},
        ]

    async def test_deps_reachable_from_app(self):
        assert self.app[deps_key] is self.deps


class TestIndexPage(AioHTTPTestCase):
    """Tests for GET /."""

    async def get_application(self) -> web.Application:
        self.static_dir = Path(tempfile.mkdtemp())
        (self.static_dir / "index.html").write_text("<html>waswarm</html>")
        return create_app(MockHttpDeps(), static_dir=self.static_dir)

    async def test_index_served(self):
        resp = await self.client.get("/")
        assert resp.status == 200
        assert "waswarm" in await resp.text()

    async def test_missing_page_is_404(self):
        (self.static_dir / "index.html").unlink()
        resp = await self.client.get("/")
        assert resp.status == 404
