"""Embedded HTTP control surface.

``POST /send`` forwards a text message through a connected session,
``GET /`` serves the bundled static page and ``GET /health`` reports
the session registry.
"""

from __future__ import annotations

import time
from pathlib import Path
from typing import Protocol

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from waswarm.config import get_settings
from waswarm.logger import logger
from waswarm.types import (
    InvalidAccountError,
    SessionNotConnectedError,
    SessionNotFoundError,
    SessionView,
)
from waswarm.utils import clean_phone_number, user_jid

_start_time = time.monotonic()


class HttpDeps(Protocol):
    """Dependencies injected by app.py (the connection supervisor)."""

    def list_all(self) -> list[SessionView]: ...

    async def send(self, number: str, conversation_id: str, text: str) -> None: ...


deps_key = web.AppKey("deps", HttpDeps)
static_dir_key = web.AppKey("static_dir", Path)


class SendRequest(BaseModel):
    number: str = Field(min_length=1)
    message: str = Field(min_length=1)
    to: str | None = None  # defaults to the session's own chat


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def _handle_send(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    try:
        body = SendRequest.model_validate(await request.json())
    except ValueError as exc:
        # json.JSONDecodeError and pydantic.ValidationError are both ValueErrors
        detail = exc.errors()[0]["msg"] if isinstance(exc, ValidationError) else "invalid JSON"
        return _error(f"invalid request: {detail}", 400)

    account_id = clean_phone_number(body.number)
    if not account_id:
        return _error("number must contain digits", 400)
    recipient = body.to or user_jid(account_id)
    if "@" not in recipient:
        recipient = user_jid(recipient)

    try:
        await deps.send(account_id, recipient, body.message)
    except SessionNotFoundError:
        return _error("session not found", 404)
    except SessionNotConnectedError:
        return _error("session not connected", 409)
    except InvalidAccountError as exc:
        return _error(str(exc), 400)
    except Exception as exc:
        logger.error("Send via HTTP failed", account=account_id, err=str(exc))
        return _error("send failed", 500)

    logger.info("Message sent via HTTP", account=account_id, to=recipient)
    return web.json_response({"success": True})


async def _handle_index(request: web.Request) -> web.StreamResponse:
    index = request.app[static_dir_key] / "index.html"
    if not index.is_file():
        raise web.HTTPNotFound()
    return web.FileResponse(index)


async def _handle_health(request: web.Request) -> web.Response:
    deps = request.app[deps_key]
    return web.json_response(
        {
            "status": "ok",
            "uptime_seconds": round(time.monotonic() - _start_time),
            "sessions": [
                {
                    "number": v.account_id,
                    "connected": v.connected,
                    "retry_count": v.retry_count,
                }
                for v in deps.list_all()
            ],
        }
    )


def create_app(deps: HttpDeps, static_dir: Path | None = None) -> web.Application:
    app = web.Application()
    app[deps_key] = deps
    app[static_dir_key] = static_dir if static_dir is not None else get_settings().static_dir
    app.router.add_get("/", _handle_index)
    app.router.add_post("/send", _handle_send)
    app.router.add_get("/health", _handle_health)
    return app


async def start_http_server(deps: HttpDeps) -> web.AppRunner:
    """Create, start, and return the HTTP server runner."""
    s = get_settings().server
    runner = web.AppRunner(create_app(deps))
    await runner.setup()
    site = web.TCPSite(runner, s.host, s.port)
    await site.start()
    logger.info("HTTP server listening", host=s.host, port=s.port)
    return runner
