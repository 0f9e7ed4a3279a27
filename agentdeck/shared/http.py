"""aiohttp helpers shared by the web server and the gateway."""
from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

from aiohttp import web

from agentdeck.engine.errors import DeckError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-agentdeck-request-id"


@web.middleware
async def request_logging_middleware(request: web.Request, handler) -> web.StreamResponse:
    req_id = request.headers.get(REQUEST_ID_HEADER, str(uuid.uuid4())[:8])
    request["req_id"] = req_id
    start = time.monotonic()
    logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
    try:
        response = await handler(request)
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response
    except web.HTTPException:
        raise
    except Exception:
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.exception(
            "HTTP %s %s req=%s failed duration_ms=%.1f",
            request.method, request.path_qs, req_id, elapsed_ms,
        )
        raise


@web.middleware
async def deck_error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Render DeckError raised by a handler as ``{ok: false, error: code}``."""
    try:
        return await handler(request)
    except DeckError as exc:
        logger.info(
            "HTTP %s %s req=%s error=%s: %s",
            request.method, request.path, request.get("req_id", "-"), exc.code, exc,
        )
        return error_response(exc)


def json_error(error: str, status: int) -> web.Response:
    return web.json_response({"ok": False, "error": error}, status=status)


def error_response(exc: DeckError) -> web.Response:
    return json_error(exc.code, exc.http_status)


def bad_request() -> web.Response:
    return json_error("bad_request", 400)


async def read_json(request: web.Request) -> dict[str, Any] | None:
    """Parse a JSON object body; None when absent or malformed."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def non_empty_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None
