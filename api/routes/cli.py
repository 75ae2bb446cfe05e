"""
api/routes/cli.py -- The command tree over HTTP: GET /api/<word>/<word>/...

Every path segment is one argument of the command line. The CLI client
(main.py) encodes "/" inside an argument as %2F and an empty argument as
%B6, so the raw (still percent-encoded) path is split here before decoding.

Response:
  200 text/plain with the command output.
  On failure the status follows the error kind (core/errors.py STATUS_CODES)
  and the body ends with the user-visible message.
  X-ReturnCode carries the exit status for the CLI when it is not 0.

Token refresh and the invalid-token signal are added by the context
middleware in api/main.py, not here.

This router is registered last: its path matches everything under /api/.
"""

from __future__ import annotations

import logging
from urllib.parse import unquote

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from auth.dependencies import get_context
from core.context import RequestContext
from core.errors import STATUS_CODES, WardenError

logger = logging.getLogger("warden.api")

router = APIRouter()

EMPTY_ARG = "%B6"
PREFIX = "/api/"


def split_args(raw_path: str) -> list[str]:
    """'/api/system/login/a%2Fb/%B6' -> ['system', 'login', 'a/b', '']"""
    path = raw_path[len(PREFIX) :] if raw_path.startswith(PREFIX) else raw_path.lstrip("/")
    if not path:
        return []
    return ["" if seg.upper() == EMPTY_ARG else unquote(seg) for seg in path.split("/")]


@router.get("/api/{command:path}", response_class=PlainTextResponse)
def run_command(request: Request, command: str) -> PlainTextResponse:
    ctx: RequestContext = get_context(request)
    raw = request.scope.get("raw_path", b"").decode("latin-1") or request.url.path
    args = split_args(raw.split("?", 1)[0])

    try:
        ctx.cmd(args)
    except WardenError as exc:
        if exc.code in ("transient", "internal"):
            logger.error("Command %r failed: %s", args[:2], exc.message)
        ctx.status = STATUS_CODES.get(exc.code, 500) if ctx.status == 200 else ctx.status
        ctx.returncode = ctx.returncode or 1
        ctx.outln("Error: %s", exc.public_message)

    resp = PlainTextResponse(ctx.buffered(), status_code=ctx.status)
    if ctx.returncode:
        resp.headers["X-ReturnCode"] = str(ctx.returncode)
    return resp
