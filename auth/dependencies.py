"""
auth/dependencies.py -- FastAPI Depends() helpers over the per-request context.

The context middleware in api/main.py authenticates the bearer token (from the
Authorization header, or the "warden_token" cookie set for browsers) and
stores the resulting RequestContext on request.state.ctx. These helpers only
read it; they never parse tokens themselves.

get_context() always succeeds (an anonymous context is still a context).
get_current_user() raises Unauthorized when nobody is logged in.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.models import User
from core.context import RequestContext
from core.errors import Internal, Unauthorized


def get_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "ctx", None)
    if ctx is None:
        raise Internal("Request context missing; is the context middleware installed?")
    return ctx


def get_current_user(request: Request) -> User:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: User = Depends(get_current_user)): ...
    """
    ctx = get_context(request)
    if ctx.user is None:
        raise Unauthorized("Authentication required")
    return ctx.user

