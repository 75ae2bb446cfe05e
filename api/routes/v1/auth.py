"""
api/routes/v1/auth.py -- Session endpoints for browsers and API clients.

Routes:
  POST /api/v1/auth/login   -- password (+ second factor) login; returns a token and sets the cookie
  POST /api/v1/auth/logout  -- revokes the current token and clears the cookie
  GET  /api/v1/auth/whoami  -- current principal (requires auth)

Security:
  [H1] POST /login is rate-limited per client address by slowapi on top of the
       IPtrk counter that check_auth() maintains in the database. slowapi
       protects this process; IPtrk is shared by every process.
  [H2] Every login failure surfaces as the same "Login incorrect"; the precise
       reason is only logged (auth/users.py).
  [H3] Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit
from api.models import LoginRequest, LoginResponse, MessageResponse, WhoAmIResponse
from auth.dependencies import get_context, get_current_user
from auth.models import User
from core.context import RequestContext

# Auth policy:
# - POST /api/v1/auth/login:   public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:  public -- logging out without a session is a no-op
# - GET  /api/v1/auth/whoami:  requires auth (get_current_user)
router = APIRouter()

TOKEN_COOKIE = "warden_token"


def set_token_cookie(response, token: str, max_age: int) -> None:
    response.set_cookie(TOKEN_COOKIE, token, max_age=max_age, httponly=True, samesite="lax")


@limiter.limit(login_limit)  # [H1] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate and return a session token.

    LoginIncorrect and RateLimited propagate to the WardenError handler in
    api/main.py, which renders the error envelope.
    """
    ctx: RequestContext = get_context(request)
    ctx.login(body.username, body.password, body.twofactor)
    token = ctx.new_token()

    ttl = int(ctx.services.tokens.ttl.total_seconds())
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            expires_in=ttl,
            username=ctx.user.username,
            is_sysadmin=ctx.is_sysadmin(),
        ).model_dump(),
    )
    set_token_cookie(resp, token, ttl)
    resp.headers["Cache-Control"] = "no-store"  # [H3]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    ctx: RequestContext = get_context(request)
    was_logged_in = ctx.is_logged_in()
    ctx.logout()
    resp = JSONResponse(content=MessageResponse(message="Logged out." if was_logged_in else "Not logged in.").model_dump())
    resp.delete_cookie(TOKEN_COOKIE)
    return resp


@router.get("/auth/whoami", response_model=WhoAmIResponse)
def whoami(request: Request, user: User = Depends(get_current_user)) -> WhoAmIResponse:
    ctx: RequestContext = get_context(request)
    return WhoAmIResponse(
        username=user.username,
        full_name=user.full_name,
        is_sysadmin=ctx.is_sysadmin(),
        can_be_sysadmin=ctx.can_be_sysadmin(),
        client_ip=ctx.client_ip,
        browser=ctx.ua_browser,
        os=ctx.ua_os,
    )
