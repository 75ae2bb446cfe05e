"""
API request and response models for the Warden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

The command tree (GET /api/<command>) is plain text and has no models here.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    username: str = Field(..., min_length=1, max_length=64)
    # Not stripped: leading and trailing spaces are part of a password.
    password: str = Field(..., min_length=1, max_length=1024)
    twofactor: str = Field(default="", max_length=64)

    @field_validator("username", "twofactor")
    @classmethod
    def strip(cls, value: str) -> str:
        return value.strip()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    is_sysadmin: bool


class WhoAmIResponse(BaseModel):
    username: str
    full_name: str
    is_sysadmin: bool
    can_be_sysadmin: bool
    client_ip: str
    browser: str
    os: str


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
