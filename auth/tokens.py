"""
auth/tokens.py -- Signed bearer tokens (ES512) with typed claims.

Security design decisions:
  Signing: python-jose with ES512 (ECDSA over P-521 with SHA-512). Exactly one
       algorithm is accepted. The key pair is checked with cryptography at
       construction time; a key that is not P-521 is fatal (Internal) [T1].

  Claims: sub (principal handle), aud (purpose tag), iat, nbf, exp, iss
       (application name) plus purpose-specific extras:
         session              userdesc, issysadmin
         authorization_grant  client_id, scope, request_type, redirect

  Parsing: parse() never returns partial results. Every rejection raises
       Unauthorized with a neutral message; the precise cause is logged at
       DEBUG level only [T2]. The header is inspected before verification so
       a token announcing a non-EC algorithm is rejected outright.

  Revocation: parse() consults the revocation cache after the signature and
       the time window have been verified, so unauthenticated garbage never
       reaches the database [T3].

  Refresh: a token expiring within `refresh_window` (10 minutes) is reported
       as expiring soon; the front door then issues a replacement.

Layer rule: auth/ may import core/, never api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import ExpiredSignatureError, JWTError, jwt

from core.errors import Internal, InvalidInput, Unauthorized

if TYPE_CHECKING:
    from auth.models import User
    from auth.revocation import RevocationCache

logger = logging.getLogger("warden.tokens")

ALGORITHM = "ES512"

PURPOSE_SESSION = "session"
PURPOSE_GRANT = "authorization_grant"

_RESERVED = frozenset({"sub", "aud", "iat", "nbf", "exp", "iss"})


@dataclass(frozen=True)
class Claims:
    subject: str
    audience: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    extras: dict[str, Any] = field(default_factory=dict)


def _check_curve(key: Any, what: str) -> None:
    if not isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        raise Internal(f"JWT {what} key is not an EC key")
    if not isinstance(key.curve, ec.SECP521R1):
        raise Internal(f"JWT {what} key uses curve {key.curve.name}, expected secp521r1")


def _timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenService:
    """Issue, parse and revoke signed bearer tokens.

    Usage:
        tokens = TokenService(private_pem, public_pem, "Warden", revocation)
        raw = tokens.issue_session(user)
        claims, expsoon = tokens.parse_session(raw)
        tokens.revoke(raw)
    """

    def __init__(
        self,
        private_pem: str,
        public_pem: str,
        issuer: str,
        revocation: RevocationCache | None = None,
        ttl: timedelta = timedelta(minutes=20),
        refresh_window: timedelta = timedelta(minutes=10),
    ) -> None:
        try:
            private_key = serialization.load_pem_private_key(private_pem.encode("utf-8"), password=None)
            public_key = serialization.load_pem_public_key(public_pem.encode("utf-8"))
        except (ValueError, TypeError) as exc:
            raise Internal(f"Could not parse JWT key material: {exc}") from exc
        _check_curve(private_key, "private")
        _check_curve(public_key, "public")

        self._private_pem = private_pem
        self._public_pem = public_pem
        self.issuer = issuer
        self.revocation = revocation
        self.ttl = ttl
        self.refresh_window = refresh_window

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, purpose: str, subject: str, ttl: timedelta | None = None, extras: dict[str, Any] | None = None) -> str:
        now = datetime.now(timezone.utc)
        expires = now + (ttl if ttl is not None else self.ttl)
        payload: dict[str, Any] = {k: v for k, v in (extras or {}).items() if k not in _RESERVED}
        payload.update(
            {
                "sub": subject,
                "aud": purpose,
                "iat": int(now.timestamp()),
                "nbf": int(now.timestamp()),
                "exp": int(expires.timestamp()),
                "iss": self.issuer,
            }
        )
        return jwt.encode(payload, self._private_pem, algorithm=ALGORITHM)

    def issue_session(self, user: User) -> str:
        return self.issue(
            PURPOSE_SESSION,
            user.username,
            extras={"userdesc": user.full_name, "issysadmin": bool(user.is_sysadmin)},
        )

    def issue_grant(
        self,
        subject: str,
        client_id: str,
        scope: str,
        request_type: str,
        redirect: str,
        ttl: timedelta = timedelta(minutes=10),
    ) -> str:
        return self.issue(
            PURPOSE_GRANT,
            subject,
            ttl=ttl,
            extras={"client_id": client_id, "scope": scope, "request_type": request_type, "redirect": redirect},
        )

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def _decode(self, token: str, verify_exp: bool = True) -> dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise Unauthorized("Token does not even look like a token") from exc
        alg = str(header.get("alg", ""))
        if not alg.startswith("ES"):
            raise Unauthorized(f"Unexpected signing method: {alg}")

        try:
            return jwt.decode(
                token,
                self._public_pem,
                algorithms=[ALGORITHM],
                issuer=self.issuer,
                options={"verify_aud": False, "verify_nbf": False, "verify_exp": verify_exp},
            )
        except ExpiredSignatureError as exc:
            raise Unauthorized("Token expired") from exc
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise Unauthorized("Token is invalid") from exc

    def parse(self, token: str, purpose: str | None = None) -> tuple[Claims, bool]:
        """Verify `token`; return its claims and whether it expires soon [T2]."""
        payload = self._decode(token)
        now = datetime.now(timezone.utc)

        try:
            claims = Claims(
                subject=str(payload["sub"]),
                audience=str(payload.get("aud", "")),
                issued_at=_timestamp(payload["iat"]),
                expires_at=_timestamp(payload["exp"]),
                issuer=str(payload.get("iss", "")),
                extras={k: v for k, v in payload.items() if k not in _RESERVED},
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise Unauthorized("Token is invalid") from exc

        if "nbf" in payload and _timestamp(payload["nbf"]) > now:
            raise Unauthorized("Token not active yet")
        if purpose is not None and claims.audience != purpose:
            raise Unauthorized(f"Token is not a {purpose} token")

        # [T3]
        if self.revocation is not None and self.revocation.is_revoked(token, claims.expires_at):
            raise Unauthorized("Token is invalid")

        return claims, claims.expires_at - now < self.refresh_window

    def parse_session(self, token: str) -> tuple[Claims, bool]:
        return self.parse(token, PURPOSE_SESSION)

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, token: str) -> None:
        """Add a correctly signed token to the revocation set."""
        if self.revocation is None:
            raise Internal("Token revocation is not configured")
        payload = self._decode(token, verify_exp=False)
        try:
            expires_at = _timestamp(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInput("Token carries no expiry") from exc
        self.revocation.revoke(token, expires_at)
