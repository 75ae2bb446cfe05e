"""
auth/twofactor.py -- Second factors: enrolment, activation and verification.

Kinds:
  HOTP  counter based (RFC 4226). The stored counter advances to the matched
        counter + 1 on every success and never decreases.
  TOTP  time based (RFC 6238), 30 second steps, +-2 steps accepted.
  SOTP  single-use codes. Only the SHA-256 of each code is stored; a used code
        is deleted in the same audited statement that accepts it.

Enrolment of HOTP/TOTP creates an inactive record and returns an otpauth://
URL (base32 secret, issuer = application name). The record becomes active
only after the user proves possession with a valid code (activate()). SOTP
enrolment creates five active codes at once and shows them exactly once.

Policy in verify():
  - verification globally disabled (development only) -> accept
  - at least one active factor and no code           -> required_absent
  - a factor matched                                  -> accept
  - factors exist but none matched                    -> invalid
  - no factors but a code was sent                    -> invalid
  - no factors and the platform requires 2FA          -> not_provided
The error never says which factor was tried [F1].

Layer rule: auth/ may import core/, never api/.
"""

from __future__ import annotations

import base64
import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote, urlencode

from sqlalchemy import and_, delete, func, insert, or_, select, update

from auth import otp
from auth.models import SecondFactor
from core import accessor
from core.db import Database, now_iso, second_factor_types, second_factors
from core.errors import Conflict, InvalidInput, NotFound, TwoFactorError
from core.menu import Menu, MenuEntry
from core.perms import Perm

if TYPE_CHECKING:
    from auth.models import User
    from core.context import RequestContext
    from core.system import SystemConfig

logger = logging.getLogger("warden.auth")

KINDS = ("HOTP", "TOTP", "SOTP")
SOTP_BATCH = 5
KEY_LENGTH = 20

_ALPHANUM = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


def create_key(length: int = KEY_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHANUM) for _ in range(length))


def encode_key(secret: str) -> str:
    return base64.b32encode(secret.encode("ascii")).decode("ascii")


@dataclass
class Enrollment:
    """What the user needs to configure an authenticator; shown once."""

    id: int
    name: str
    kind: str
    url: str = ""
    counter: int = 0
    code: str = ""


class TwoFactorEngine:
    """Usage:
        engine = TwoFactorEngine(db, system, app_name="Warden")
        [e] = engine.add(ctx, user, "TOTP", "phone")
        engine.activate(ctx, user, e.id, code_from_app)
        engine.verify(ctx, user, code)      # raises TwoFactorError
    """

    def __init__(self, db: Database, system: SystemConfig, app_name: str = "Warden", check: bool = True) -> None:
        self.db = db
        self.system = system
        self.app_name = app_name
        self.check = check

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def fetch(self, factor_id: int) -> SecondFactor:
        try:
            return accessor.fetch(self.db, SecondFactor, "second_factors", {"id": factor_id})
        except NotFound:
            raise NotFound("No such token") from None

    def list_for(self, username: str) -> list[SecondFactor]:
        return accessor.fetch_many(self.db, SecondFactor, "second_factors", [("member", "=", username)], order_by=["id"])

    def summary(self, username: str) -> str:
        """"2xTOTP 1xSOTP" style count of active factors, or "none"."""
        stmt = (
            select(second_factors.c.type, func.count())
            .where(and_(second_factors.c.member == username, second_factors.c.active.is_(True)))
            .group_by(second_factors.c.type)
            .order_by(second_factors.c.type)
        )
        with self.db.engine.connect() as conn:
            parts = [f"{cnt}x{kind}" for kind, cnt in conn.execute(stmt)]
        return " ".join(parts) or "none"

    def types(self) -> list[tuple[str, str]]:
        with self.db.engine.connect() as conn:
            return [tuple(r) for r in conn.execute(select(second_factor_types).order_by(second_factor_types.c.type))]

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, ctx: RequestContext, user: User, code: str, factor_id: int = 0, now: float | None = None) -> None:
        """Return None when the second factor is satisfied; raise TwoFactorError otherwise [F1]."""
        if not self.check:
            return

        stmt = select(second_factors).where(second_factors.c.member == user.username)
        if factor_id > 0:
            stmt = stmt.where(second_factors.c.id == factor_id)
        else:
            stmt = stmt.where(second_factors.c.active.is_(True))
        with self.db.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(second_factors.c.id)).all()

        code = (code or "").strip()
        if rows and not code:
            raise TwoFactorError(TwoFactorError.REQUIRED_ABSENT)

        for row in rows:
            if row.type == "HOTP":
                matched = otp.verify_hotp(row.key, row.counter, code)
                # The counter read above must still be current; a concurrent
                # login that advanced it first wins the code.
                if matched is not None and self.db.exec_audit(
                    ctx,
                    "Increased HOTP counter for 2FA $1",
                    update(second_factors)
                    .where(and_(second_factors.c.id == row.id, second_factors.c.counter == row.counter))
                    .values(counter=max(row.counter, matched + 1)),
                    [row.id],
                    matched_only=True,
                ):
                    return
            elif row.type == "TOTP":
                if otp.verify_totp(row.key, code, now):
                    return
            elif row.type == "SOTP":
                # Only the request whose DELETE removed the row may use the code.
                if otp.verify_sotp(row.key, code) and self.db.exec_audit(
                    ctx,
                    "Used SOTP code $1 (SOTP code removed)",
                    delete(second_factors).where(second_factors.c.id == row.id),
                    [row.id],
                    matched_only=True,
                ):
                    return
            else:
                logger.error("Second factor %s of %s has unknown type %r", row.id, user.username, row.type)
                raise TwoFactorError(TwoFactorError.UNKNOWN_KIND)

        if rows or code:
            raise TwoFactorError(TwoFactorError.INVALID)
        if self.system.require2fa:
            raise TwoFactorError(TwoFactorError.NOT_PROVIDED)

    # ------------------------------------------------------------------
    # Enrolment and lifecycle
    # ------------------------------------------------------------------

    def _url(self, kind: str, username: str, descr: str, secret: str, counter: int) -> str:
        label = quote(f"{self.app_name}:{username} ({descr})")
        params = {"secret": encode_key(secret), "issuer": self.app_name}
        if kind == "HOTP":
            params["counter"] = str(counter)
        return f"otpauth://{kind.lower()}/{label}?{urlencode(params)}"

    def _insert(self, ctx: RequestContext, username: str, kind: str, descr: str, key: str, active: bool) -> int:
        stmt = (
            insert(second_factors)
            .values(member=username, type=kind, descr=descr, entered=now_iso(), active=active, key=key, counter=0)
            .returning(second_factors.c.id)
        )
        with self.db.transaction(ctx) as conn:
            factor_id = conn.execute(stmt).scalar_one()
            self.db._audit(conn, ctx, f"Add 2FA Token {kind}: {descr}")
        return factor_id

    def add(self, ctx: RequestContext, user: User, kind: str, descr: str) -> list[Enrollment]:
        kind = kind.upper()
        if kind not in KINDS:
            raise InvalidInput(f"Unknown 2FA Token Type: {kind}")
        if not descr:
            raise InvalidInput("A description is required")

        if kind == "SOTP":
            out = []
            for n in range(SOTP_BATCH, 0, -1):
                code = create_key(10)
                name = f"{descr}-{n}"
                factor_id = self._insert(ctx, user.username, kind, name, otp.sotp_hash(code), True)
                out.append(Enrollment(factor_id, name, kind, code=code))
            return out

        secret = create_key()
        factor_id = self._insert(ctx, user.username, kind, descr, secret, False)
        return [Enrollment(factor_id, descr, kind, url=self._url(kind, user.username, descr, secret, 0))]

    def _owned(self, user: User, factor_id: int) -> SecondFactor:
        factor = self.fetch(factor_id)
        if factor.username != user.username:
            logger.warning("User %s attempted to access token %s of user %s", user.username, factor_id, factor.username)
            raise NotFound("No such token")
        return factor

    def set_active(self, ctx: RequestContext, user: User, factor_id: int, active: bool, code: str = "") -> None:
        factor = self._owned(user, factor_id)
        state = "active" if active else "inactive"
        if factor.active == active:
            raise Conflict(f"Token ID already in {state} state")
        if active:
            try:
                self.verify(ctx, user, code, factor_id)
            except TwoFactorError:
                raise InvalidInput("Token value not correct") from None

        self.db.exec_audit(
            ctx,
            f"Change 2FA Token $1 to {state}",
            update(second_factors)
            .where(and_(second_factors.c.id == factor_id, second_factors.c.member == user.username))
            .values(active=active),
            [factor_id],
        )

    def activate(self, ctx: RequestContext, user: User, factor_id: int, code: str) -> None:
        self.set_active(ctx, user, factor_id, True, code)

    def deactivate(self, ctx: RequestContext, user: User, factor_id: int) -> None:
        self.set_active(ctx, user, factor_id, False)

    def remove(self, ctx: RequestContext, user: User, factor_id: int) -> None:
        """Only inactive factors and single-use codes may be removed."""
        rows = self.db.exec_audit(
            ctx,
            "Removed 2FA Token $1",
            delete(second_factors).where(
                and_(
                    second_factors.c.member == user.username,
                    second_factors.c.id == factor_id,
                    or_(second_factors.c.active.is_(False), second_factors.c.type == "SOTP"),
                )
            ),
            [factor_id],
        )
        if rows == 0:
            raise InvalidInput("Could not remove 2FA token; only inactive or single-use tokens can be removed")

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    def menu(self) -> Menu:
        perms = Perm.USER_SELF
        return Menu(
            [
                MenuEntry("list", tfa_list, 1, 1, ["username"], perms, "List tokens"),
                MenuEntry(
                    "add", tfa_add, 4, 4, ["username", "curpassword#password", "type#2fatoken", "descr"], perms, "Add tokens"
                ),
                MenuEntry(
                    "enable",
                    tfa_enable,
                    4,
                    4,
                    ["username", "id#int", "curpassword#password", "twofactorcode#int"],
                    perms,
                    "Enable token",
                ),
                MenuEntry("disable", tfa_disable, 3, 3, ["username", "id#int", "curpassword#password"], perms, "Disable token"),
                MenuEntry("remove", tfa_remove, 3, 3, ["username", "id#int", "curpassword#password"], perms, "Remove token"),
                MenuEntry("types", tfa_types, 0, 0, [], Perm.NONE, "List available 2FA Types"),
            ]
        )


# ---------------------------------------------------------------------------
# Menu handlers -- args[0] is always the username selected by tfa_menu()
# ---------------------------------------------------------------------------


def _factor_id(value: str) -> int:
    try:
        return int(value, 10)
    except ValueError:
        raise InvalidInput("ID not numeric") from None


def _confirm_password(ctx: RequestContext, password: str) -> None:
    """Sysadmins skip the password check; everyone else proves they hold it."""
    if not ctx.is_sysadmin():
        ctx.services.users.verify_password(ctx.sel_user, password)


def tfa_list(ctx: RequestContext, args: list[str]) -> None:
    for factor in ctx.services.twofactor.list_for(ctx.sel_user.username):
        ctx.outln(str(factor))


def tfa_add(ctx: RequestContext, args: list[str]) -> None:
    _confirm_password(ctx, args[1])
    for e in ctx.services.twofactor.add(ctx, ctx.sel_user, args[2], args[3]):
        ctx.outln("Name: %s", e.name)
        ctx.outln("Token Type: %s", e.kind)
        if e.url:
            ctx.outln("URL: %s", e.url)
        if e.kind == "HOTP":
            ctx.outln("Counter: %d", e.counter)
        if e.code:
            ctx.outln("Code: %s", e.code)


def tfa_enable(ctx: RequestContext, args: list[str]) -> None:
    factor_id = _factor_id(args[1])
    _confirm_password(ctx, args[2])
    ctx.services.twofactor.activate(ctx, ctx.sel_user, factor_id, args[3])
    ctx.outln("State of 2FA token %s changed to %s", factor_id, "active")


def tfa_disable(ctx: RequestContext, args: list[str]) -> None:
    factor_id = _factor_id(args[1])
    _confirm_password(ctx, args[2])
    ctx.services.twofactor.deactivate(ctx, ctx.sel_user, factor_id)
    ctx.outln("State of 2FA token %s changed to %s", factor_id, "inactive")


def tfa_remove(ctx: RequestContext, args: list[str]) -> None:
    factor_id = _factor_id(args[1])
    _confirm_password(ctx, args[2])
    ctx.services.twofactor.remove(ctx, ctx.sel_user, factor_id)
    ctx.outln("2FA Token %s removed", factor_id)


def tfa_types(ctx: RequestContext, args: list[str]) -> None:
    for kind, descr in ctx.services.twofactor.types():
        ctx.outln("%s %s", kind, descr)


def tfa_menu(ctx: RequestContext, args: list[str]) -> None:
    if len(args) >= 2:
        ctx.select_user(args[1], Perm.USER_SELF)
    else:
        ctx.select_user("", Perm.NONE)
    ctx.menu(args, ctx.services.twofactor.menu())
