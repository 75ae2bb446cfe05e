"""
auth/users.py -- Principal store: lookup, authentication, passwords, user menus.

Authentication (check_auth):
  1. Count the attempt against the source address (IPtrk). Over the limit
     -> RateLimited, before any password work is done.
  2. Unknown user -> a dummy verification burns the same time, then
     LoginIncorrect [U1].
  3. login_attempts above login_attempts_max -> RateLimited (account lock).
  4. Password, then second factor. Any failure increments login_attempts in
     an audited statement and raises LoginIncorrect; the precise reason is
     logged, never returned [U2].
  5. Success resets login_attempts, stamps activity and clears the IPtrk
     entry of the source address.

Passwords:
  set_password() enforces the platform rules when pw_enforce is on, stores a
  sha512_crypt hash, resets login_attempts and invalidates any recovery
  token. Recovery tokens are stored as SHA-256 hex and expire after 7 days.
  Every recovery failure gives the same "Invalid recovery details" [U3].

Layer rule: auth/ may import core/ and ratelimit/, never api/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import delete, insert, select, update

from auth.models import User
from auth.twofactor import tfa_menu
from auth.vault import PasswordRules, gen_rand_hex
from core import accessor
from core.db import Database, member, member_email, member_trustgroup, now_iso, parse_iso, second_factors
from core.errors import (
    Conflict,
    InvalidInput,
    LoginIncorrect,
    NotFound,
    PasswordMismatch,
    RateLimited,
    TwoFactorError,
    Unauthorized,
)
from core.menu import Menu, MenuEntry
from core.perms import Perm
from ratelimit.iptrk import UNKNOWN_ADDRESS

if TYPE_CHECKING:
    from auth.twofactor import TwoFactorEngine
    from auth.vault import PasswordVault
    from core.config import Settings
    from core.context import RequestContext
    from core.system import SystemConfig
    from ratelimit.iptrk import IPTracker

logger = logging.getLogger("warden.auth")

RECOVERY_VALID = timedelta(days=7)
MIN_PASSWORD = 8

_IDENT = re.compile(r"^[a-z][a-z0-9_.\-]*$")


def check_ident(what: str, value: str) -> str:
    """Lower-case and validate a handle (username, group name)."""
    value = value.strip().lower()
    if len(value) < 3:
        raise InvalidInput(f"{what} has to be at least 3 characters")
    if len(value) > 64:
        raise InvalidInput(f"{what} is too long")
    if not _IDENT.match(value):
        raise InvalidInput(f"{what} contains invalid characters")
    return value


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserStore:
    """Usage:
        users = UserStore(db, vault, system, twofactor, iptrk, settings)
        user = users.check_auth(ctx, "alice", "secret", "123456")
        users.set_password(ctx, user, "new secret")
    """

    def __init__(
        self,
        db: Database,
        vault: PasswordVault,
        system: SystemConfig,
        twofactor: TwoFactorEngine,
        iptrk: IPTracker,
        settings: Settings,
    ) -> None:
        self.db = db
        self.vault = vault
        self.system = system
        self.twofactor = twofactor
        self.iptrk = iptrk
        self.settings = settings

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def fetch(self, username: str) -> User:
        try:
            return accessor.fetch(self.db, User, "member", {"ident": username.strip().lower()})
        except NotFound:
            raise NotFound("No such user") from None

    def exists(self, username: str) -> bool:
        with self.db.engine.connect() as conn:
            row = conn.execute(select(member.c.ident).where(member.c.ident == username.strip().lower())).first()
        return row is not None

    def email_owner(self, email: str) -> str | None:
        with self.db.engine.connect() as conn:
            return conn.execute(
                select(member_email.c.member).where(member_email.c.email == email.strip().lower())
            ).scalar_one_or_none()

    def primary_email(self, username: str) -> str | None:
        with self.db.engine.connect() as conn:
            return conn.execute(
                select(member_email.c.email)
                .where(member_email.c.member == username)
                .order_by(member_email.c.entered, member_email.c.email)
                .limit(1)
            ).scalar_one_or_none()

    def password_hash(self, username: str) -> str | None:
        with self.db.engine.connect() as conn:
            return conn.execute(select(member.c.password).where(member.c.ident == username)).scalar_one_or_none()

    def list(self, match: str = "") -> list[User]:
        """Users whose handle, name or affiliation contains `match` ("" or "*" for all)."""
        filters = []
        if match and match != "*":
            pattern = f"%{match}%"
            filters = [("ident", "ILIKE", pattern), ("descr", "ILIKE", pattern), ("affiliation", "ILIKE", pattern)]
        return accessor.fetch_many(self.db, User, "member", filters, combine="OR", order_by=["ident"])

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def verify_password(self, user: User, password: str) -> None:
        """Raise PasswordMismatch unless `password` is the user's current password."""
        self.vault.verify(password, self.password_hash(user.username))

    def check_auth(self, ctx: RequestContext, username: str, password: str, twofactor: str = "") -> User:
        ip = ctx.client_ip or UNKNOWN_ADDRESS

        if self.iptrk.count(ip):
            logger.warning("Login for %r refused: too many login attempts from IP %s", username, ip)
            raise RateLimited(f"Too many login attempts from IP: {ip}")

        if not password:
            raise LoginIncorrect(reason="no password provided")

        try:
            user = self.fetch(username)
        except NotFound:
            self.vault.verify_dummy(password)  # [U1]
            logger.info("Login failed for unknown user %r from %s", username, ip)
            raise LoginIncorrect(reason="no such user") from None

        if user.login_attempts > self.settings.login_attempts_max:
            logger.warning("Login for %s refused: account locked after %d attempts", user.username, user.login_attempts)
            raise RateLimited("Too many login attempts for this account")

        try:
            self.verify_password(user, password)
            self.twofactor.verify(ctx, user, twofactor)
        except (PasswordMismatch, TwoFactorError) as exc:
            logger.info("Login failed for %s from %s: %s", user.username, ip, exc.message)
            self.db.increase(ctx, "Login attempt failed for user $1", "member", "ident", user.username, "login_attempts")
            raise LoginIncorrect(reason=exc.message) from exc  # [U2]

        with self.db.transaction(ctx) as conn:
            conn.execute(
                update(member).where(member.c.ident == user.username).values(login_attempts=0, activity=now_iso())
            )
        user.login_attempts = 0
        self.iptrk.reset(ip)
        return user

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def set_password(self, ctx: RequestContext, user: User, password: str) -> None:
        if not password:
            raise InvalidInput("No password was provided")
        if len(password) < MIN_PASSWORD:
            raise InvalidInput("Please provide a password longer than 8 characters")

        if self.system.pw_enforce:
            problems = self.vault.check_rules(password, PasswordRules(**self.system.pw_rules()))
            if problems:
                raise InvalidInput("Password Problems encountered: " + ", ".join(problems))

        stored = self.vault.hash(password)
        # The hash itself never appears in the audit text.
        self.db.exec_audit(
            ctx,
            "Password changed for $1",
            update(member)
            .where(member.c.ident == user.username)
            .values(password=stored, login_attempts=0, recover_password=None, recover_password_set_at=None),
            [user.username],
        )
        user.login_attempts = 0

    def set_recovery(self, ctx: RequestContext, user: User) -> str:
        """Create a recovery token; only its SHA-256 is stored. Returns the token once."""
        token = gen_rand_hex(16)
        self.db.exec_audit(
            ctx,
            "Recovery token set for $1",
            update(member)
            .where(member.c.ident == user.username)
            .values(recover_password=hash_token(token), recover_password_set_at=now_iso()),
            [user.username],
        )
        return token

    def recover(self, ctx: RequestContext, username: str, token: str, password: str) -> User:
        fail = NotFound("Invalid recovery details")  # [U3]
        try:
            user = self.fetch(username)
        except NotFound:
            logger.info("Recovery for unknown user %r", username)
            raise fail from None

        with self.db.engine.connect() as conn:
            row = conn.execute(
                select(member.c.recover_password, member.c.recover_password_set_at).where(
                    member.c.ident == user.username
                )
            ).first()
        if row is None or not row.recover_password:
            logger.info("User %s has no recovery password", user.username)
            raise fail
        if hash_token(token) != row.recover_password:
            logger.info("Invalid recovery token for user %s", user.username)
            raise fail

        set_at = parse_iso(row.recover_password_set_at)
        if set_at is None or set_at + RECOVERY_VALID < datetime.now(timezone.utc):
            raise Unauthorized("Recovery password has expired")

        self.set_password(ctx, user, password)
        return user

    def reset_count(self, ctx: RequestContext, user: User) -> bool:
        return accessor.set_field(ctx, user, "member", "ident", user.username, "login_attempts", 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, ctx: RequestContext | None, username: str, email: str, full_name: str = "") -> User:
        username = check_ident("Username", username)
        email = email.strip().lower()
        if "@" not in email:
            raise InvalidInput("Invalid email address")
        if self.exists(username):
            raise Conflict("User already exists")
        if self.email_owner(email) is not None:
            raise Conflict("Email address already in use")

        now = now_iso()
        with self.db.transaction(ctx) as conn:
            conn.execute(
                insert(member).values(
                    ident=username, uuid=str(uuid.uuid4()), descr=full_name, sysadmin=False, entered=now
                )
            )
            self.db._audit(conn, ctx, f"Added new member {username}")
            conn.execute(insert(member_email).values(member=username, email=email, verified=True, entered=now))
            self.db._audit(conn, ctx, f"Added email address {email} to user {username}")
        logger.info("Created user %s", username)
        return self.fetch(username)

    def delete(self, ctx: RequestContext, username: str) -> None:
        with self.db.transaction(ctx) as conn:
            for tbl in (second_factors, member_trustgroup, member_email):
                conn.execute(delete(tbl).where(tbl.c.member == username))
            if conn.execute(delete(member).where(member.c.ident == username)).rowcount == 0:
                raise NotFound("No such user")
            self.db._audit(conn, ctx, f"Deleted user {username}")

    def bootstrap_admin(self, username: str, password: str, email: str = "") -> bool:
        """Create the first sysadmin at startup when it does not exist yet."""
        if not username or not password or self.exists(username):
            return False
        user = self.create(None, username, email or f"{username}@localhost")
        self.db.exec_audit(
            None,
            "Bootstrap sysadmin $1",
            update(member).where(member.c.ident == user.username).values(sysadmin=True, password=self.vault.hash(password)),
            [user.username],
        )
        logger.warning("Bootstrapped sysadmin account %s", user.username)
        return True

    # ------------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------------

    def menu(self) -> Menu:
        return Menu(
            [
                MenuEntry("new", user_new, 2, 2, ["username", "email"], Perm.SYS_ADMIN, "Create a new user"),
                MenuEntry("view", user_view, 1, 1, ["username"], Perm.USER, "View User Profile"),
                MenuEntry("set", user_set, 0, -1, None, Perm.USER, "Set properties of a user"),
                MenuEntry("get", user_get, 0, -1, None, Perm.USER, "Get properties of a user"),
                MenuEntry("list", user_list, 1, 1, ["match"], Perm.SYS_ADMIN, "List all users"),
                MenuEntry("delete", user_delete, 1, 1, ["username"], Perm.SYS_ADMIN, "Delete a user"),
                MenuEntry("2fa", tfa_menu, 0, -1, None, Perm.USER, "2FA Token Management"),
                MenuEntry("password", user_pw, 0, -1, None, Perm.NONE, "Password commands"),
            ]
        )

    def password_menu(self) -> Menu:
        return Menu(
            [
                MenuEntry(
                    "set",
                    user_pw_set,
                    2,
                    3,
                    ["username", "newpassword#password", "curpassword#password"],
                    Perm.USER,
                    "Set password, requires providing the current password",
                ),
                MenuEntry(
                    "recover",
                    user_pw_recover,
                    3,
                    3,
                    ["username", "token#password", "password#password"],
                    Perm.NONE,
                    "Set a password using the recovery token",
                ),
                MenuEntry(
                    "resetcount", user_pw_resetcount, 1, 1, ["username"], Perm.SYS_ADMIN, "Reset authentication failure count"
                ),
            ]
        )


# ---------------------------------------------------------------------------
# Menu handlers
# ---------------------------------------------------------------------------


def _print_groups(ctx: RequestContext, username: str, indent: str) -> None:
    fmt = ctx.services.settings.time_format
    for m in ctx.services.groups.memberships_of(username):
        ctx.outln(
            "%s[%s] <%s> %s (%s)",
            indent,
            m.group_name,
            m.email or "",
            m.state,
            m.entered.strftime(fmt) if m.entered else "",
        )


def user_new(ctx: RequestContext, args: list[str]) -> None:
    user = ctx.services.users.create(ctx, args[0], args[1])
    ctx.outln("User %s created", user.username)


def user_view(ctx: RequestContext, args: list[str]) -> None:
    ctx.select_user(args[0], Perm.USER_SELF)
    user = ctx.sel_user
    fmt = ctx.services.settings.time_format
    ctx.outln("Member: %s", user.username)
    ctx.outln("\tFull Name: %s", user.full_name)
    ctx.outln("\tAffiliation: %s", user.affiliation)
    ctx.outln("\tUUID: %s", user.uuid)
    ctx.outln("\tLast Activity: %s", user.activity.strftime(fmt) if user.activity else "never")
    ctx.outln("\tLogin Attempts: %d", user.login_attempts)
    ctx.outln("\tSecond Factors: %s", ctx.services.twofactor.summary(user.username))
    ctx.outln("\tGroups:")
    _print_groups(ctx, user.username, "\t\t")


def _user_set_value(ctx: RequestContext, args: list[str]) -> None:
    # args[0] == username, args[1] == value; the field is the last command word
    what = ctx.last_part
    user = ctx.sel_user
    if accessor.set_field(ctx, user, "member", "ident", user.username, what, args[1]):
        ctx.outln("Updated %s", what)
    else:
        ctx.outln("Value for %s was already set to the requested value", what)


def _user_sget(ctx: RequestContext, args: list[str], handler) -> None:
    user = User()
    if len(args) >= 2:
        ctx.select_user(args[1], Perm.USER_SELF if handler is not None else Perm.USER_VIEW)
        user = ctx.sel_user
    else:
        ctx.select_user("", Perm.NONE)
    ctx.menu(args, accessor.build_menu(ctx, ["username"], user, handler))


def user_set(ctx: RequestContext, args: list[str]) -> None:
    _user_sget(ctx, args, _user_set_value)


def user_get(ctx: RequestContext, args: list[str]) -> None:
    _user_sget(ctx, args, None)


def user_list(ctx: RequestContext, args: list[str]) -> None:
    users = ctx.services.users.list(args[0])
    if not users:
        ctx.outln("No matching users found")
        return
    for u in users:
        ctx.outln(
            "[%s] '%s' %s LA: %s, SF: %s",
            u.username,
            u.full_name,
            u.uuid,
            u.login_attempts or "none",
            ctx.services.twofactor.summary(u.username),
        )
        _print_groups(ctx, u.username, " ")


def user_delete(ctx: RequestContext, args: list[str]) -> None:
    ctx.select_user(args[0], Perm.SYS_ADMIN)
    username = ctx.sel_user.username
    ctx.select_user("", Perm.NONE)
    ctx.services.users.delete(ctx, username)
    ctx.outln("User %s deleted", username)


def user_pw_set(ctx: RequestContext, args: list[str]) -> None:
    ctx.select_user(args[0], Perm.USER_SELF)
    user = ctx.sel_user
    users = ctx.services.users

    # Sysadmins do not need the current password.
    if not ctx.is_sysadmin():
        try:
            users.verify_password(user, args[2] if len(args) > 2 else "")
        except PasswordMismatch:
            raise Unauthorized("Invalid currrent password.") from None

    users.set_password(ctx, user, args[1])
    ctx.outln("Password updated")
    ctx.select_user("", Perm.NONE)

    # Re-authenticate after changing one's own password.
    if not ctx.is_sysadmin() and ctx.user is not None and ctx.user.username == user.username:
        ctx.logout()


def user_pw_recover(ctx: RequestContext, args: list[str]) -> None:
    ctx.services.users.recover(ctx, args[0], args[1], args[2])
    ctx.outln("Password updated")


def user_pw_resetcount(ctx: RequestContext, args: list[str]) -> None:
    ctx.select_user(args[0], Perm.SYS_ADMIN)
    if ctx.services.users.reset_count(ctx, ctx.sel_user):
        ctx.outln("Login attempts reset")
    else:
        ctx.outln("Login attempts already at zero")


def user_pw(ctx: RequestContext, args: list[str]) -> None:
    ctx.menu(args, ctx.services.users.password_menu())


def user_menu(ctx: RequestContext, args: list[str]) -> None:
    ctx.menu(args, ctx.services.users.menu())
