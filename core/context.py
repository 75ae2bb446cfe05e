"""
core/context.py -- Per-request context: principal, selections, output.

A RequestContext is created by a front door (api/main.py for HTTP, the batch
runner for files) for exactly one request and is never shared between
threads. It carries:

  - the authenticated principal (or None), the bearer token and its claims
  - the source address and parsed user agent
  - the selected-object slots that permission predicates evaluate against
    (user, group, mailing list, email, second factor, generic object)
  - an output buffer, or a direct sink when the caller streams output
  - an abort event observed by long-running operations
  - the caller-owned database transaction, when one is attached

Security notes:
  [X1] login_with_token() re-fetches the principal on every request so a
       revoked sysadmin bit or a deleted account takes effect immediately;
       the elevated flag from the token only survives while the database
       still says the user may elevate.

  [X2] is_sysadmin() enforces the sysadmin_restrict prefix list. Outside the
       list the elevation is ignored for the current check; loopback always
       passes so local tooling keeps working.

Layer rule: core/ is the kernel. Collaborators arrive through Services.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from core import menu as menu_mod
from core.errors import Internal, NotFound, Unauthorized
from core.perms import Decision, Perm, check_perms

if TYPE_CHECKING:
    from auth.models import Group, SecondFactor, User
    from auth.tokens import Claims
    from core.menu import Menu, MenuEntry
    from core.services import Services

logger = logging.getLogger("warden.context")

StatusOK = 200
StatusUnauthorized = 401

# ---------------------------------------------------------------------------
# User agent parsing
# ---------------------------------------------------------------------------

_BROWSERS = [
    ("warden-cli", re.compile(r"^warden-cli/")),
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/")),
    ("Opera", re.compile(r"OPR/|Opera")),
    ("Chrome", re.compile(r"Chrome/|CriOS/")),
    ("Firefox", re.compile(r"Firefox/|FxiOS/")),
    ("Safari", re.compile(r"Safari/")),
    ("Internet Explorer", re.compile(r"MSIE |Trident/")),
    ("curl", re.compile(r"^curl/")),
    ("python-requests", re.compile(r"^python-requests/")),
]

_SYSTEMS = [
    ("Windows", re.compile(r"Windows")),
    ("Android", re.compile(r"Android")),
    ("iOS", re.compile(r"iPhone|iPad|iPod")),
    ("macOS", re.compile(r"Mac OS X|Macintosh")),
    ("Linux", re.compile(r"Linux|X11")),
]


def parse_user_agent(raw: str) -> tuple[str, str]:
    """Return (browser, os) for a User-Agent header; "unknown" when unsure."""
    browser = next((name for name, rx in _BROWSERS if rx.search(raw)), "unknown")
    system = next((name for name, rx in _SYSTEMS if rx.search(raw)), "unknown")
    return browser, system


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class RequestContext:
    """State of one request. See module docstring."""

    def __init__(
        self,
        services: Services,
        client_ip: str = "127.0.0.1",
        user_agent: str = "",
        language: str = "en",
        sink: Callable[[str], None] | None = None,
    ) -> None:
        self.services = services

        self.user: User | None = None
        self.token: str = ""
        self.claims: Claims | None = None

        self.client_ip = client_ip
        try:
            self._ip: ipaddress.IPv4Address | ipaddress.IPv6Address | None = ipaddress.ip_address(client_ip)
        except ValueError:
            self._ip = None
        self.ua_full = user_agent
        self.ua_browser, self.ua_os = parse_user_agent(user_agent)
        self.language = language

        self.sel_user: User | None = None
        self.sel_group: Group | None = None
        self.sel_ml: str | None = None
        self.sel_email: str | None = None
        self.sel_2fa: SecondFactor | None = None
        self.sel_obj: Any = None

        # Options for pluggable subtrees (file/wiki/message roots).
        self.mod_opts: dict[str, Any] = {}

        self.loc = ""
        self.walk_only = False
        self.walk_entry: MenuEntry | None = None
        self.status = StatusOK
        self.returncode = 0

        self.abort = threading.Event()
        self.tx = None
        self._tx = None

        self._sink = sink
        self._buffer: list[str] = []

    # ------------------------------------------------------------------
    # Services shortcuts
    # ------------------------------------------------------------------

    @property
    def system(self):
        return self.services.system

    @property
    def app_perms(self):
        return self.services.app_perms

    @property
    def menu_override(self):
        return self.services.menu_override

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def out(self, text: str) -> None:
        if self._sink is not None:
            self._sink(text)
        else:
            self._buffer.append(text)

    def outln(self, fmt: str = "", *args: Any) -> None:
        self.out((fmt % args if args else fmt) + "\n")

    def buffered(self) -> str:
        """Return everything written so far and clear the buffer."""
        text = "".join(self._buffer)
        self._buffer.clear()
        return text

    def set_sink(self, sink: Callable[[str], None] | None) -> None:
        self._sink = sink

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def begin(self) -> None:
        """Attach a caller-owned transaction; every mutation reuses it."""
        if self.tx is not None:
            raise Internal("A transaction is already active on this context")
        conn = self.services.db.engine.connect()
        self._tx = conn.begin()
        self.tx = conn

    def commit(self) -> None:
        self._end_tx(commit=True)

    def rollback(self) -> None:
        self._end_tx(commit=False)

    def _end_tx(self, commit: bool) -> None:
        if self.tx is None:
            return
        try:
            if commit:
                self._tx.commit()
            else:
                self._tx.rollback()
        finally:
            self.tx.close()
            self.tx = None
            self._tx = None

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Group several mutations; joins the active transaction when there is one."""
        if self.tx is not None:
            yield
            return
        self.begin()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def is_logged_in(self) -> bool:
        return self.user is not None

    def is_loopback(self) -> bool:
        return self._ip is not None and self._ip.is_loopback

    def selected_self(self) -> bool:
        return self.user is not None and self.sel_user is not None and self.user.username == self.sel_user.username

    def shares_group_with_selected(self) -> bool:
        if self.user is None or self.sel_user is None:
            return False
        return self.services.groups.shared_groups(self.sel_user.username, self.user.username)

    def can_be_sysadmin(self) -> bool:
        return self.user is not None and self.user.can_be_sysadmin

    def is_sysadmin(self) -> bool:
        """Elevated AND connecting from an allowed address [X2]."""
        if self.user is None or not self.user.is_sysadmin:
            return False
        networks = self.system.sa_networks
        if not networks or self.is_loopback():
            return True
        if self._ip is None:
            return False
        return any(self._ip in net for net in networks if net.version == self._ip.version)

    def _membership(self):
        if self.user is None or self.sel_group is None:
            return None
        return self.services.groups.membership(self.sel_group.name, self.user.username)

    def is_group_member(self) -> bool:
        m = self._membership()
        return m is not None and (m.admin or m.can_see)

    def i_am_group_admin(self) -> bool:
        if self.is_sysadmin():
            return True
        m = self._membership()
        return m is not None and m.admin and not m.blocked

    def group_has(self, feature: str) -> bool:
        return self.sel_group is not None and bool(getattr(self.sel_group, feature, False))

    def check_perms(self, what: str, perms: Perm) -> Decision:
        return check_perms(self, what, perms)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def become(self, user: User) -> None:
        self.user = user
        self.sel_user = user

    def new_token(self) -> str:
        """Issue a fresh session token for the current principal."""
        if self.user is None:
            raise Unauthorized("Not authenticated")
        self.token = self.services.tokens.issue_session(self.user)
        return self.token

    def login(self, username: str, password: str, twofactor: str = "") -> None:
        """Password (+ second factor) login; raises LoginIncorrect or RateLimited."""
        user = self.services.users.check_auth(self, username, password, twofactor)
        self.token = ""
        self.claims = None
        self.become(user)
        self.services.db.audit(self, "Login by $1", [user.username])

    def login_with_token(self, token: str) -> bool:
        """Authenticate with a bearer token. Returns True when it expires soon [X1]."""
        claims, expsoon = self.services.tokens.parse_session(token)
        try:
            user = self.services.users.fetch(claims.subject)
        except NotFound as exc:
            raise Unauthorized("No such user") from exc
        user.is_sysadmin = bool(claims.extras.get("issysadmin")) and user.can_be_sysadmin
        self.become(user)
        self.token = token
        self.claims = claims
        return expsoon

    def logout(self) -> None:
        if self.token:
            self.services.tokens.revoke(self.token)
        self.user = None
        self.token = ""
        self.claims = None
        self.sel_user = None
        self.sel_group = None
        self.sel_2fa = None

    def swap_admin(self) -> None:
        """Toggle elevation; the token is dropped so a new one carries the flag."""
        if not self.can_be_sysadmin():
            raise Unauthorized("Can't become SysAdmin")
        self.user.is_sysadmin = not self.user.is_sysadmin
        if self.token:
            self.services.tokens.revoke(self.token)
        self.token = ""
        self.claims = None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _select(self, slot: str, value: Any, what: str, perms: Perm, message: str) -> None:
        setattr(self, slot, value)
        decision = self.check_perms(what, perms)
        if not decision:
            setattr(self, slot, None)
            logger.info("%s denied for %s: %s", what, self.user.username if self.user else "::NONE::", decision.reason)
            raise Unauthorized(message)

    def select_user(self, username: str, perms: Perm) -> None:
        if not username:
            self.sel_user = None
            return
        username = username.lower()
        if self.user is not None and username == self.user.username:
            user = self.user
        else:
            user = self.services.users.fetch(username)
        self._select("sel_user", user, "SelectUser", perms, "Could not select user")

    def select_me(self) -> None:
        self.sel_user = self.user

    def select_group(self, name: str, perms: Perm) -> None:
        if not name:
            self.sel_group = None
            return
        group = self.services.groups.fetch(name)
        self._select("sel_group", group, "SelectGroup", perms, "Could not select group")

    def select_2fa(self, factor_id: int, perms: Perm) -> None:
        factor = self.services.twofactor.fetch(factor_id)
        if self.sel_user is None or factor.username != self.sel_user.username:
            raise NotFound("No such token")
        self._select("sel_2fa", factor, "Select2FA", perms, "Could not select 2FA Token")

    def select_email(self, email: str, perms: Perm) -> None:
        owner = self.services.users.email_owner(email)
        if self.sel_user is None or owner != self.sel_user.username:
            raise Unauthorized("Could not select email")
        self._select("sel_email", email, "SelectEmail", perms, "Could not select email")

    def select_object(self, obj: Any) -> None:
        self.sel_obj = obj

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @property
    def last_part(self) -> str:
        return self.loc.rsplit(" ", 1)[-1] if self.loc else ""

    def menu(self, args: list[str], menu: Menu) -> None:
        menu_mod.dispatch(self, args, menu)

    def cmd(self, args: list[str]) -> None:
        self.loc = ""
        menu_mod.dispatch(self, args, self.services.main_menu())

    def cmd_out(self, cmd: str, args: list[str] | None = None) -> str:
        """Run a command with buffered output and return that output."""
        words = cmd.split(" ") if cmd else []
        self.cmd(words + list(args or []))
        return self.buffered()

    def walk_menu(self, args: list[str]) -> MenuEntry | None:
        """Resolve the leaf entry for `args` without running it."""
        self.walk_entry = None
        self.walk_only = True
        try:
            self.cmd(args)
        finally:
            self.walk_only = False
        return self.walk_entry

    def batch(self, filename: str) -> None:
        menu_mod.batch(self, filename)
