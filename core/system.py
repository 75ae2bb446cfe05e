"""
core/system.py -- Platform settings stored in the config table, and the `system` menu.

SystemConfig is a descriptor dataclass whose fields map one-to-one onto rows
of the (key, value) config table. load() seeds missing keys with the dataclass
defaults, so a fresh database is usable without a setup step. Every change
goes through core/accessor.py:set_keyed and is audited.

Security:
  [S1] sysadmin_restrict is parsed into networks at load time. A malformed
       prefix stored in the database is fatal at startup (Internal); a
       malformed prefix submitted through `system set` is rejected before it
       is written (InvalidInput).

  [S2] Every field is writable only by an elevated sysadmin (pfset).
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, insert, select

from core import accessor
from core.db import Database, config, metadata
from core.descriptors import FieldDesc, describe, pf_field
from core.errors import Internal, InvalidInput, NotFound
from core.menu import Menu, MenuEntry
from core.perms import Perm

if TYPE_CHECKING:
    from core.context import RequestContext

logger = logging.getLogger("warden.config")

STARTED = datetime.now(timezone.utc)

ERR_CIDR = "Invalid CIDR Prefix for SARestrict: "


def parse_networks(value: str) -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Space separated CIDR prefixes; ValueError on the first bad one."""
    networks = []
    for prefix in value.split():
        try:
            networks.append(ipaddress.ip_network(prefix, strict=False))
        except ValueError:
            raise ValueError(ERR_CIDR + prefix) from None
    return networks


@dataclass
class SystemConfig:
    name: str = pf_field("Warden", label="System Name", hint="Name of the System", pfset="sysadmin")
    welcome_text: str = pf_field(
        "", label="Welcome Text", hint="Welcome message shown on login", ftype="text", pfset="sysadmin"
    )
    admin_name: str = pf_field("", label="Name of the Administrator(s)", pfset="sysadmin")
    admin_email: str = pf_field("", label="Administrator email address", ftype="email", pfset="sysadmin")
    email_domain: str = pf_field("", label="Email Domain", hint="The domain where emails are sourced from", pfset="sysadmin")
    url_public: str = pf_field(
        "", label="Public URL", hint="The full URL where the system is exposed to the public", pfset="sysadmin"
    )
    cli_enabled: bool = pf_field(
        True, label="CLI Enabled", hint="Allow regular users to use the command line interface", pfset="sysadmin"
    )
    api_enabled: bool = pf_field(True, label="API Enabled", hint="Enable the /api/ URL", pfset="sysadmin")
    oauth_enabled: bool = pf_field(False, label="OAuth Enabled", hint="Enable delegated authorization grants", pfset="sysadmin")
    require2fa: bool = pf_field(
        False, label="Require 2FA", hint="Require Two Factor Authentication for every Login", pfset="sysadmin"
    )
    pw_enforce: bool = pf_field(
        False, label="Enforce Rules", hint="When enabled the rules below are enforced on new passwords", pfset="sysadmin"
    )
    pw_length: int = pf_field(8, label="Minimal Password Length (suggested: 12, min: 8)", min=8, pfset="sysadmin")
    pw_lengthmax: int = pf_field(1024, label="Maximal Password Length (suggested: 1024)", pfset="sysadmin")
    pw_letters: int = pf_field(0, label="Minimum amount of Letters", min=0, pfset="sysadmin")
    pw_uppers: int = pf_field(0, label="Minimum amount of Uppercase characters", min=0, pfset="sysadmin")
    pw_lowers: int = pf_field(0, label="Minimum amount of Lowercase characters", min=0, pfset="sysadmin")
    pw_numbers: int = pf_field(0, label="Minimum amount of Numbers", min=0, pfset="sysadmin")
    pw_specials: int = pf_field(0, label="Minimum amount of Special characters", min=0, pfset="sysadmin")
    sysadmin_restrict: str = pf_field(
        "",
        label="IP Restrict SysAdmin",
        hint="Space separated CIDR prefixes from which the SysAdmin bit is honoured; loopback is always allowed",
        pfset="sysadmin",
        pfget="sysadmin",
    )

    # Parsed sysadmin_restrict; not a setting itself.
    sa_networks: list = field(default_factory=list, repr=False, compare=False)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, db: Database) -> "SystemConfig":
        system = cls()
        system.refresh(db)
        return system

    def refresh(self, db: Database) -> None:
        """Re-read every setting from the config table [S1]."""
        defaults = type(self)()
        descs = {d.column: d for d in describe(type(self))}
        with db.engine.begin() as conn:
            stored = {row.key: row.value for row in conn.execute(select(config.c.key, config.c.value))}
            for column, desc in descs.items():
                if column not in stored:
                    default = accessor.serialize(desc, getattr(defaults, desc.name))
                    conn.execute(insert(config).values(key=column, value=default))
                    stored[column] = default

        for key, value in stored.items():
            desc = descs.get(key)
            if desc is None:
                logger.info("Unknown system configuration variable %r, ignoring", key)
                continue
            if value == "" and desc.kind != "string":
                setattr(self, desc.name, getattr(defaults, desc.name))
                continue
            try:
                setattr(self, desc.name, accessor.coerce(desc, value))
            except InvalidInput as exc:
                logger.warning("Ignoring invalid value for %s: %s", key, exc.message)

        try:
            self.sa_networks = parse_networks(self.sysadmin_restrict)
        except ValueError as exc:
            raise Internal(str(exc)) from exc

    def validate(self, desc: FieldDesc, value: Any) -> None:
        if desc.name == "sysadmin_restrict":
            try:
                parse_networks(value or "")
            except ValueError as exc:
                raise InvalidInput(str(exc)) from exc

    # ------------------------------------------------------------------
    # Password rules
    # ------------------------------------------------------------------

    def pw_rules(self) -> dict[str, int]:
        return {
            "min_length": self.pw_length,
            "max_length": self.pw_lengthmax,
            "min_letters": self.pw_letters,
            "min_uppers": self.pw_uppers,
            "min_lowers": self.pw_lowers,
            "min_numbers": self.pw_numbers,
            "min_specials": self.pw_specials,
        }


# ---------------------------------------------------------------------------
# Menu handlers
# ---------------------------------------------------------------------------

_REPORT_TABLES = [
    ("trustgroup", "Groups"),
    ("member", "Members"),
    ("member_email", "Member Emails"),
    ("member_trustgroup", "Group Memberships"),
    ("second_factors", "Second Factors"),
    ("iptrk", "IPtrk Entries"),
    ("jwt_invalidated", "Revoked Tokens"),
    ("audit_history", "Audit Records"),
]


def system_report(ctx: RequestContext, args: list[str]) -> None:
    services = ctx.services
    now = datetime.now(timezone.utc)
    ctx.outln(services.settings.app_name)
    ctx.outln("Daemon started at %s", STARTED.strftime(services.settings.time_format))
    ctx.outln("Daemon running for %s", str(now - STARTED).split(".", 1)[0])
    ctx.outln()
    ctx.outln("Database contents:")
    with services.db.engine.connect() as conn:
        for table, label in sorted(_REPORT_TABLES, key=lambda t: t[1]):
            total = conn.execute(select(func.count()).select_from(metadata.tables[table])).scalar_one()
            ctx.outln("  %s: %d", label, total)
    ctx.outln()
    ctx.outln("Revocation cache: %d entries", len(services.revocation))


def system_login(ctx: RequestContext, args: list[str]) -> None:
    twofactor = args[2] if len(args) == 3 else ""
    ctx.login(args[0], args[1], twofactor)
    ctx.outln("Login successful")


def system_logout(ctx: RequestContext, args: list[str]) -> None:
    ctx.logout()


def system_whoami(ctx: RequestContext, args: list[str]) -> None:
    if not ctx.is_logged_in():
        ctx.outln("Not authenticated")
        return
    ctx.outln("Username: %s", ctx.user.username)
    ctx.outln("Fullname: %s", ctx.user.full_name)


def system_swapadmin(ctx: RequestContext, args: list[str]) -> None:
    ctx.swap_admin()
    ctx.outln("Now a %s user", "SysAdmin" if ctx.is_sysadmin() else "Regular")


def _set_value(ctx: RequestContext, args: list[str]) -> None:
    what = ctx.last_part
    if accessor.set_keyed(ctx, ctx.system, "config", what, args[0]):
        ctx.outln("Updated %s", what)
    else:
        ctx.outln("Value for %s was already set to the requested value", what)


def system_set(ctx: RequestContext, args: list[str]) -> None:
    try:
        ctx.menu(args, accessor.build_menu(ctx, [], ctx.system, _set_value))
    finally:
        # Another node may have changed settings meanwhile.
        ctx.system.refresh(ctx.services.db)


def system_get(ctx: RequestContext, args: list[str]) -> None:
    ctx.menu(args, accessor.build_menu(ctx, [], ctx.system))


def system_batch(ctx: RequestContext, args: list[str]) -> None:
    if len(args) not in (1, 3, 4):
        raise InvalidInput(
            "Invalid number of arguments; either provide only a filename, "
            "or provide a filename along with a username, password and optional twofactor code"
        )
    if len(args) >= 3:
        ctx.login(args[1], args[2], args[3] if len(args) == 4 else "")
        ctx.outln("Changed user to %s", ctx.user.username)
    ctx.batch(args[0])


def _int_arg(value: str, name: str) -> int:
    try:
        return int(value, 10)
    except ValueError:
        raise InvalidInput(f"Invalid number encountered for {name}: '{value}'") from None


def system_auditlog(ctx: RequestContext, args: list[str]) -> None:
    search = args[0] if args[0] != "*" else ""
    username = args[1] if len(args) >= 2 else ""
    group = args[2] if len(args) >= 3 else ""
    offset = _int_arg(args[3], "offset") if len(args) >= 4 else 0
    limit = _int_arg(args[4], "max") if len(args) >= 5 else 0

    audits = ctx.services.db.audit_list(search, username, group, offset, limit)
    if not audits:
        raise NotFound("No audit records matched")

    fmt = ctx.services.settings.time_format
    for a in audits:
        entered = datetime.fromisoformat(a["entered"])
        ctx.outln("Entered   : %s", entered.strftime(fmt))
        ctx.outln("  Member  : %s", a["member"] or "")
        ctx.outln("  What    : %s", a["what"])
        ctx.outln("  Username: %s", a["username"] or "")
        ctx.outln("  Group   : %s", a["trustgroup"] or "")
        ctx.outln("  Remote  : %s", a["remote"] or "")
        ctx.outln()


def system_iptrk(ctx: RequestContext, args: list[str]) -> None:
    ctx.menu(args, ctx.services.iptrk.menu())


def system_menu(ctx: RequestContext, args: list[str]) -> None:
    menu = Menu(
        [
            MenuEntry("report", system_report, 0, 0, None, Perm.SYS_ADMIN, "Report system statistics"),
            MenuEntry("login", system_login, 2, 3, ["username", "password", "twofactor"], Perm.NONE, "Login"),
            MenuEntry("logout", system_logout, 0, 0, [], Perm.NONE, "Logout"),
            MenuEntry("whoami", system_whoami, 0, 0, [], Perm.NONE, "Who Am I?"),
            MenuEntry("swapadmin", system_swapadmin, 0, 0, [], Perm.SYS_ADMIN_CAN, "Swap from regular to sysadmin user"),
            MenuEntry("set", system_set, 0, -1, None, Perm.SYS_ADMIN, "Configure the system"),
            MenuEntry("get", system_get, 0, -1, None, Perm.NONE, "Get values from the system"),
            MenuEntry(
                "batch",
                system_batch,
                1,
                4,
                ["filename", "username", "password", "twofactor"],
                Perm.NONE,
                "Run a batch script (sysadmin credentials required for non-sysadmin users)",
            ),
            MenuEntry("iptrk", system_iptrk, 0, -1, None, Perm.SYS_ADMIN, "IPtrk control and information"),
            MenuEntry(
                "auditlog",
                system_auditlog,
                1,
                5,
                ["search", "username", "group", "offset#int", "max#int"],
                Perm.SYS_ADMIN,
                "View the Audit Log",
            ),
        ]
    )
    ctx.menu(args, menu)
