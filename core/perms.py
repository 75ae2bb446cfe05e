"""
core/perms.py -- Permission predicates and the evaluator.

A permission mask is a Perm flag combining predicates. check_perms()
evaluates a requested mask against the request context and answers with a
Decision. Any predicate that holds allows the request ("any of these
conditions is sufficient"); a failing predicate records its reason and
evaluation continues with the next one.

Evaluation order:
   1. nobody                         -> deny
   2. nothing (empty mask)           -> allow
   3. cli / api / oauth / loopback   -> platform toggles and source address
   4. guest                          -> allow only when NOT authenticated (terminal)
   5. self                           -> caller selected themselves
   6. user_view                      -> self, or caller shares a visible group
   7. group_wiki / _file / _calendar -> feature enabled (terminal if not) + member
   8. none                           -> allow
   9. everything below requires an authenticated caller (terminal)
  10. elevated sysadmin              -> allow, only from an allowed address
  11. user, group_admin, group_member, user_nominate, sysadmin_can
  12. application hook for app_0..app_9

Security notes:
  [P1] Decision.reason is for the log channel and for the user-facing error
       text. Predicate names never appear in it.

  [P2] The sysadmin bypass in step 10 goes through ctx.is_sysadmin(), which
       drops the elevation when the source address is outside the configured
       sysadmin_restrict prefixes (loopback always passes).

Layer rule: core/ is the kernel. The context is duck-typed here; this module
never imports auth/ or api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntFlag

from core.errors import InvalidInput

logger = logging.getLogger("warden.perms")


class Perm(IntFlag):
    NOTHING = 0
    NONE = 1 << 0
    GUEST = 1 << 1
    USER = 1 << 2
    USER_SELF = 1 << 3
    USER_NOMINATE = 1 << 4
    USER_VIEW = 1 << 5
    GROUP_MEMBER = 1 << 6
    GROUP_ADMIN = 1 << 7
    GROUP_WIKI = 1 << 8
    GROUP_FILE = 1 << 9
    GROUP_CALENDAR = 1 << 10
    SYS_ADMIN = 1 << 11
    SYS_ADMIN_CAN = 1 << 12
    CLI = 1 << 13
    API = 1 << 14
    OAUTH = 1 << 15
    LOOPBACK = 1 << 16
    HIDDEN = 1 << 17
    NOCRUMB = 1 << 18
    NOSUBS = 1 << 19
    NOBODY = 1 << 20
    APP_0 = 1 << 21
    APP_1 = 1 << 22
    APP_2 = 1 << 23
    APP_3 = 1 << 24
    APP_4 = 1 << 25
    APP_5 = 1 << 26
    APP_6 = 1 << 27
    APP_7 = 1 << 28
    APP_8 = 1 << 29
    APP_9 = 1 << 30


# Names accepted in descriptor expressions ("self,group_admin").
PERM_NAMES: dict[str, Perm] = {
    "nothing": Perm.NOTHING,
    "none": Perm.NONE,
    "guest": Perm.GUEST,
    "user": Perm.USER,
    "self": Perm.USER_SELF,
    "user_nominate": Perm.USER_NOMINATE,
    "user_view": Perm.USER_VIEW,
    "group_member": Perm.GROUP_MEMBER,
    "group_admin": Perm.GROUP_ADMIN,
    "group_wiki": Perm.GROUP_WIKI,
    "group_file": Perm.GROUP_FILE,
    "group_calendar": Perm.GROUP_CALENDAR,
    "sysadmin": Perm.SYS_ADMIN,
    "sysadmin_can": Perm.SYS_ADMIN_CAN,
    "cli": Perm.CLI,
    "api": Perm.API,
    "oauth": Perm.OAUTH,
    "loopback": Perm.LOOPBACK,
    "hidden": Perm.HIDDEN,
    "nocrumb": Perm.NOCRUMB,
    "nosubs": Perm.NOSUBS,
    "nobody": Perm.NOBODY,
    **{f"app_{n}": Perm[f"APP_{n}"] for n in range(10)},
}

_APP_MASK = Perm.APP_0
for _n in range(1, 10):
    _APP_MASK |= Perm[f"APP_{_n}"]


def convert_perms(expr: str) -> Perm:
    """Turn a comma separated expression into a mask. Empty -> NOTHING."""
    perms = Perm.NOTHING
    for part in expr.lower().split(","):
        part = part.strip()
        if not part:
            continue
        if part not in PERM_NAMES:
            raise InvalidInput(f"Unknown permission: '{part}'")
        perms |= PERM_NAMES[part]
    return perms


def perms_to_str(perms: Perm) -> str:
    return ",".join(name for name, bit in PERM_NAMES.items() if bit and perms & bit)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.allowed


_ALLOW = Decision(True)


def check_perms(ctx, what: str, perms: Perm) -> Decision:
    """Evaluate `perms` against the request context."""
    system = ctx.system
    reason = ""

    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            "%s: perms=%s user=%s sel_user=%s sel_group=%s",
            what,
            perms_to_str(perms),
            ctx.user.username if ctx.user else "::NONE::",
            ctx.sel_user.username if ctx.sel_user else "::NONE::",
            ctx.sel_group.name if ctx.sel_group else "::NONE::",
        )

    if perms & Perm.NOBODY:
        return Decision(False, "Nobody is allowed")

    if perms == Perm.NOTHING:
        return _ALLOW

    if perms & Perm.CLI:
        if ctx.is_logged_in() and system.cli_enabled:
            return _ALLOW
        reason = "CLI is not enabled"

    if perms & Perm.API:
        if system.api_enabled:
            return _ALLOW
        reason = "API is not enabled"

    if perms & Perm.OAUTH:
        if system.oauth_enabled:
            return _ALLOW
        reason = "OAuth is not enabled"

    if perms & Perm.LOOPBACK:
        if ctx.is_loopback():
            return _ALLOW
        reason = "Not a Loopback"

    if perms & Perm.GUEST:
        if not ctx.is_logged_in():
            return _ALLOW
        return Decision(False, "Must not be authenticated")

    if perms & Perm.USER_SELF:
        if not ctx.is_logged_in():
            reason = "Not Authenticated"
        elif ctx.sel_user is None:
            reason = "No user selected"
        elif ctx.selected_self():
            return _ALLOW
        else:
            reason = "Different user selected"

    if perms & Perm.USER_VIEW:
        if not ctx.is_logged_in():
            reason = "Not Authenticated"
        elif ctx.sel_user is None:
            reason = "No user selected"
        elif ctx.selected_self() or ctx.shares_group_with_selected():
            return _ALLOW
        else:
            reason = "Different user selected"

    for flag, feature, label in (
        (Perm.GROUP_WIKI, "has_wiki", "a Wiki"),
        (Perm.GROUP_FILE, "has_file", "a File"),
        (Perm.GROUP_CALENDAR, "has_calendar", "a Calendar"),
    ):
        if perms & flag:
            if not ctx.group_has(feature):
                return Decision(False, f"Group does not have {label}")
            if ctx.is_group_member():
                return _ALLOW
            reason = "Not a group member"

    if perms & Perm.NONE:
        return _ALLOW

    if not ctx.is_logged_in():
        return Decision(False, "Not authenticated")

    if ctx.is_sysadmin():
        return _ALLOW
    reason = "Not a SysAdmin"

    if perms & Perm.USER:
        return _ALLOW

    if perms & Perm.GROUP_ADMIN:
        if ctx.i_am_group_admin():
            return _ALLOW
        reason = "Not a group admin"

    if perms & Perm.GROUP_MEMBER:
        if ctx.is_group_member():
            return _ALLOW
        reason = "Not a group member"

    if perms & Perm.USER_NOMINATE:
        if ctx.sel_user is not None:
            return _ALLOW
        reason = "No user selected"

    if perms & Perm.SYS_ADMIN_CAN:
        if ctx.can_be_sysadmin():
            return _ALLOW
        reason = "Can't become SysAdmin"

    hook = ctx.app_perms
    if hook is not None and perms & _APP_MASK:
        final, ok, hook_reason = hook(ctx, what, perms)
        if final:
            return Decision(ok, "" if ok else (hook_reason or reason))

    return Decision(False, reason)
