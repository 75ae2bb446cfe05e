"""
auth/groups.py -- Groups, memberships and the group menus.

A membership row (member_trustgroup) carries a state whose flags come from
member_state:

  nominated  can't log in to the group, can't see it
  approved   full member
  blocked    hidden and blocked

Allowed transitions: nominated -> approved | blocked, approved -> blocked,
blocked -> approved. Anything else is a Conflict [G1].

Visibility between two users (user_view) exists when they share a group in
which either of them can see the group or is its admin.

Layer rule: auth/ may import core/, never api/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, func, insert, or_, select, update

from auth.models import Group, Membership
from auth.users import check_ident
from core import accessor
from core.db import Database, member, member_state, member_trustgroup, now_iso, trustgroup
from core.errors import Conflict, NotFound
from core.menu import Menu, MenuEntry
from core.perms import Perm

if TYPE_CHECKING:
    from core.context import RequestContext

logger = logging.getLogger("warden.auth")

STATE_NOMINATED = "nominated"
STATE_APPROVED = "approved"
STATE_BLOCKED = "blocked"

TRANSITIONS = {
    STATE_NOMINATED: {STATE_APPROVED, STATE_BLOCKED},
    STATE_APPROVED: {STATE_BLOCKED},
    STATE_BLOCKED: {STATE_APPROVED},
}

_JOINS = {
    "member": member.c.ident == member_trustgroup.c.member,
    "trustgroup": trustgroup.c.ident == member_trustgroup.c.trustgroup,
    "member_state": member_state.c.ident == member_trustgroup.c.state,
}


class GroupStore:
    """Usage:
        groups = GroupStore(db)
        groups.create(ctx, "ops")
        groups.member_add(ctx, "ops", "alice", "alice@example.org")
        groups.set_state(ctx, "ops", "alice", "approved")
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def fetch(self, name: str) -> Group:
        try:
            return accessor.fetch(self.db, Group, "trustgroup", {"ident": name.strip().lower()})
        except NotFound:
            raise NotFound("No such group") from None

    def list(self) -> list[Group]:
        return accessor.fetch_many(self.db, Group, "trustgroup", order_by=["ident"])

    def membership(self, group: str, username: str) -> Membership | None:
        try:
            return accessor.fetch(
                self.db, Membership, "member_trustgroup", {"trustgroup": group, "member": username}, joins=_JOINS
            )
        except NotFound:
            return None

    def memberships_of(self, username: str) -> list[Membership]:
        return accessor.fetch_many(
            self.db, Membership, "member_trustgroup", [("member", "=", username)], order_by=["trustgroup"], joins=_JOINS
        )

    def members(self, group: str) -> list[Membership]:
        return accessor.fetch_many(
            self.db, Membership, "member_trustgroup", [("trustgroup", "=", group)], order_by=["member"], joins=_JOINS
        )

    def shared_groups(self, a: str, b: str) -> bool:
        m1, m2 = member_trustgroup.alias("m1"), member_trustgroup.alias("m2")
        s1, s2 = member_state.alias("s1"), member_state.alias("s2")
        stmt = (
            select(func.count())
            .select_from(
                m1.join(m2, m1.c.trustgroup == m2.c.trustgroup)
                .join(s1, s1.c.ident == m1.c.state)
                .join(s2, s2.c.ident == m2.c.state)
            )
            .where(
                and_(
                    m1.c.member == a,
                    m2.c.member == b,
                    or_(s1.c.can_see, s2.c.can_see, m1.c.admin, m2.c.admin),
                )
            )
        )
        with self.db.engine.connect() as conn:
            return conn.execute(stmt).scalar_one() > 0

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create(self, ctx: RequestContext, name: str, description: str = "") -> Group:
        name = check_ident("Group Name", name)
        with ctx.transaction():
            exists = ctx.tx.execute(select(trustgroup.c.ident).where(trustgroup.c.ident == name)).first()
            if exists is not None:
                raise Conflict("Group already exists")
            self.db.exec_audit(
                ctx,
                "Created group $1",
                insert(trustgroup).values(ident=name, descr=description or name, shortname=name, entered=now_iso()),
                [name],
            )
            # The creator becomes the first, approved, admin member.
            if ctx.user is not None:
                self._insert_member(ctx, name, ctx.user.username, None, STATE_APPROVED, True)
        logger.info("Created group %s", name)
        return self.fetch(name)

    def delete(self, ctx: RequestContext, name: str) -> None:
        with ctx.transaction():
            ctx.tx.execute(delete(member_trustgroup).where(member_trustgroup.c.trustgroup == name))
            rows = self.db.exec_audit(ctx, "Removed group $1", delete(trustgroup).where(trustgroup.c.ident == name), [name])
            if rows == 0:
                raise NotFound("No such group")

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def _insert_member(self, ctx, group: str, username: str, email: str | None, state: str, admin: bool) -> None:
        self.db.exec_audit(
            ctx,
            "Added member $1 to group $2",
            insert(member_trustgroup).values(
                member=username, trustgroup=group, email=email, state=state, admin=admin, entered=now_iso()
            ),
            [username, group],
        )

    def member_add(self, ctx: RequestContext, group: str, username: str, email: str | None = None) -> None:
        if self.membership(group, username) is not None:
            raise Conflict("Already a group member")
        self._insert_member(ctx, group, username, email, STATE_NOMINATED, False)

    def member_remove(self, ctx: RequestContext, group: str, username: str) -> None:
        rows = self.db.exec_audit(
            ctx,
            "Removed member $1 from group $2",
            delete(member_trustgroup).where(
                and_(member_trustgroup.c.member == username, member_trustgroup.c.trustgroup == group)
            ),
            [username, group],
        )
        if rows == 0:
            raise NotFound("Not a member of this group")

    def set_state(self, ctx: RequestContext, group: str, username: str, state: str) -> None:
        current = self.membership(group, username)
        if current is None:
            raise NotFound("Not a member of this group")
        if state not in TRANSITIONS.get(current.state, set()):
            raise Conflict(f"Can't change member state from {current.state} to {state}")  # [G1]
        self.db.exec_audit(
            ctx,
            "Set member $2 in group $3 to state $1",
            update(member_trustgroup)
            .where(and_(member_trustgroup.c.member == username, member_trustgroup.c.trustgroup == group))
            .values(state=state),
            [state, username, group],
        )

    def set_admin(self, ctx: RequestContext, group: str, username: str, admin: bool) -> None:
        current = self.membership(group, username)
        if current is None:
            raise NotFound("Not a member of this group")
        if current.admin == admin:
            raise Conflict("Member already has that admin state")
        self.db.exec_audit(
            ctx,
            ("Promoted" if admin else "Demoted") + " member $1 in group $2",
            update(member_trustgroup)
            .where(and_(member_trustgroup.c.member == username, member_trustgroup.c.trustgroup == group))
            .values(admin=admin),
            [username, group],
        )

    # ------------------------------------------------------------------
    # Menus
    # ------------------------------------------------------------------

    def menu(self) -> Menu:
        return Menu(
            [
                MenuEntry("add", group_add, 1, 1, ["group"], Perm.SYS_ADMIN, "Add a new group"),
                MenuEntry("remove", group_remove, 1, 1, ["group"], Perm.SYS_ADMIN, "Remove a group"),
                MenuEntry("list", group_list, 0, 0, [], Perm.USER, "List all groups"),
                MenuEntry("set", group_set, 0, -1, None, Perm.USER, "Set properties of a group"),
                MenuEntry("get", group_get, 0, -1, None, Perm.USER, "Get properties of a group"),
                MenuEntry("member", group_member, 0, -1, None, Perm.USER, "Member commands"),
            ]
        )

    def member_menu(self) -> Menu:
        pair = ["group", "username"]
        return Menu(
            [
                MenuEntry("list", member_list, 1, 1, ["group"], Perm.GROUP_MEMBER, "List members of this group"),
                MenuEntry("add", member_add, 2, 2, pair, Perm.GROUP_ADMIN | Perm.GROUP_MEMBER, "Add a member to the group"),
                MenuEntry("remove", member_remove, 2, 2, pair, Perm.GROUP_ADMIN | Perm.USER_SELF, "Remove a member from the group"),
                MenuEntry("approve", member_approve, 2, 2, pair, Perm.GROUP_ADMIN, "Approve a member for a group"),
                MenuEntry("unblock", member_approve, 2, 2, pair, Perm.GROUP_ADMIN, "Unblock the member from this group"),
                MenuEntry("block", member_block, 2, 2, pair, Perm.GROUP_ADMIN, "Block the member from this group"),
                MenuEntry("promote", member_promote, 2, 2, pair, Perm.GROUP_ADMIN, "Promote user to Admin"),
                MenuEntry("demote", member_demote, 2, 2, pair, Perm.GROUP_ADMIN, "Demote user from Admin"),
            ]
        )


# ---------------------------------------------------------------------------
# Group handlers
# ---------------------------------------------------------------------------


def group_add(ctx: RequestContext, args: list[str]) -> None:
    group = ctx.services.groups.create(ctx, args[0])
    ctx.outln("Creation of group %s complete", group.name)


def group_remove(ctx: RequestContext, args: list[str]) -> None:
    ctx.services.groups.delete(ctx, args[0].strip().lower())
    ctx.outln("Group %s removed", args[0])


def group_list(ctx: RequestContext, args: list[str]) -> None:
    groups = ctx.services.groups
    if ctx.is_sysadmin():
        rows = [(g.name, g.description) for g in groups.list()]
    else:
        rows = [(m.group_name, m.group_desc) for m in groups.memberships_of(ctx.user.username) if m.can_see or m.admin]
    if not rows:
        ctx.outln("No Groups Found")
        return
    for name, desc in rows:
        ctx.outln("%s %s", name, desc)


def _group_set_value(ctx: RequestContext, args: list[str]) -> None:
    # args[0] == group, args[1] == value; the field is the last command word
    what = ctx.last_part
    group = ctx.sel_group
    if accessor.set_field(ctx, group, "trustgroup", "ident", group.name, what, args[1]):
        ctx.outln("Updated %s", what)
    else:
        ctx.outln("Value for %s was already set to the requested value", what)


def _group_sget(ctx: RequestContext, args: list[str], handler) -> None:
    group = Group()
    if len(args) >= 2:
        ctx.select_group(args[1], Perm.GROUP_ADMIN if handler is not None else Perm.GROUP_MEMBER)
        group = ctx.sel_group
    else:
        ctx.select_group("", Perm.NONE)
    ctx.menu(args, accessor.build_menu(ctx, ["group"], group, handler))


def group_set(ctx: RequestContext, args: list[str]) -> None:
    _group_sget(ctx, args, _group_set_value)


def group_get(ctx: RequestContext, args: list[str]) -> None:
    _group_sget(ctx, args, None)


# ---------------------------------------------------------------------------
# Member handlers -- group and user are selected by group_member()
# ---------------------------------------------------------------------------


def member_list(ctx: RequestContext, args: list[str]) -> None:
    show_all = ctx.i_am_group_admin()
    for m in ctx.services.groups.members(ctx.sel_group.name):
        if m.hidden and not show_all:
            continue
        ctx.outln("%s %s %s%s", m.username, m.full_name, m.state, " admin" if m.admin else "")


def member_add(ctx: RequestContext, args: list[str]) -> None:
    username = ctx.sel_user.username
    ctx.services.groups.member_add(ctx, ctx.sel_group.name, username, ctx.services.users.primary_email(username))
    ctx.outln("Member added to group")


def member_remove(ctx: RequestContext, args: list[str]) -> None:
    ctx.services.groups.member_remove(ctx, ctx.sel_group.name, ctx.sel_user.username)
    ctx.outln("Member removed from group")


def _set_state(ctx: RequestContext, state: str) -> None:
    ctx.services.groups.set_state(ctx, ctx.sel_group.name, ctx.sel_user.username, state)
    ctx.outln("Member %s in %s marked as %s", ctx.sel_user.username, ctx.sel_group.name, state)


def member_approve(ctx: RequestContext, args: list[str]) -> None:
    _set_state(ctx, STATE_APPROVED)


def member_block(ctx: RequestContext, args: list[str]) -> None:
    _set_state(ctx, STATE_BLOCKED)


def _set_admin(ctx: RequestContext, admin: bool) -> None:
    ctx.services.groups.set_admin(ctx, ctx.sel_group.name, ctx.sel_user.username, admin)
    ctx.outln("Member marked Admin as %s", "yes" if admin else "no")


def member_promote(ctx: RequestContext, args: list[str]) -> None:
    _set_admin(ctx, True)


def member_demote(ctx: RequestContext, args: list[str]) -> None:
    _set_admin(ctx, False)


def group_member(ctx: RequestContext, args: list[str]) -> None:
    if len(args) >= 2:
        ctx.select_group(args[1], Perm.GROUP_MEMBER)
    else:
        ctx.select_group("", Perm.NONE)
    if len(args) >= 3:
        ctx.select_user(args[2], Perm.USER_VIEW | Perm.USER_NOMINATE)
    else:
        ctx.select_user("", Perm.NONE)
    ctx.menu(args, ctx.services.groups.member_menu())


def group_menu(ctx: RequestContext, args: list[str]) -> None:
    ctx.menu(args, ctx.services.groups.menu())
