"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, no persistence logic). Every
persisted field carries its descriptor through pf_field(): column, read
permission (pfget), write permission (pfset), label and hint. The reflective
accessor (core/accessor.py) walks these tables; stores never hand-write the
column list.

Permission expressions are comma separated predicate names (see
core/perms.py). An empty expression means "anyone who reached the menu".

Layer rule: may import core/descriptors.py only.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from core.descriptors import pf_field


@dataclass
class User:
    """A principal. The handle (username) is the immutable primary key.

    is_sysadmin is never persisted: it is the per-session elevation, carried
    in the session token and only honoured while can_be_sysadmin holds.
    """

    username: str = pf_field("", column="ident", label="Username", ftype="ident", pfset="nobody", pfget="user_view")
    uuid: str = pf_field("", label="UUID", pfset="nobody", pfget="sysadmin")
    full_name: str = pf_field(
        "", column="descr", label="Full Name", hint="The name shown to other users", pfset="self", pfget="user_view"
    )
    first_name: str = pf_field("", column="name_first", label="First Name", pfset="self", pfget="user_view")
    last_name: str = pf_field("", column="name_last", label="Last Name", pfset="self", pfget="user_view")
    affiliation: str = pf_field(
        "", label="Affiliation", hint="Who the user is affiliated with", max=255, pfset="self", pfget="user_view"
    )
    can_be_sysadmin: bool = pf_field(
        False, column="sysadmin", label="System Administrator", pfset="sysadmin", pfget="group_admin"
    )
    login_attempts: int = pf_field(
        0,
        label="Failed Login Attempts",
        hint="Number of consecutive failed logins",
        min=0,
        pfset="group_admin",
        pfget="group_admin",
    )
    recover_email: str | None = pf_field(
        None, label="Recovery Email", ftype="email", hint="Where password recovery tokens are sent", pfset="self", pfget="self"
    )
    entered: datetime | None = pf_field(None, label="Entered", pfset="nobody", pfget="user,user_view")
    activity: datetime | None = pf_field(None, label="Last Activity", pfset="nobody", pfget="user,user_view")
    is_sysadmin: bool = pf_field(False, ignore=True)


@dataclass
class Group:
    name: str = pf_field("", column="ident", label="Group Name", ftype="ident", pfset="nobody", pfget="group_member")
    description: str = pf_field("", column="descr", label="Description", pfset="group_admin", pfget="group_member")
    pgp_required: bool = pf_field(False, label="PGP Required", pfset="group_admin", pfget="group_member")
    has_wiki: bool = pf_field(False, label="Wiki Module", pfset="group_admin", pfget="group_member")
    has_file: bool = pf_field(False, label="Files Module", pfset="group_admin", pfget="group_member")
    has_calendar: bool = pf_field(False, label="Calendar Module", pfset="group_admin", pfget="group_member")
    entered: datetime | None = pf_field(None, label="Entered", pfset="nobody", pfget="group_member")


@dataclass
class Membership:
    """One row of member_trustgroup joined with its state flags and display names."""

    username: str = pf_field("", column="member", label="Username")
    group_name: str = pf_field("", column="trustgroup", label="Group")
    full_name: str = pf_field("", column="descr", table="member", label="Full Name")
    group_desc: str = pf_field("", column="descr", table="trustgroup", label="Group Description")
    email: str | None = pf_field(None, label="Email")
    state: str = pf_field("", label="State")
    admin: bool = pf_field(False, label="Group Admin")
    can_login: bool = pf_field(False, table="member_state", label="Can Login")
    can_see: bool = pf_field(False, table="member_state", label="Can See")
    blocked: bool = pf_field(False, table="member_state", label="Blocked")
    hidden: bool = pf_field(False, table="member_state", label="Hidden")
    entered: datetime | None = pf_field(None, label="Entered")


@dataclass
class SecondFactor:
    id: int = pf_field(0, label="ID", pfset="nobody")
    username: str = pf_field("", column="member", label="UserName", ftype="ident", pfset="nobody", pfget="self")
    name: str = pf_field("", column="descr", label="Description", hint="Helpful name of the token", pfset="self", pfget="self")
    type: str = pf_field("", label="Type", pfset="nobody", pfget="self")
    entered: datetime | None = pf_field(None, label="Entered", pfset="nobody", pfget="self")
    active: bool = pf_field(False, label="Active", hint="Is the token active", pfset="nobody", pfget="self")
    key: str = pf_field("", label="Key", ftype="password", pfset="nobody", pfget="nobody")
    counter: int = pf_field(0, label="Count", hint="HOTP counter", pfset="nobody", pfget="self")

    def __str__(self) -> str:
        state = "active" if self.active else "inactive"
        entered = self.entered.strftime("%Y-%m-%d %H:%M:%S") if self.entered else ""
        return f"{self.username} {self.id} {self.name} {self.type}\n   {entered} {state}"
