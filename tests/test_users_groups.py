"""Unit tests for auth/users.py and auth/groups.py -- principals, passwords and memberships.

Covers:
- check_auth: success, wrong password, unknown user, account lock, IP limit,
  second factor during login, logins without a peer address
- Password rules and recovery tokens (including expiry and reuse)
- User creation conflicts, handle validation, deletion, bootstrap
- The `user ...` commands (view, list, set/get, password)
- Group lifecycle, membership state transitions, admin flag, visibility
- The `group ...` commands
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from core.db import member, to_iso
from core.errors import Conflict, InvalidInput, LoginIncorrect, NotFound, RateLimited, Unauthorized
from ratelimit.iptrk import UNKNOWN_ADDRESS


def _set_attempts(services, username: str, attempts: int) -> None:
    with services.db.engine.begin() as conn:
        conn.execute(update(member).where(member.c.ident == username).values(login_attempts=attempts))


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestCheckAuth:
    def test_success_is_audited(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        ctx = ctx_for(ip="192.0.2.10")
        ctx.login("alice", "Correct-Horse-42")
        assert ctx.user.username == "alice"
        assert ctx.sel_user.username == "alice"
        assert any(a["what"] == "Login by alice" for a in services.db.audit_list())
        assert services.users.fetch("alice").activity is not None

    def test_username_is_case_insensitive(self, make_user, ctx_for) -> None:
        make_user("alice")
        ctx = ctx_for()
        ctx.login("ALICE", "Correct-Horse-42")
        assert ctx.user.username == "alice"

    def test_wrong_password(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        with pytest.raises(LoginIncorrect) as info:
            services.users.check_auth(ctx_for(), "alice", "wrong-password")
        assert info.value.message == "Login incorrect"
        assert info.value.reason == "Password mismatch"
        assert services.users.fetch("alice").login_attempts == 1
        assert any(a["what"] == "Login attempt failed for user alice" for a in services.db.audit_list())

    def test_unknown_user(self, services, ctx_for) -> None:
        with pytest.raises(LoginIncorrect) as info:
            services.users.check_auth(ctx_for(), "mallory", "whatever-pass")
        assert info.value.reason == "no such user"
        assert info.value.message == "Login incorrect"

    def test_empty_password(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        with pytest.raises(LoginIncorrect) as info:
            services.users.check_auth(ctx_for(), "alice", "")
        assert info.value.reason == "no password provided"
        assert services.users.fetch("alice").login_attempts == 0

    def test_account_lock(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        _set_attempts(services, "alice", 10)
        # Exactly at the maximum still lets the correct password through.
        assert services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42").login_attempts == 0

        _set_attempts(services, "alice", 11)
        with pytest.raises(RateLimited, match="Too many login attempts for this account"):
            services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42")

    def test_success_resets_attempts(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        _set_attempts(services, "alice", 4)
        services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42")
        assert services.users.fetch("alice").login_attempts == 0

    def test_ip_limit(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        ip = "192.0.2.50"
        for _ in range(5):
            with pytest.raises(LoginIncorrect):
                services.users.check_auth(ctx_for(ip=ip), "alice", "wrong-password")
        with pytest.raises(RateLimited, match="Too many login attempts from IP: 192.0.2.50"):
            services.users.check_auth(ctx_for(ip=ip), "alice", "Correct-Horse-42")
        # Other addresses are unaffected.
        assert services.users.check_auth(ctx_for(ip="192.0.2.51"), "alice", "Correct-Horse-42")

    def test_success_clears_the_address(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        ip = "192.0.2.60"
        for _ in range(2):
            with pytest.raises(LoginIncorrect):
                services.users.check_auth(ctx_for(ip=ip), "alice", "wrong-password")
        services.users.check_auth(ctx_for(ip=ip), "alice", "Correct-Horse-42")
        assert services.iptrk.entries() == []

    def test_login_without_address_keeps_other_counters(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        for _ in range(6):
            services.iptrk.count("192.0.2.4")
        services.iptrk.count("2001:db8::6")

        ctx_for(ip="").login("alice", "Correct-Horse-42")

        assert [e.ip for e in services.iptrk.entries()] == ["192.0.2.4", "2001:db8::6"]
        assert services.iptrk.entries()[0].blocked

    def test_failures_without_address_share_one_bucket(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        with pytest.raises(LoginIncorrect):
            services.users.check_auth(ctx_for(ip=""), "alice", "wrong-password")
        [entry] = services.iptrk.entries()
        assert entry.ip == UNKNOWN_ADDRESS
        assert entry.count == 1

    def test_second_factor(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        [first, *_] = services.twofactor.add(ctx_for(alice), alice, "SOTP", "paper")

        with pytest.raises(LoginIncorrect) as info:
            services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42")
        assert info.value.reason == "2FA required, not provided"

        assert services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42", first.code).username == "alice"

        # Single-use codes are consumed.
        with pytest.raises(LoginIncorrect) as info:
            services.users.check_auth(ctx_for(), "alice", "Correct-Horse-42", first.code)
        assert info.value.reason == "Invalid 2FA"


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


class TestPasswords:
    def test_set_password(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        services.users.set_password(ctx_for(alice), alice, "Another-Horse-77")
        services.users.verify_password(alice, "Another-Horse-77")
        assert services.users.password_hash("alice").startswith("$6$")

    def test_too_short(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        with pytest.raises(InvalidInput, match="longer than 8 characters"):
            services.users.set_password(ctx_for(alice), alice, "short")
        with pytest.raises(InvalidInput, match="No password was provided"):
            services.users.set_password(ctx_for(alice), alice, "")

    def test_rules_only_when_enforced(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        services.system.pw_uppers = 1
        services.users.set_password(ctx_for(alice), alice, "zebra-quartz-71")

        services.system.pw_enforce = True
        with pytest.raises(InvalidInput) as info:
            services.users.set_password(ctx_for(alice), alice, "zebra-quartz-72")
        assert info.value.message.startswith("Password Problems encountered: ")
        assert "Not enough upper case letters (1+)" in info.value.message

        services.users.set_password(ctx_for(alice), alice, "Zebra-quartz-73")

    def test_set_password_resets_attempts(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        _set_attempts(services, "alice", 3)
        services.users.set_password(ctx_for(alice), alice, "Another-Horse-77")
        assert services.users.fetch("alice").login_attempts == 0


class TestRecovery:
    def test_recover(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        token = services.users.set_recovery(ctx_for(), alice)
        assert len(token) == 32

        user = services.users.recover(ctx_for(), "alice", token, "Recovered-Pass-1")
        assert user.username == "alice"
        services.users.verify_password(alice, "Recovered-Pass-1")

        with pytest.raises(NotFound, match="Invalid recovery details"):
            services.users.recover(ctx_for(), "alice", token, "Recovered-Pass-2")

    def test_wrong_token(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        services.users.set_recovery(ctx_for(), alice)
        with pytest.raises(NotFound, match="Invalid recovery details"):
            services.users.recover(ctx_for(), "alice", "0" * 32, "Recovered-Pass-1")

    def test_unknown_user_looks_the_same(self, services, ctx_for) -> None:
        with pytest.raises(NotFound, match="Invalid recovery details"):
            services.users.recover(ctx_for(), "nobody", "0" * 32, "Recovered-Pass-1")

    def test_no_token_set(self, services, make_user, ctx_for) -> None:
        make_user("alice")
        with pytest.raises(NotFound, match="Invalid recovery details"):
            services.users.recover(ctx_for(), "alice", "0" * 32, "Recovered-Pass-1")

    def test_expired(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        token = services.users.set_recovery(ctx_for(), alice)
        with services.db.engine.begin() as conn:
            conn.execute(
                update(member)
                .where(member.c.ident == "alice")
                .values(recover_password_set_at=to_iso(datetime.now(timezone.utc) - timedelta(days=8)))
            )
        with pytest.raises(Unauthorized, match="Recovery password has expired"):
            services.users.recover(ctx_for(), "alice", token, "Recovered-Pass-1")

    def test_recover_command(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        token = services.users.set_recovery(ctx_for(), alice)
        out = ctx_for().cmd_out("user password recover alice", [token, "Recovered-Pass-1"])
        assert out == "Password updated\n"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_create_normalises(self, services) -> None:
        user = services.users.create(None, " Carol ", "Carol@Example.org", full_name="Carol C")
        assert user.username == "carol"
        assert user.full_name == "Carol C"
        assert len(user.uuid) == 36
        assert services.users.email_owner("carol@example.org") == "carol"
        assert services.users.primary_email("carol") == "carol@example.org"

    def test_conflicts(self, services, make_user) -> None:
        make_user("alice")
        with pytest.raises(Conflict, match="User already exists"):
            services.users.create(None, "alice", "other@example.org")
        with pytest.raises(Conflict, match="Email address already in use"):
            services.users.create(None, "alice2", "alice@example.org")

    @pytest.mark.parametrize(
        "username,message",
        [
            ("ab", "Username has to be at least 3 characters"),
            ("9lives", "Username contains invalid characters"),
            ("bad name", "Username contains invalid characters"),
            ("x" * 65, "Username is too long"),
        ],
    )
    def test_bad_handles(self, services, username: str, message: str) -> None:
        with pytest.raises(InvalidInput, match=message):
            services.users.create(None, username, "someone@example.org")

    def test_bad_email(self, services) -> None:
        with pytest.raises(InvalidInput, match="Invalid email address"):
            services.users.create(None, "dave", "not-an-address")

    def test_delete(self, services, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        make_user("alice")
        ctx = ctx_for(root, elevated=True)
        services.users.delete(ctx, "alice")
        assert not services.users.exists("alice")
        assert services.users.email_owner("alice@example.org") is None
        with pytest.raises(NotFound):
            services.users.delete(ctx, "alice")

    def test_bootstrap_admin(self, services) -> None:
        assert services.users.bootstrap_admin("boss", "Boss-Password-1") is True
        assert services.users.bootstrap_admin("boss", "Boss-Password-1") is False
        assert services.users.bootstrap_admin("", "Boss-Password-1") is False
        boss = services.users.fetch("boss")
        assert boss.can_be_sysadmin is True
        assert services.users.primary_email("boss") == "boss@localhost"
        services.users.verify_password(boss, "Boss-Password-1")


# ---------------------------------------------------------------------------
# User commands
# ---------------------------------------------------------------------------


class TestUserCommands:
    def test_view_self(self, make_user, ctx_for) -> None:
        out = ctx_for(make_user("alice")).cmd_out("user view alice")
        assert out.startswith("Member: alice\n")
        assert "\tFull Name: Alice\n" in out
        assert "\tSecond Factors: none\n" in out

    def test_view_other_is_refused(self, make_user, ctx_for) -> None:
        make_user("alice")
        with pytest.raises(Unauthorized, match="Could not select user"):
            ctx_for(make_user("bob")).cmd_out("user view alice")

    def test_view_requires_login(self, make_user, ctx_for) -> None:
        make_user("alice")
        ctx = ctx_for()
        with pytest.raises(Unauthorized, match="Not authenticated"):
            ctx.cmd_out("user view alice")
        assert ctx.status == 401

    def test_list(self, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        make_user("alice")
        out = ctx_for(root, elevated=True).cmd_out("user list *")
        assert "[alice] 'Alice'" in out
        assert "[root] 'Root'" in out
        assert "SF: none" in out

    def test_list_no_match(self, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        assert ctx_for(root, elevated=True).cmd_out("user list zzz") == "No matching users found\n"

    def test_new(self, services, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        out = ctx_for(root, elevated=True).cmd_out("user new dave dave@example.org")
        assert out == "User dave created\n"
        assert services.users.exists("dave")

    def test_set_and_get(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        out = ctx_for(alice).cmd_out("user set descr alice", ["Alice L"])
        assert out == "Updated descr\n"
        assert services.users.fetch("alice").full_name == "Alice L"

        out = ctx_for(alice).cmd_out("user set descr alice", ["Alice L"])
        assert out == "Value for descr was already set to the requested value\n"

        assert "Alice L" in ctx_for(alice).cmd_out("user get descr alice")

    def test_password_set_logs_out(self, services, make_user, ctx_for) -> None:
        alice = make_user("alice")
        ctx = ctx_for(alice)
        out = ctx.cmd_out("user password set alice", ["Another-Horse-77", "Correct-Horse-42"])
        assert out == "Password updated\n"
        assert ctx.user is None
        services.users.verify_password(alice, "Another-Horse-77")

    def test_password_set_needs_current(self, make_user, ctx_for) -> None:
        alice = make_user("alice")
        with pytest.raises(Unauthorized, match="Invalid currrent password."):
            ctx_for(alice).cmd_out("user password set alice", ["Another-Horse-77", "not-my-password"])

    def test_sysadmin_sets_without_current(self, services, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        alice = make_user("alice")
        ctx = ctx_for(root, elevated=True)
        assert ctx.cmd_out("user password set alice", ["Another-Horse-77"]) == "Password updated\n"
        assert ctx.user is root
        services.users.verify_password(alice, "Another-Horse-77")

    def test_resetcount(self, services, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        make_user("alice")
        _set_attempts(services, "alice", 3)
        ctx = ctx_for(root, elevated=True)
        assert ctx.cmd_out("user password resetcount alice") == "Login attempts reset\n"
        assert services.users.fetch("alice").login_attempts == 0
        assert ctx.cmd_out("user password resetcount alice") == "Login attempts already at zero\n"

    def test_delete_command(self, services, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        make_user("alice")
        assert ctx_for(root, elevated=True).cmd_out("user delete alice") == "User alice deleted\n"
        assert not services.users.exists("alice")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@pytest.fixture
def people(make_user):
    return make_user("root", sysadmin=True), make_user("alice"), make_user("bob")


@pytest.fixture
def admin_ctx(people, ctx_for):
    return ctx_for(people[0], elevated=True)


class TestGroups:
    def test_create_makes_creator_admin(self, services, admin_ctx) -> None:
        group = services.groups.create(admin_ctx, "Ops", "Operations")
        assert group.name == "ops"
        assert group.description == "Operations"
        m = services.groups.membership("ops", "root")
        assert m.admin is True
        assert m.state == "approved"

    def test_create_conflict_and_bad_name(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        with pytest.raises(Conflict, match="Group already exists"):
            services.groups.create(admin_ctx, "ops")
        with pytest.raises(InvalidInput, match="Group Name has to be at least 3 characters"):
            services.groups.create(admin_ctx, "x")

    def test_member_add(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        services.groups.member_add(admin_ctx, "ops", "alice", "alice@example.org")
        m = services.groups.membership("ops", "alice")
        assert m.state == "nominated"
        assert m.admin is False
        assert m.email == "alice@example.org"
        with pytest.raises(Conflict, match="Already a group member"):
            services.groups.member_add(admin_ctx, "ops", "alice")

    def test_state_transitions(self, services, admin_ctx) -> None:
        groups = services.groups
        groups.create(admin_ctx, "ops")
        groups.member_add(admin_ctx, "ops", "alice")

        groups.set_state(admin_ctx, "ops", "alice", "approved")
        with pytest.raises(Conflict, match="Can't change member state from approved to nominated"):
            groups.set_state(admin_ctx, "ops", "alice", "nominated")
        with pytest.raises(Conflict):
            groups.set_state(admin_ctx, "ops", "alice", "approved")
        groups.set_state(admin_ctx, "ops", "alice", "blocked")
        groups.set_state(admin_ctx, "ops", "alice", "approved")
        assert groups.membership("ops", "alice").state == "approved"

    def test_nominated_can_be_blocked(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        services.groups.member_add(admin_ctx, "ops", "alice")
        services.groups.set_state(admin_ctx, "ops", "alice", "blocked")
        assert services.groups.membership("ops", "alice").blocked

    def test_state_of_non_member(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        with pytest.raises(NotFound, match="Not a member of this group"):
            services.groups.set_state(admin_ctx, "ops", "alice", "approved")

    def test_admin_flag(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        services.groups.member_add(admin_ctx, "ops", "alice")
        services.groups.set_admin(admin_ctx, "ops", "alice", True)
        assert services.groups.membership("ops", "alice").admin is True
        with pytest.raises(Conflict, match="Member already has that admin state"):
            services.groups.set_admin(admin_ctx, "ops", "alice", True)
        services.groups.set_admin(admin_ctx, "ops", "alice", False)
        assert services.groups.membership("ops", "alice").admin is False

    def test_member_remove(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        services.groups.member_add(admin_ctx, "ops", "alice")
        services.groups.member_remove(admin_ctx, "ops", "alice")
        assert services.groups.membership("ops", "alice") is None
        with pytest.raises(NotFound, match="Not a member of this group"):
            services.groups.member_remove(admin_ctx, "ops", "alice")

    def test_delete(self, services, admin_ctx) -> None:
        services.groups.create(admin_ctx, "ops")
        services.groups.member_add(admin_ctx, "ops", "alice")
        services.groups.delete(admin_ctx, "ops")
        with pytest.raises(NotFound, match="No such group"):
            services.groups.fetch("ops")
        assert services.groups.memberships_of("alice") == []
        with pytest.raises(NotFound):
            services.groups.delete(admin_ctx, "ops")

    def test_shared_groups(self, services, admin_ctx) -> None:
        groups = services.groups
        groups.create(admin_ctx, "ops")
        groups.member_add(admin_ctx, "ops", "alice")
        groups.member_add(admin_ctx, "ops", "bob")
        assert not groups.shared_groups("alice", "bob")
        # The group admin is always visible to its members.
        assert groups.shared_groups("alice", "root")

        groups.set_state(admin_ctx, "ops", "bob", "approved")
        assert groups.shared_groups("alice", "bob")
        assert groups.shared_groups("bob", "alice")


class TestGroupCommands:
    def test_full_flow(self, services, people, ctx_for) -> None:
        root, alice, bob = people
        assert ctx_for(root, elevated=True).cmd_out("group add ops") == "Creation of group ops complete\n"

        # root administers the group without elevation.
        assert ctx_for(root).cmd_out("group member add ops bob") == "Member added to group\n"
        assert services.groups.membership("ops", "bob").email == "bob@example.org"
        assert ctx_for(root).cmd_out("group member approve ops bob") == "Member bob in ops marked as approved\n"

        out = ctx_for(bob).cmd_out("group member list ops")
        assert "root Root approved admin\n" in out
        assert "bob Bob approved\n" in out

        assert ctx_for(bob).cmd_out("group list") == "ops ops\n"
        assert ctx_for(alice).cmd_out("group list") == "No Groups Found\n"

        assert ctx_for(root).cmd_out("group set descr ops", ["Operations"]) == "Updated descr\n"
        assert services.groups.fetch("ops").description == "Operations"

        assert ctx_for(root).cmd_out("group member block ops bob") == "Member bob in ops marked as blocked\n"

    def test_outsider_cannot_list_members(self, services, people, ctx_for) -> None:
        root, alice, _ = people
        ctx_for(root, elevated=True).cmd_out("group add ops")
        with pytest.raises(Unauthorized, match="Could not select group"):
            ctx_for(alice).cmd_out("group member list ops")

    def test_member_cannot_approve(self, services, people, ctx_for) -> None:
        root, alice, bob = people
        admin = ctx_for(root, elevated=True)
        admin.cmd_out("group add ops")
        services.groups.member_add(admin, "ops", "alice")
        services.groups.member_add(admin, "ops", "bob")
        services.groups.set_state(admin, "ops", "alice", "approved")
        with pytest.raises(Unauthorized):
            ctx_for(alice).cmd_out("group member approve ops bob")

    def test_member_removes_self(self, services, people, ctx_for) -> None:
        root, alice, _ = people
        admin = ctx_for(root, elevated=True)
        admin.cmd_out("group add ops")
        services.groups.member_add(admin, "ops", "alice")
        services.groups.set_state(admin, "ops", "alice", "approved")
        assert ctx_for(alice).cmd_out("group member remove ops alice") == "Member removed from group\n"
        assert services.groups.membership("ops", "alice") is None

    def test_groups_need_login(self, ctx_for) -> None:
        with pytest.raises(Unauthorized):
            ctx_for().cmd_out("group list")

    def test_remove_command(self, services, people, ctx_for) -> None:
        admin = ctx_for(people[0], elevated=True)
        admin.cmd_out("group add ops")
        assert admin.cmd_out("group remove ops") == "Group ops removed\n"
        with pytest.raises(NotFound):
            services.groups.fetch("ops")
