"""Unit tests for core/menu.py and core/context.py -- command dispatch, help and batch files.

Covers:
- Case-insensitive lookup, unknown commands with their location prefix
- Argument count validation, unbounded sub-menus
- Permission denial sets status 401 and carries the evaluator reason
- Help output hides hidden and forbidden entries
- Walk-only resolution stops at the first leaf without running it
- The menu override hook and the Menu editing helpers
- Batch files: sysadmin only, .cli only, comments, quoting, abort, one run at a time
- Request context helpers (user agent parsing, output sink, transactions)
"""

from __future__ import annotations

import os
import threading

import pytest
from sqlalchemy import insert, select, update

from api.services import build_services
from core.config import Settings
from core.context import RequestContext, parse_user_agent
from core.db import config, member
from core.errors import Internal, InvalidInput, NotFound, Unauthorized
from core.menu import Menu, MenuEntry, _batch_lock, dispatch
from core.perms import Perm


@pytest.fixture
def calls() -> list:
    return []


@pytest.fixture
def tree(calls) -> Menu:
    def leaf(ctx, args):
        calls.append(("leaf", ctx.loc, list(args)))
        ctx.outln("leaf ran")

    def sub(ctx, args):
        ctx.menu(args, Menu([MenuEntry("deep", leaf, 0, 2, ["a", "b#int"], Perm.NONE, "Deep leaf")]))

    return Menu(
        [
            MenuEntry("Leaf", leaf, 1, 2, ["first", "second"], Perm.NONE, "A leaf"),
            MenuEntry("sub", sub, 0, -1, None, Perm.NONE, "A sub-menu"),
            MenuEntry("secret", leaf, 0, 0, [], Perm.HIDDEN | Perm.NONE, "Hidden leaf"),
            MenuEntry("admin", leaf, 0, 0, [], Perm.SYS_ADMIN, "Admin leaf"),
        ]
    )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_runs_leaf_with_remaining_args(self, tree, calls, ctx_for) -> None:
        ctx = ctx_for()
        dispatch(ctx, ["LEAF", "x"], tree)
        assert calls == [("leaf", "leaf", ["x"])]
        assert ctx.buffered() == "leaf ran\n"

    def test_nested_location(self, tree, calls, ctx_for) -> None:
        dispatch(ctx_for(), ["sub", "deep", "1"], tree)
        assert calls == [("leaf", "sub deep", ["1"])]

    def test_unknown_command(self, tree, ctx_for) -> None:
        with pytest.raises(NotFound, match="^Unknown command: bogus$"):
            dispatch(ctx_for(), ["bogus"], tree)

    def test_unknown_nested_command(self, tree, ctx_for) -> None:
        with pytest.raises(NotFound, match="^Unknown command: sub bogus$"):
            dispatch(ctx_for(), ["sub", "bogus"], tree)

    def test_not_enough_arguments(self, tree, ctx_for) -> None:
        with pytest.raises(InvalidInput, match="Not enough arguments"):
            dispatch(ctx_for(), ["leaf"], tree)

    def test_too_many_arguments(self, tree, ctx_for) -> None:
        with pytest.raises(InvalidInput, match="Too many arguments"):
            dispatch(ctx_for(), ["leaf", "1", "2", "3"], tree)

    def test_denial_sets_status(self, tree, calls, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("alice"))
        with pytest.raises(Unauthorized, match="Not a SysAdmin"):
            dispatch(ctx, ["admin"], tree)
        assert ctx.status == 401
        assert calls == []

    def test_hidden_entries_still_run(self, tree, calls, ctx_for) -> None:
        dispatch(ctx_for(), ["secret"], tree)
        assert len(calls) == 1


class TestHelp:
    def test_root_help(self, tree, ctx_for) -> None:
        ctx = ctx_for()
        dispatch(ctx, [], tree)
        out = ctx.buffered()
        assert out.startswith("Warden Help\nUser: [Not authenticated]\n")
        assert "Welcome to the Warden menu system" in out
        assert "<first> <second>" in out
        assert "[SUB]" in out
        assert "secret" not in out
        assert "admin" not in out

    def test_sub_help_names_location(self, tree, ctx_for) -> None:
        ctx = ctx_for()
        dispatch(ctx, ["sub", "help"], tree)
        out = ctx.buffered()
        assert out.startswith('Warden Help for: "sub"\n')
        assert "<a> <b>" in out
        assert "Welcome" not in out

    def test_help_shows_elevation(self, tree, make_user, ctx_for) -> None:
        root = make_user("root", sysadmin=True)
        ctx = ctx_for(root)
        dispatch(ctx, ["help"], tree)
        assert "User: root [NOT sysadmin]" in ctx.buffered()

        ctx = ctx_for(root, elevated=True)
        dispatch(ctx, ["help"], tree)
        out = ctx.buffered()
        assert "User: root [sysadmin]" in out
        assert "Admin leaf" in out

    def test_main_menu_help(self, ctx_for) -> None:
        out = ctx_for().cmd_out("")
        assert "user" in out and "system" in out
        # group needs an authenticated caller
        assert "Group commands" not in out


class TestWalk:
    def test_walk_stops_at_leaf(self, services, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("alice"))
        entry = ctx.walk_menu(["system", "whoami"])
        assert entry is not None and entry.name == "whoami"
        assert ctx.buffered() == ""
        assert ctx.walk_only is False

    def test_walk_through_selecting_submenu(self, services, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("alice"))
        entry = ctx.walk_menu(["user", "2fa", "list", "alice"])
        assert entry.name == "list"
        assert services.twofactor.list_for("alice") == []

    def test_walk_does_not_skip_permissions(self, make_user, ctx_for) -> None:
        with pytest.raises(Unauthorized):
            ctx_for(make_user("alice")).walk_menu(["system", "report"])

    def test_help_not_allowed_while_walking(self, ctx_for) -> None:
        with pytest.raises(InvalidInput, match="help not allowed during menuwalk"):
            ctx_for().walk_menu(["system", "help"])


class TestOverride:
    def test_override_edits_every_menu(self, services, calls, ctx_for) -> None:
        def extra(ctx, args):
            ctx.outln("extra ran")

        def override(ctx, menu):
            if ctx.loc == "system" and menu.find("extra") is None:
                menu.add(MenuEntry("extra", extra, 0, 0, [], Perm.NONE, "Extra"))
                menu.remove("report")

        services.menu_override = override
        ctx = ctx_for()
        assert ctx.cmd_out("system extra") == "extra ran\n"
        with pytest.raises(NotFound):
            ctx.cmd_out("system report")

    def test_editing_helpers(self, tree) -> None:
        tree.add_perms("leaf", Perm.SYS_ADMIN)
        assert tree.find("leaf").perms == Perm.NONE | Perm.SYS_ADMIN
        tree.del_perms("leaf", Perm.NONE)
        assert tree.find("leaf").perms == Perm.SYS_ADMIN
        tree.set_perms("leaf", Perm.GUEST)
        assert tree.find("leaf").perms == Perm.GUEST

        replacement = MenuEntry("leaf", lambda ctx, args: None, 0, 0, [], Perm.NONE, "Replaced")
        tree.replace("LEAF", replacement)
        assert tree.find("leaf") is replacement
        tree.remove("leaf")
        assert tree.find("leaf") is None
        assert len(tree) == 3


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def _write(path, text: str):
    path.write_text(text)
    return str(path)


class TestBatch:
    def test_runs_every_command(self, services, make_user, ctx_for, tmp_path) -> None:
        filename = _write(
            tmp_path / "setup.cli",
            "# bootstrap\n"
            "user new bob bob@example.org\n"
            '"user" new "carol" carol@example.org\n'
            "\n"
            "group add ops\n",
        )
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        before = os.getcwd()
        ctx.batch(filename)
        out = ctx.buffered()

        assert services.users.exists("bob")
        assert services.users.exists("carol")
        assert services.groups.fetch("ops").name == "ops"
        assert "Command: ['user', 'new', 'bob', 'bob@example.org']" in out
        assert "Creation of group ops complete" in out
        assert out.rstrip().endswith("Batch processing done")
        assert os.getcwd() == before

    def test_stops_at_first_failure(self, services, make_user, ctx_for, tmp_path) -> None:
        filename = _write(tmp_path / "broken.cli", "user new bob bob@example.org\nno such\nuser new dave dave@example.org\n")
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        with pytest.raises(NotFound):
            ctx.batch(filename)
        assert services.users.exists("bob")
        assert not services.users.exists("dave")

    def test_requires_sysadmin(self, make_user, ctx_for, tmp_path) -> None:
        filename = _write(tmp_path / "setup.cli", "system whoami\n")
        with pytest.raises(Unauthorized, match="sysadmin"):
            ctx_for(make_user("alice")).batch(filename)

    def test_requires_cli_extension(self, make_user, ctx_for, tmp_path) -> None:
        filename = _write(tmp_path / "setup.txt", "system whoami\n")
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        with pytest.raises(InvalidInput, match="Not a .cli batch file"):
            ctx.batch(filename)
        with pytest.raises(InvalidInput):
            ctx.batch(".cli")

    def test_missing_file(self, make_user, ctx_for, tmp_path) -> None:
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        with pytest.raises(NotFound, match="Could not open batch file"):
            ctx.batch(str(tmp_path / "absent.cli"))

    def test_abort(self, services, make_user, ctx_for, tmp_path) -> None:
        filename = _write(tmp_path / "setup.cli", "user new bob bob@example.org\n")
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        ctx.abort.set()
        ctx.batch(filename)
        assert "Batch aborted" in ctx.buffered()
        assert not services.users.exists("bob")

    def test_system_batch_logs_in_first(self, services, make_user, ctx_for, tmp_path) -> None:
        make_user("root", sysadmin=True, password="Root-Password-1")
        filename = _write(tmp_path / "whoami.cli", "system whoami\n")
        # Not elevated by the login itself, so the batch is refused.
        with pytest.raises(Unauthorized):
            ctx_for().cmd_out("system batch", [filename, "root", "Root-Password-1"])

    def test_one_batch_at_a_time(self, tmp_path) -> None:
        services = build_services(Settings(database_url=f"sqlite:///{tmp_path / 'batch.db'}", debug=True, pw_hash_rounds=1000))
        services.users.create(None, "root", "root@example.org")
        with services.db.engine.begin() as conn:
            conn.execute(update(member).where(member.c.ident == "root").values(sysadmin=True))

        started = threading.Event()
        release = threading.Event()
        events: list[tuple[str, str]] = []

        def hold(ctx, args):
            events.append(("hold", os.getcwd()))
            started.set()
            release.wait(timeout=10)

        def mark(ctx, args):
            events.append(("mark", os.getcwd()))

        def override(ctx, menu):
            if ctx.loc == "system" and menu.find("hold") is None:
                menu.add(MenuEntry("hold", hold, 0, 0, [], Perm.NONE, "Block until released"))
                menu.add(MenuEntry("mark", mark, 0, 0, [], Perm.NONE, "Record the working directory"))

        services.menu_override = override
        (tmp_path / "first").mkdir()
        (tmp_path / "second").mkdir()
        first = _write(tmp_path / "first" / "hold.cli", "system hold\n")
        second = _write(tmp_path / "second" / "mark.cli", "system mark\n")

        def run(filename: str) -> None:
            ctx = RequestContext(services)
            user = services.users.fetch("root")
            user.is_sysadmin = True
            ctx.become(user)
            ctx.batch(filename)

        before = os.getcwd()
        one = threading.Thread(target=run, args=(first,))
        two = threading.Thread(target=run, args=(second,))
        try:
            one.start()
            assert started.wait(timeout=10)
            two.start()
            two.join(timeout=0.3)
            # The second batch is parked on the lock, its command not yet run.
            assert two.is_alive()
            assert [name for name, _ in events] == ["hold"]
            assert _batch_lock.locked()
        finally:
            release.set()
            one.join(timeout=10)
            two.join(timeout=10)
            services.db.close()

        assert events == [("hold", str((tmp_path / "first").resolve())), ("mark", str((tmp_path / "second").resolve()))]
        assert not _batch_lock.locked()
        assert os.getcwd() == before


# ---------------------------------------------------------------------------
# Context helpers
# ---------------------------------------------------------------------------


class TestContext:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("warden-cli/0.3.0", ("warden-cli", "unknown")),
            ("Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0", ("Firefox", "Linux")),
            (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
                "Chrome/124.0 Safari/537.36 Edg/124.0",
                ("Edge", "Windows"),
            ),
            ("curl/8.5.0", ("curl", "unknown")),
            ("", ("unknown", "unknown")),
        ],
    )
    def test_parse_user_agent(self, raw: str, expected: tuple[str, str]) -> None:
        assert parse_user_agent(raw) == expected

    def test_sink_receives_output(self, ctx_for) -> None:
        ctx = ctx_for()
        seen = []
        ctx.set_sink(seen.append)
        ctx.outln("%s=%d", "a", 1)
        assert seen == ["a=1\n"]
        assert ctx.buffered() == ""

    def test_transaction_rolls_back(self, services, ctx_for) -> None:
        ctx = ctx_for()
        with pytest.raises(RuntimeError):
            with ctx.transaction():
                ctx.tx.execute(insert(config).values(key="probe", value="1"))
                raise RuntimeError("boom")
        assert ctx.tx is None
        with services.db.engine.connect() as conn:
            assert conn.execute(select(config.c.value).where(config.c.key == "probe")).first() is None

    def test_transaction_commits(self, services, ctx_for) -> None:
        ctx = ctx_for()
        with ctx.transaction():
            ctx.tx.execute(insert(config).values(key="probe", value="1"))
        with services.db.engine.connect() as conn:
            assert conn.execute(select(config.c.value).where(config.c.key == "probe")).scalar_one() == "1"

    def test_nested_begin_is_an_error(self, ctx_for) -> None:
        ctx = ctx_for()
        ctx.begin()
        try:
            with pytest.raises(Internal):
                ctx.begin()
        finally:
            ctx.rollback()


# ---------------------------------------------------------------------------
# System commands
# ---------------------------------------------------------------------------


class TestSystemCommands:
    def test_login_and_whoami(self, make_user, ctx_for) -> None:
        make_user("alice")
        ctx = ctx_for()
        assert ctx.cmd_out("system login alice Correct-Horse-42") == "Login successful\n"
        assert ctx.cmd_out("system whoami") == "Username: alice\nFullname: Alice\n"
        ctx.cmd_out("system logout")
        assert ctx.cmd_out("system whoami") == "Not authenticated\n"

    def test_swapadmin(self, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("root", sysadmin=True))
        assert ctx.cmd_out("system swapadmin") == "Now a SysAdmin user\n"
        assert ctx.is_sysadmin()
        assert ctx.cmd_out("system swapadmin") == "Now a Regular user\n"

    def test_swapadmin_needs_the_flag(self, make_user, ctx_for) -> None:
        with pytest.raises(Unauthorized, match="Can't become SysAdmin"):
            ctx_for(make_user("alice")).cmd_out("system swapadmin")

    def test_report(self, make_user, ctx_for) -> None:
        out = ctx_for(make_user("root", sysadmin=True), elevated=True).cmd_out("system report")
        assert out.startswith("Warden\n")
        assert "Database contents:" in out
        assert "  Members: 1\n" in out
        assert "Revocation cache: 0 entries" in out

    def test_auditlog(self, make_user, ctx_for) -> None:
        make_user("alice")
        ctx_for().login("alice", "Correct-Horse-42")
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        out = ctx.cmd_out("system auditlog", ["Login by"])
        assert "  What    : Login by alice\n" in out
        assert "  Remote  : 127.0.0.1\n" in out

    def test_auditlog_no_match(self, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        with pytest.raises(NotFound, match="No audit records matched"):
            ctx.cmd_out("system auditlog", ["no such text anywhere"])

    def test_auditlog_bad_offset(self, make_user, ctx_for) -> None:
        ctx = ctx_for(make_user("root", sysadmin=True), elevated=True)
        with pytest.raises(InvalidInput, match="Invalid number encountered for offset: 'x'"):
            ctx.cmd_out("system auditlog", ["*", "", "", "x"])
