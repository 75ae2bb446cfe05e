"""
core/menu.py -- Hierarchical command tree and its dispatcher.

A Menu is an ordered list of MenuEntry. dispatch() resolves args[0] against
the entries (case-insensitive), checks the entry's permission mask through
core/perms.py, validates the argument count and calls the handler with the
remaining arguments. Handlers for sub-menus build their own Menu and call
ctx.menu(args, submenu), so permissions are enforced at every hop.

Walk-only mode (ctx.walk_menu) runs the same traversal but stops at the
first leaf entry and records it in ctx.walk_entry instead of invoking it.
The HTTP front door uses this to authorize a command before committing to
any side effect.

Batch mode runs a .cli file line by line. Only one batch runs per process at
a time because it changes the process working directory [B1].

Security notes:
  [B1] batch() holds _batch_lock for its whole run and restores the previous
       working directory on every exit path.

  [B2] Permission denials set ctx.status to 401 and log the caller and the
       command location. The raised Unauthorized carries the evaluator's
       reason text, which never names predicates.
"""

from __future__ import annotations

import csv
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING

from core.errors import InvalidInput, NotFound, Unauthorized
from core.perms import Perm, check_perms

if TYPE_CHECKING:
    from core.context import RequestContext

logger = logging.getLogger("warden.menu")

ERR_UNKNOWN_CMDPFX = "Unknown command: "

_batch_lock = threading.Lock()


@dataclass
class MenuEntry:
    name: str
    handler: Callable[[RequestContext, list[str]], None]
    args_min: int
    args_max: int  # -1 = unbounded
    args: list[str] | None  # argument descriptors ("name#type"); None for sub-menus
    perms: Perm
    desc: str

    @property
    def is_submenu(self) -> bool:
        return self.args is None and self.args_max == -1


class Menu:
    """Ordered collection of MenuEntry with small editing helpers."""

    def __init__(self, entries: list[MenuEntry] | None = None) -> None:
        self.entries: list[MenuEntry] = list(entries or [])

    def __iter__(self):
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def find(self, name: str) -> MenuEntry | None:
        name = name.lower()
        return next((e for e in self.entries if e.name.lower() == name), None)

    def add(self, *entries: MenuEntry) -> None:
        self.entries.extend(entries)

    def remove(self, name: str) -> None:
        self.entries = [e for e in self.entries if e.name.lower() != name.lower()]

    def replace(self, name: str, entry: MenuEntry) -> None:
        self.entries = [entry if e.name.lower() == name.lower() else e for e in self.entries]

    def _retag(self, name: str, fn: Callable[[Perm], Perm]) -> None:
        self.entries = [replace(e, perms=fn(e.perms)) if e.name.lower() == name.lower() else e for e in self.entries]

    def add_perms(self, name: str, perms: Perm) -> None:
        self._retag(name, lambda p: p | perms)

    def del_perms(self, name: str, perms: Perm) -> None:
        self._retag(name, lambda p: p & ~perms)

    def set_perms(self, name: str, perms: Perm) -> None:
        self._retag(name, lambda p: perms)


# ---------------------------------------------------------------------------
# Help
# ---------------------------------------------------------------------------


def _help(ctx: RequestContext, menu: Menu) -> None:
    app = ctx.services.settings.app_name
    if ctx.loc:
        ctx.outln('%s Help for: "%s"', app, ctx.loc)
    else:
        ctx.outln("%s Help", app)

    if ctx.is_logged_in():
        marker = ""
        if ctx.is_sysadmin():
            marker = " [sysadmin]"
        elif ctx.can_be_sysadmin():
            marker = " [NOT sysadmin]"
        ctx.outln("User: %s%s", ctx.user.username, marker)
    else:
        ctx.outln("User: [Not authenticated]")
    ctx.outln()

    if not ctx.loc:
        ctx.out(
            f"Welcome to the {app} menu system which is command line interface (CLI) based.\n"
            "Note that when a command is not in the help menu the selected user might not have permissions for it.\n"
            "\n"
            "Each section, items marked [SUB], has its own 'help' command.\n"
            "\n"
            "The following commands are available on the root level:\n"
        )

    for e in menu:
        if e.perms & Perm.HIDDEN:
            continue
        if not check_perms(ctx, f"Menu({e.name})/help", e.perms):
            continue
        if e.args is not None:
            opts = " ".join(f"<{a.split('#', 1)[0]}>" for a in e.args)
        elif e.args_max == -1:
            opts = "[SUB]"
        else:
            opts = ""
        ctx.outln(" %-20s %-20s %-20s", e.name, opts, e.desc)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def dispatch(ctx: RequestContext, args: list[str], menu: Menu) -> None:
    """Resolve args[0] in `menu` and run (or, walking, record) the entry."""
    if ctx.menu_override is not None:
        ctx.menu_override(ctx, menu)

    arg = args[0].lower() if args and args[0] else "help"

    if arg == "help":
        if ctx.walk_only:
            raise InvalidInput("help not allowed during menuwalk")
        _help(ctx, menu)
        return

    e = menu.find(arg)
    if e is None:
        prefix = f"{ctx.loc} " if ctx.loc else ""
        raise NotFound(f"{ERR_UNKNOWN_CMDPFX}{prefix}{arg}")

    ctx.loc = f"{ctx.loc} {arg}" if ctx.loc else arg
    rest = list(args[1:])

    decision = check_perms(ctx, f"Menu({e.name})", e.perms)
    if not decision:
        ctx.status = 401
        who = ctx.user.username if ctx.user else "::NONE::"
        logger.warning("User %s tried access to command '%s': %s", who, ctx.loc, decision.reason)
        raise Unauthorized(decision.reason)

    if ctx.walk_only and not e.is_submenu:
        ctx.walk_entry = e
        return

    if len(rest) < e.args_min:
        raise InvalidInput(f"Not enough arguments for '{ctx.loc}' (got {len(rest)}, need at least {e.args_min})")
    if e.args_max != -1 and len(rest) > e.args_max:
        raise InvalidInput(f"Too many arguments for '{ctx.loc}' (got {len(rest)}, maximum is {e.args_max})")

    e.handler(ctx, rest)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def _read_commands(path: Path) -> list[list[str]]:
    """Space separated fields, '#' comment lines, quoting as in CSV."""
    with path.open(newline="") as fh:
        lines = [line.strip() for line in fh if not line.lstrip().startswith("#")]
    return [row for row in csv.reader(lines, delimiter=" ", skipinitialspace=True)]


def batch(ctx: RequestContext, filename: str) -> None:
    """Run every command in a .cli file, stopping at the first failure [B1]."""
    if not ctx.is_sysadmin():
        raise Unauthorized("Batch commands require sysadmin permissions")
    if len(filename) <= 4 or not filename.endswith(".cli"):
        raise InvalidInput("Not a .cli batch file")

    with _batch_lock:
        ctx.outln("Opening batch file: %s", filename)
        path = Path(filename).resolve()
        try:
            commands = _read_commands(path)
        except OSError as exc:
            raise NotFound(f"Could not open batch file: {filename}") from exc
        except csv.Error as exc:
            raise InvalidInput(f"Problem while reading CSV command file: {exc}") from exc

        oldwd = os.getcwd()
        ctx.outln("Changing work-directory to %s", path.parent)
        os.chdir(path.parent)
        try:
            for line in commands:
                ctx.outln("Command: %r", line)
                if not line:
                    continue
                if ctx.abort.is_set():
                    ctx.outln("Batch aborted")
                    break
                ctx.cmd(line)
        finally:
            os.chdir(oldwd)
            ctx.outln("Batch processing done")
