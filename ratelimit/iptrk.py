"""
ratelimit/iptrk.py -- Per-source-address failure counter with periodic decay ("IPtrk").

Every failed (or attempted) login calls count(address). The counter lives in
the iptrk table so that all processes sharing the database share the count.
count() answers True ("limited") once the stored count exceeds `max_count`.
Rows whose last hit is older than `expire` are deleted by a periodic sweep,
which lifts the limit again.

Concurrency:
  A single worker thread owns every write. Callers put a _Command on a
  bounded queue.Queue and block on a private one-slot reply queue. The worker
  also runs the expiry sweep every `interval` seconds. When the worker is not
  running (tests, offline tools) the same operations run directly in the
  calling thread. `running` is read and the command enqueued under one lock
  that stop() also takes, so no caller is left waiting behind _STOP.

  count() is insert-with-RETURNING; on a primary key conflict it falls back
  to an increment-with-RETURNING. The RETURNING value is authoritative; no
  second read follows.

Security:
  [L1] A database failure while counting fails closed: the address is
       reported as limited and the error is logged.

  [L2] Writes here are not audited; a login failure writes its own audit
       row and auditing every hit would double the traffic.

Layer rule: ratelimit/ may import core/, never auth/ or api/.
"""

from __future__ import annotations

import ipaddress
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.db import Database, iptrk, now_iso, parse_iso, to_iso
from core.errors import InvalidInput
from core.menu import Menu, MenuEntry
from core.perms import Perm

if TYPE_CHECKING:
    from core.context import RequestContext

logger = logging.getLogger("warden.iptrk")

QUEUE_SIZE = 1000

# Bucket for requests without a peer address; never the empty "every address" key.
UNKNOWN_ADDRESS = "unknown"

_STOP = object()


def normalize(address: str) -> str:
    """Canonical text form of an IP address; other strings pass through unchanged."""
    address = address.strip()
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        return address


@dataclass
class IPtrkEntry:
    ip: str
    count: int
    entered: datetime | None
    last: datetime | None
    blocked: bool


@dataclass
class _Command:
    op: str
    key: str = ""
    reply: queue.Queue = field(default_factory=lambda: queue.Queue(maxsize=1))


class IPTracker:
    """Usage:
        tracker = IPTracker(db, max_count=5, expire=timedelta(hours=1), interval=60)
        tracker.start()
        if tracker.count("192.0.2.4"):
            raise RateLimited()
        tracker.stop()
    """

    def __init__(self, db: Database, max_count: int = 5, expire: timedelta = timedelta(hours=1), interval: float = 60.0) -> None:
        self.db = db
        self.max_count = max_count
        self.expire_after = expire
        self.interval = interval
        self._queue: queue.Queue = queue.Queue(maxsize=QUEUE_SIZE)
        self._worker: threading.Thread | None = None
        # Guards `running` together with enqueueing, so nothing lands behind _STOP.
        self._lock = threading.Lock()
        self.running = False

    # ------------------------------------------------------------------
    # Direct operations (worker thread, or caller when not running)
    # ------------------------------------------------------------------

    def _add(self, key: str) -> bool:
        now = now_iso()
        try:
            try:
                with self.db.engine.begin() as conn:
                    count = conn.execute(
                        insert(iptrk).values(ip=key, count=1, entered=now, last=now).returning(iptrk.c.count)
                    ).scalar_one()
            except IntegrityError:
                with self.db.engine.begin() as conn:
                    count = conn.execute(
                        update(iptrk)
                        .where(iptrk.c.ip == key)
                        .values(count=iptrk.c.count + 1, last=now)
                        .returning(iptrk.c.count)
                    ).scalar_one()
        except SQLAlchemyError as exc:
            logger.error("IPtrk count for %s failed, treating as limited: %s", key, exc)
            return True  # [L1]
        return count > self.max_count

    def _flush(self, key: str) -> bool:
        with self.db.engine.begin() as conn:
            if not key:
                conn.execute(delete(iptrk))
                return True
            return conn.execute(delete(iptrk).where(iptrk.c.ip == key)).rowcount > 0

    def _expire(self) -> int:
        cutoff = to_iso(datetime.now(timezone.utc) - self.expire_after)
        try:
            with self.db.engine.begin() as conn:
                deleted = conn.execute(delete(iptrk).where(iptrk.c.last < cutoff)).rowcount
        except SQLAlchemyError as exc:
            logger.error("IPtrk expiry failed: %s", exc)
            return 0
        if deleted:
            logger.debug("IPtrk expired %d entries", deleted)
        return deleted

    def _execute(self, op: str, key: str) -> Any:
        if op == "add":
            return self._add(key)
        if op == "flush":
            return self._flush(key)
        if op == "wipe":
            return self._expire()
        raise ValueError(f"Unhandled IPtrk command: {op}")

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        next_expire = time.monotonic() + self.interval
        while True:
            try:
                cmd = self._queue.get(timeout=max(next_expire - time.monotonic(), 0))
            except queue.Empty:
                self._expire()
                next_expire = time.monotonic() + self.interval
                continue
            if cmd is _STOP:
                break
            try:
                result: Any = self._execute(cmd.op, cmd.key)
            except Exception as exc:  # handed back to the waiting caller
                result = exc
            cmd.reply.put(result)

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._worker = threading.Thread(target=self._run, name="warden-iptrk", daemon=True)
            self.running = True
            self._worker.start()

    def stop(self) -> None:
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._queue.put(_STOP)
        self._worker.join()
        self._worker = None

    def _cmd(self, op: str, key: str = "") -> Any:
        cmd = _Command(op, key)
        with self._lock:
            queued = self.running
            if queued:
                self._queue.put(cmd)
        if not queued:
            return self._execute(op, key)
        result = cmd.reply.get()
        if isinstance(result, Exception):
            raise result
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def count(self, address: str) -> bool:
        """Record one hit; True when the address is now over the limit."""
        return self._cmd("add", normalize(address))

    def reset(self, address: str = "") -> bool:
        """Forget one address, or every address when empty.

        Returns False when a single address had no entry.
        """
        return self._cmd("flush", normalize(address) if address else "")

    def expire(self) -> int:
        return self._cmd("wipe")

    def entries(self) -> list[IPtrkEntry]:
        with self.db.engine.connect() as conn:
            rows = conn.execute(select(iptrk).order_by(iptrk.c.ip)).all()
        return [
            IPtrkEntry(r.ip, r.count, parse_iso(r.entered), parse_iso(r.last), r.count > self.max_count) for r in rows
        ]

    def menu(self) -> Menu:
        return Menu(
            [
                MenuEntry("list", iptrk_list, 0, 0, [], Perm.SYS_ADMIN, "List the contents of the IPtrk tables"),
                MenuEntry("flush", iptrk_flush, 0, 0, [], Perm.SYS_ADMIN, "Flush all entries from the IPtrk table"),
                MenuEntry("remove", iptrk_remove, 1, 1, ["ip"], Perm.SYS_ADMIN, "Remove an entry from IPtrk"),
            ]
        )


# ---------------------------------------------------------------------------
# Menu handlers
# ---------------------------------------------------------------------------


def iptrk_list(ctx: RequestContext, args: list[str]) -> None:
    entries = ctx.services.iptrk.entries()
    if not entries:
        ctx.outln("There are currently no entries")
        return
    fmt = ctx.services.settings.time_format
    ctx.outln("%16s %16s %7s %10s %s", "Entered", "Last", "Status", "Count", "IP")
    for e in entries:
        ctx.outln(
            "%16s %16s %7s %10d %s",
            e.entered.strftime(fmt) if e.entered else "",
            e.last.strftime(fmt) if e.last else "",
            "blocked" if e.blocked else "okay",
            e.count,
            e.ip,
        )


def iptrk_flush(ctx: RequestContext, args: list[str]) -> None:
    ctx.services.iptrk.reset("")
    ctx.outln("IPtrk flushed")


def iptrk_remove(ctx: RequestContext, args: list[str]) -> None:
    if not args[0]:
        raise InvalidInput("Missing argument, IP address required")
    if ctx.services.iptrk.reset(args[0]):
        ctx.outln("IP removed from IPtrk table")
    else:
        ctx.outln("No such IP in IPtrk table")
