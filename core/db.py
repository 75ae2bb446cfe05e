"""
core/db.py -- SQLAlchemy Core schema, engine and transaction helpers.

Pattern: one Database object owns the engine and every table. Repositories
(auth/users.py, auth/twofactor.py, auth/groups.py, ratelimit/iptrk.py,
auth/revocation.py) receive it by injection; none of them opens an engine.

Transactions:
  transaction(ctx) reuses the caller-owned transaction attached to the
  request context (ctx.tx) when there is one. Otherwise it opens a local
  transaction that commits on success and rolls back on any exception.

  exec_audit() runs a mutation and writes its audit_history row inside the
  same transaction, so a failed audit rolls back the mutation [D1]. A
  transient OperationalError on a local transaction is retried once; inside
  a caller-owned transaction it is surfaced immediately because the caller
  owns the rollback.

Security:
  All queries use bound parameters. No f-strings in SQL.

  [D2] Audit text never contains secret values: callers pass masked values
       for password-like fields (see core/accessor.py).

Timestamps are ISO 8601 UTC strings with microsecond precision. Every writer
uses to_iso() so lexical comparison in SQL matches chronological order.

Layer rule: core/ is the kernel. No imports from auth/, ratelimit/ or api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql import Executable

from core.errors import Transient

logger = logging.getLogger("warden.db")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

member = Table(
    "member",
    metadata,
    Column("ident", String(64), primary_key=True),
    Column("uuid", String(36), nullable=False),
    Column("descr", String(255), nullable=False, server_default=""),
    Column("name_first", String(255)),
    Column("name_last", String(255)),
    Column("affiliation", String(255)),
    Column("password", Text),
    Column("sysadmin", Boolean, nullable=False, server_default="0"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("recover_email", String(255)),
    Column("recover_password", Text),  # SHA-256 hex of the recovery token
    Column("recover_password_set_at", String(40)),
    Column("entered", String(40), nullable=False),
    Column("activity", String(40)),
)

member_email = Table(
    "member_email",
    metadata,
    Column("email", String(255), primary_key=True),
    Column("member", String(64), nullable=False),
    Column("verified", Boolean, nullable=False, server_default="0"),
    Column("entered", String(40), nullable=False),
)

second_factors = Table(
    "second_factors",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("member", String(64), nullable=False),
    Column("type", String(8), nullable=False),
    Column("descr", String(255), nullable=False),
    Column("entered", String(40), nullable=False),
    Column("active", Boolean, nullable=False, server_default="0"),
    Column("key", Text, nullable=False),
    Column("counter", Integer, nullable=False, server_default="0"),
)

second_factor_types = Table(
    "second_factor_types",
    metadata,
    Column("type", String(8), primary_key=True),
    Column("descr", String(255), nullable=False),
)

iptrk = Table(
    "iptrk",
    metadata,
    Column("ip", String(45), primary_key=True),
    Column("count", Integer, nullable=False, server_default="1"),
    Column("entered", String(40), nullable=False),
    Column("last", String(40), nullable=False),
)

jwt_invalidated = Table(
    "jwt_invalidated",
    metadata,
    Column("token", Text, primary_key=True),
    Column("expires", String(40), nullable=False),
)

audit_history = Table(
    "audit_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("member", String(64)),
    Column("what", Text, nullable=False),
    Column("username", String(64)),
    Column("trustgroup", String(64)),
    Column("remote", String(45)),
    Column("entered", String(40), nullable=False),
)

config = Table(
    "config",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False, server_default=""),
)

trustgroup = Table(
    "trustgroup",
    metadata,
    Column("ident", String(64), primary_key=True),
    Column("descr", String(255), nullable=False, server_default=""),
    Column("shortname", String(64), nullable=False, server_default=""),
    Column("pgp_required", Boolean, nullable=False, server_default="0"),
    Column("has_wiki", Boolean, nullable=False, server_default="0"),
    Column("has_file", Boolean, nullable=False, server_default="0"),
    Column("has_calendar", Boolean, nullable=False, server_default="0"),
    Column("entered", String(40), nullable=False),
)

member_trustgroup = Table(
    "member_trustgroup",
    metadata,
    Column("member", String(64), primary_key=True),
    Column("trustgroup", String(64), primary_key=True),
    Column("email", String(255)),
    Column("state", String(32), nullable=False),
    Column("admin", Boolean, nullable=False, server_default="0"),
    Column("entered", String(40), nullable=False),
)

member_state = Table(
    "member_state",
    metadata,
    Column("ident", String(32), primary_key=True),
    Column("can_login", Boolean, nullable=False),
    Column("can_see", Boolean, nullable=False),
    Column("can_send", Boolean, nullable=False),
    Column("can_recv", Boolean, nullable=False),
    Column("blocked", Boolean, nullable=False),
    Column("hidden", Boolean, nullable=False),
)

# (ident, can_login, can_see, can_send, can_recv, blocked, hidden)
_MEMBER_STATES = [
    ("nominated", False, False, False, False, False, False),
    ("approved", True, True, True, True, False, False),
    ("blocked", False, False, False, False, True, True),
]

_SECOND_FACTOR_TYPES = [
    ("HOTP", "RFC4226 - Counter-based One Time Password"),
    ("TOTP", "RFC6238 - Time-based One Time Password"),
    ("SOTP", "Single-use One Time Password"),
]

# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def substitute(what: str, args: Sequence[Any]) -> str:
    """Replace $1..$n in an audit text with the given arguments."""
    # Highest index first so $1 does not eat the prefix of $10.
    for index in range(len(args), 0, -1):
        what = what.replace(f"${index}", str(args[index - 1]))
    return what


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Engine, schema and transaction helpers.

    Usage:
        db = Database("sqlite:///warden.db")
        with db.transaction(ctx) as conn:
            conn.execute(...)
        db.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)
        self._seed()

    def _seed(self) -> None:
        """Insert the fixed lookup rows when they are not present yet."""
        with self.engine.begin() as conn:
            states = set(conn.execute(select(member_state.c.ident)).scalars())
            for row in _MEMBER_STATES:
                if row[0] not in states:
                    conn.execute(
                        insert(member_state).values(
                            dict(zip(("ident", "can_login", "can_see", "can_send", "can_recv", "blocked", "hidden"), row))
                        )
                    )
            types = set(conn.execute(select(second_factor_types.c.type)).scalars())
            for kind, descr in _SECOND_FACTOR_TYPES:
                if kind not in types:
                    conn.execute(insert(second_factor_types).values(type=kind, descr=descr))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self, ctx=None) -> Iterator[Connection]:
        """Yield a connection inside a transaction.

        Reuses ctx.tx when the caller attached one; the caller then owns
        commit and rollback. Otherwise commits on success, rolls back on error.
        """
        if ctx is not None and getattr(ctx, "tx", None) is not None:
            yield ctx.tx
            return
        with self.engine.begin() as conn:
            yield conn

    def exec_audit(self, ctx, what: str, stmt: Executable, args: Sequence[Any] = (), matched_only: bool = False) -> int:
        """Execute a mutation plus its audit row atomically [D1].

        Returns the number of rows the mutation affected. `what` may carry
        $1..$n placeholders, filled from `args`. With `matched_only` no audit
        row is written when the statement touched nothing.
        """
        attempts = 1 if getattr(ctx, "tx", None) is not None else 2
        for attempt in range(1, attempts + 1):
            try:
                with self.transaction(ctx) as conn:
                    rowcount = conn.execute(stmt).rowcount
                    if rowcount or not matched_only:
                        self._audit(conn, ctx, substitute(what, args))
                return rowcount
            except OperationalError as exc:
                if attempt < attempts:
                    logger.warning("Transient database error, retrying once: %s", exc)
                    continue
                logger.error("Database error during '%s': %s", what, exc)
                raise Transient() from exc
        return 0

    def increase(self, ctx, what: str, table: str, key_column: str, key: Any, column: str) -> int:
        """Audited `column = column + 1` for one row."""
        tbl = metadata.tables[table]
        stmt = update(tbl).where(tbl.c[key_column] == key).values({column: tbl.c[column] + 1})
        return self.exec_audit(ctx, what, stmt, [key])

    def audit(self, ctx, what: str, args: Sequence[Any] = ()) -> None:
        """Write an audit row without a paired mutation (e.g. login events)."""
        with self.transaction(ctx) as conn:
            self._audit(conn, ctx, substitute(what, args))

    @staticmethod
    def _audit(conn: Connection, ctx, what: str) -> None:
        user = getattr(ctx, "user", None)
        sel_user = getattr(ctx, "sel_user", None)
        sel_group = getattr(ctx, "sel_group", None)
        remote = getattr(ctx, "client_ip", None)
        conn.execute(
            insert(audit_history).values(
                member=user.username if user is not None else None,
                what=what,
                username=sel_user.username if sel_user is not None else None,
                trustgroup=sel_group.name if sel_group is not None else None,
                remote=str(remote) if remote is not None else None,
                entered=now_iso(),
            )
        )

    # ------------------------------------------------------------------
    # Audit log queries
    # ------------------------------------------------------------------

    def _audit_filter(self, stmt, search: str, username: str, group: str):
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(
                    audit_history.c.member.ilike(pattern),
                    audit_history.c.what.ilike(pattern),
                    audit_history.c.username.ilike(pattern),
                    audit_history.c.trustgroup.ilike(pattern),
                )
            )
        if username:
            stmt = stmt.where(audit_history.c.username == username)
        if group:
            stmt = stmt.where(audit_history.c.trustgroup == group)
        return stmt

    def audit_list(self, search: str = "", username: str = "", group: str = "", offset: int = 0, limit: int = 0):
        """Return audit rows newest first as mappings."""
        stmt = self._audit_filter(select(audit_history), search, username, group)
        stmt = stmt.order_by(audit_history.c.entered.desc(), audit_history.c.id.desc())
        if offset:
            stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        with self.engine.connect() as conn:
            return [dict(r._mapping) for r in conn.execute(stmt)]

    def audit_max(self, search: str = "", username: str = "", group: str = "") -> int:
        stmt = self._audit_filter(select(func.count()).select_from(audit_history), search, username, group)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar_one()
