"""
auth/revocation.py -- Revoked-token set: persistent table plus a bounded in-process LRU.

Revoked (but not yet expired) tokens live in the jwt_invalidated table, which
every process shares. Each process keeps an LRU of up to MAX_CACHED recent
answers, both "revoked" and "still valid", so most requests never reach the
database.

Concurrency:
  One threading.Lock guards the map. A cache miss queries the database while
  holding the lock; the bound on the cache keeps that short and no other lock
  is ever taken inside it.

  A single daemon worker runs sweep() every `interval` seconds until stop()
  sets the shutdown event; stop() joins the worker.

Security:
  [R1] A database error during lookup fails closed: the token is treated as
       revoked and the answer is not cached.

  [R2] Writes here are not audited. A logout already writes its own audit
       row; auditing the revocation would double the traffic.

Layer rule: auth/ may import core/, never api/.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timezone

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.db import Database, jwt_invalidated, now_iso, to_iso

logger = logging.getLogger("warden.revocation")

MAX_CACHED = 512


class RevocationCache:
    """LRU mirror of jwt_invalidated.

    Usage:
        cache = RevocationCache(db, interval=300)
        cache.start()
        cache.revoke(token, expires_at)
        cache.is_revoked(token, expires_at)   # True
        cache.stop()
    """

    def __init__(self, db: Database, interval: float = 300.0, max_cached: int = MAX_CACHED) -> None:
        self.db = db
        self.interval = interval
        self.max_cached = max_cached
        # token -> (is_valid, expires_at); most recently used last
        self._cache: OrderedDict[str, tuple[bool, datetime]] = OrderedDict()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def is_cached(self, token: str) -> bool:
        with self._lock:
            return token in self._cache

    # ------------------------------------------------------------------
    # Cache internals (lock held)
    # ------------------------------------------------------------------

    def _add(self, token: str, is_valid: bool, expires_at: datetime) -> None:
        self._cache[token] = (is_valid, expires_at)
        self._cache.move_to_end(token)
        while len(self._cache) > self.max_cached:
            self._cache.popitem(last=False)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def is_revoked(self, token: str, expires_at: datetime) -> bool:
        with self._lock:
            hit = self._cache.get(token)
            if hit is not None:
                self._cache.move_to_end(token)
                return not hit[0]

            try:
                with self.db.engine.connect() as conn:
                    count = conn.execute(
                        select(func.count()).select_from(jwt_invalidated).where(jwt_invalidated.c.token == token)
                    ).scalar_one()
            except SQLAlchemyError as exc:
                logger.error("Revocation lookup failed, treating token as revoked: %s", exc)
                return True  # [R1]

            revoked = count > 0
            self._add(token, not revoked, expires_at)
            return revoked

    def revoke(self, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._cache.pop(token, None)
            try:
                with self.db.engine.begin() as conn:
                    conn.execute(insert(jwt_invalidated).values(token=token, expires=to_iso(expires_at)))
            except IntegrityError:
                pass  # already revoked by this or another process
            self._add(token, False, expires_at)
        logger.info("Token revoked (expires %s)", to_iso(expires_at))

    def sweep(self) -> int:
        """Drop expired rows and expired cache entries; returns rows deleted."""
        with self._lock:
            deleted = 0
            try:
                with self.db.engine.begin() as conn:
                    deleted = conn.execute(delete(jwt_invalidated).where(jwt_invalidated.c.expires < now_iso())).rowcount
            except SQLAlchemyError as exc:
                logger.error("Revocation sweep failed: %s", exc)

            now = datetime.now(timezone.utc)
            for token in [t for t, (_, exp) in self._cache.items() if exp < now]:
                del self._cache[token]
        if deleted:
            logger.debug("Revocation sweep removed %d expired tokens", deleted)
        return deleted

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.sweep()

    def start(self) -> None:
        if self._worker is not None:
            return
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, name="warden-revocation", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        if self._worker is None:
            return
        self._stop.set()
        self._worker.join()
        self._worker = None
