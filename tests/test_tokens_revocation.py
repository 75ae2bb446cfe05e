"""Unit tests for auth/tokens.py and auth/revocation.py -- ES512 tokens and the revoked set.

Covers:
- Session tokens round-trip with userdesc / issysadmin extras
- Refresh window reporting (expsoon)
- Rejections: expired, wrong purpose, foreign key, swapped signature, non-EC header
- Non-P-521 key material is fatal at construction
- Revocation persists in jwt_invalidated and survives a fresh cache
- LRU bound, sweep of expired rows, fail-closed lookups
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from jose import jwt
from sqlalchemy import func, insert, select
from sqlalchemy.exc import OperationalError

from auth.models import User
from auth.revocation import RevocationCache
from auth.tokens import PURPOSE_GRANT, PURPOSE_SESSION, TokenService
from core.config import _generate_es512_pair
from core.db import jwt_invalidated, to_iso
from core.errors import Internal, Unauthorized


def _p256_pair() -> tuple[str, str]:
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")
    return private_pem, public_pem


def _revoked_rows(services) -> int:
    with services.db.engine.connect() as conn:
        return conn.execute(select(func.count()).select_from(jwt_invalidated)).scalar_one()


@pytest.fixture
def alice() -> User:
    return User(username="alice", full_name="Alice Liddell", can_be_sysadmin=True, is_sysadmin=True)


# ---------------------------------------------------------------------------
# Issue / parse
# ---------------------------------------------------------------------------


class TestTokens:
    def test_session_round_trip(self, services, alice) -> None:
        token = services.tokens.issue_session(alice)
        claims, expsoon = services.tokens.parse_session(token)

        assert claims.subject == "alice"
        assert claims.audience == PURPOSE_SESSION
        assert claims.issuer == "Warden"
        assert claims.extras == {"userdesc": "Alice Liddell", "issysadmin": True}
        assert claims.expires_at - claims.issued_at == timedelta(minutes=20)
        assert expsoon is False

    def test_header_names_es512(self, services, alice) -> None:
        token = services.tokens.issue_session(alice)
        assert jwt.get_unverified_header(token)["alg"] == "ES512"

    def test_short_lived_token_expires_soon(self, services) -> None:
        token = services.tokens.issue(PURPOSE_SESSION, "alice", ttl=timedelta(minutes=5))
        _, expsoon = services.tokens.parse_session(token)
        assert expsoon is True

    def test_reserved_claims_cannot_be_overridden(self, services) -> None:
        token = services.tokens.issue(PURPOSE_SESSION, "alice", extras={"sub": "root", "note": "x"})
        claims, _ = services.tokens.parse_session(token)
        assert claims.subject == "alice"
        assert claims.extras == {"note": "x"}

    def test_expired_token(self, services) -> None:
        token = services.tokens.issue(PURPOSE_SESSION, "alice", ttl=timedelta(seconds=-10))
        with pytest.raises(Unauthorized, match="Token expired"):
            services.tokens.parse_session(token)

    def test_wrong_purpose(self, services) -> None:
        grant = services.tokens.issue_grant("alice", "client-1", "openid", "code", "https://app.example.org/cb")
        with pytest.raises(Unauthorized, match="not a session token"):
            services.tokens.parse_session(grant)
        claims, _ = services.tokens.parse(grant, PURPOSE_GRANT)
        assert claims.extras["client_id"] == "client-1"

    def test_foreign_signing_key(self, services) -> None:
        other = TokenService(*_generate_es512_pair(), "Warden")
        token = other.issue(PURPOSE_SESSION, "alice")
        with pytest.raises(Unauthorized, match="Token is invalid"):
            services.tokens.parse_session(token)

    def test_swapped_signature(self, services) -> None:
        first = services.tokens.issue(PURPOSE_SESSION, "alice")
        second = services.tokens.issue(PURPOSE_SESSION, "mallory")
        forged = second.rsplit(".", 1)[0] + "." + first.rsplit(".", 1)[1]
        with pytest.raises(Unauthorized):
            services.tokens.parse_session(forged)

    def test_other_issuer(self, services) -> None:
        private_pem, public_pem = services.settings.jwt_private_pem, services.settings.jwt_public_pem
        other = TokenService(private_pem, public_pem, "Elsewhere")
        with pytest.raises(Unauthorized):
            services.tokens.parse_session(other.issue(PURPOSE_SESSION, "alice"))

    def test_hmac_token_rejected_before_verification(self, services) -> None:
        token = jwt.encode({"sub": "alice", "aud": PURPOSE_SESSION}, "secret", algorithm="HS256")
        with pytest.raises(Unauthorized, match="Unexpected signing method: HS256"):
            services.tokens.parse_session(token)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b.c"])
    def test_garbage(self, services, garbage: str) -> None:
        with pytest.raises(Unauthorized):
            services.tokens.parse_session(garbage)

    def test_non_p521_key_is_fatal(self) -> None:
        with pytest.raises(Internal, match="secp521r1"):
            TokenService(*_p256_pair(), "Warden")

    def test_unparsable_key_is_fatal(self) -> None:
        with pytest.raises(Internal):
            TokenService("not a key", "not a key either", "Warden")


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevocation:
    def test_revoked_token_is_rejected(self, services, alice) -> None:
        token = services.tokens.issue_session(alice)
        services.tokens.parse_session(token)
        services.tokens.revoke(token)

        with pytest.raises(Unauthorized):
            services.tokens.parse_session(token)
        assert _revoked_rows(services) == 1

    def test_revocation_is_shared_through_the_database(self, services, alice) -> None:
        token = services.tokens.issue_session(alice)
        services.tokens.revoke(token)

        fresh = RevocationCache(services.db)
        expires = datetime.now(timezone.utc) + timedelta(minutes=20)
        assert fresh.is_revoked(token, expires) is True
        assert fresh.is_cached(token)

    def test_revoking_twice_is_harmless(self, services, alice) -> None:
        token = services.tokens.issue_session(alice)
        services.tokens.revoke(token)
        services.tokens.revoke(token)
        assert _revoked_rows(services) == 1

    def test_expired_token_can_still_be_revoked(self, services) -> None:
        token = services.tokens.issue(PURPOSE_SESSION, "alice", ttl=timedelta(seconds=-10))
        services.tokens.revoke(token)
        assert _revoked_rows(services) == 1

    def test_forged_token_cannot_be_revoked(self, services) -> None:
        other = TokenService(*_generate_es512_pair(), "Warden")
        with pytest.raises(Unauthorized):
            services.tokens.revoke(other.issue(PURPOSE_SESSION, "alice"))
        assert _revoked_rows(services) == 0

    def test_valid_answers_are_cached(self, services) -> None:
        cache = RevocationCache(services.db)
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert cache.is_revoked("tok-1", expires) is False
        assert cache.is_cached("tok-1")
        assert len(cache) == 1

    def test_lru_bound(self, services) -> None:
        cache = RevocationCache(services.db, max_cached=3)
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        for n in range(5):
            cache.is_revoked(f"tok-{n}", expires)

        assert len(cache) == 3
        assert not cache.is_cached("tok-0")
        assert not cache.is_cached("tok-1")
        assert cache.is_cached("tok-4")

    def test_lru_keeps_recently_used(self, services) -> None:
        cache = RevocationCache(services.db, max_cached=2)
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        cache.is_revoked("a", expires)
        cache.is_revoked("b", expires)
        cache.is_revoked("a", expires)  # refresh "a"
        cache.is_revoked("c", expires)
        assert cache.is_cached("a")
        assert not cache.is_cached("b")

    def test_sweep_drops_expired_rows_and_entries(self, services) -> None:
        cache = RevocationCache(services.db)
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        with services.db.engine.begin() as conn:
            conn.execute(insert(jwt_invalidated).values(token="old", expires=to_iso(past)))
        cache.revoke("current", future)
        cache.is_revoked("stale", past)

        assert cache.sweep() == 1
        assert _revoked_rows(services) == 1
        assert not cache.is_cached("stale")
        assert cache.is_cached("current")

    def test_lookup_failure_fails_closed(self, services, monkeypatch) -> None:
        cache = RevocationCache(services.db)

        def broken(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(services.db.engine, "connect", broken)
        expires = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert cache.is_revoked("tok", expires) is True
        assert not cache.is_cached("tok")

    def test_worker_start_stop(self, services) -> None:
        cache = RevocationCache(services.db, interval=0.01)
        cache.start()
        cache.start()
        cache.stop()
        cache.stop()

    def test_evicted_token_stays_revoked(self, services, alice) -> None:
        cache = RevocationCache(services.db)
        first = services.tokens.issue_session(alice)
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        assert cache.is_revoked(first, expires) is False
        assert cache.is_cached(first)

        cache.revoke(first, expires)
        for n in range(512):
            cache.revoke(f"filler-{n}", expires)

        assert len(cache) == 512
        assert not cache.is_cached(first)
        assert cache.is_revoked(first, expires) is True
        assert cache.is_cached(first)
