"""
auth/otp.py -- One-time password primitives (RFC 4226 HOTP, RFC 6238 TOTP, single-use codes).

Pure functions; persistence and policy live in auth/twofactor.py.

  calc_otp     HMAC-SHA1 over the 8-byte big-endian counter, dynamic
               truncation at the low nibble of byte 19, 31-bit mask, mod 10**6.
  verify_hotp  accepts counters in [stored - 1, stored + 3) and returns the
               matching counter so the caller can advance past it.
  verify_totp  accepts time steps t0 - 2 .. t0 + 2 (30 second steps).
  sotp_hash    single-use codes are stored only as their SHA-256 hex digest.

Codes are compared as integers, so a leading zero typed or omitted does not
matter. Non-numeric input never matches.
"""

from __future__ import annotations

import hashlib
import hmac
import struct
import time

DIGITS = 6
STEP = 30
TOTP_WINDOW = 2


def calc_otp(key: str | bytes, counter: int) -> int:
    if isinstance(key, str):
        key = key.encode("utf-8")
    digest = hmac.new(key, struct.pack(">q", counter), hashlib.sha1).digest()
    offset = digest[19] & 0x0F
    truncated = struct.unpack(">I", digest[offset : offset + 4])[0] & 0x7FFFFFFF
    return truncated % (10**DIGITS)


def _code(value: str) -> int | None:
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def verify_hotp(key: str | bytes, counter: int, code: str) -> int | None:
    """Return the matching counter value, or None."""
    wanted = _code(code)
    if wanted is None:
        return None
    for candidate in range(max(counter - 1, 0), counter + 3):
        if hmac.compare_digest(str(calc_otp(key, candidate)), str(wanted)):
            return candidate
    return None


def verify_totp(key: str | bytes, code: str, now: float | None = None) -> bool:
    wanted = _code(code)
    if wanted is None:
        return False
    t0 = int((time.time() if now is None else now) // STEP)
    return any(calc_otp(key, t) == wanted for t in range(t0 - TOTP_WINDOW, t0 + TOTP_WINDOW + 1))


def sotp_hash(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def verify_sotp(stored: str, code: str) -> bool:
    return hmac.compare_digest(stored, sotp_hash(code.strip()))
