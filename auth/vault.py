"""
auth/vault.py -- Password hashing, verification and policy checks.

Security design decisions:
  Hashing: passlib sha512_crypt ("$6$" shadow format) with a random salt per
       call. The algorithm tag is part of the stored string, so verify()
       picks the scheme at parse time. Legacy bcrypt hashes ("$2a$", "$2b$")
       still verify through the bcrypt library directly.

  Verification: verify() raises exactly one error, PasswordMismatch, for
       every failure (wrong password, malformed hash, unknown scheme). Lower
       level detail never reaches the caller [V1].

  Timing: each vault computes its dummy hash once, with the configured
       rounds, so a login for an unknown user costs the same as a login with
       a wrong password [V2]. `rounds` = 0 keeps the passlib default.

  Policy: check_rules() returns every violation it finds rather than the
       first, so the user can fix them in one go. Weak dictionary lookups
       are case-insensitive.

Layer rule: auth/ may import core/, never api/.
"""

from __future__ import annotations

import base64
import secrets
import unicodedata
from dataclasses import dataclass

import bcrypt
from passlib.hash import sha512_crypt

from auth.pwdict import WeakDictionary
from core.errors import PasswordMismatch

_ALPHANUM = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"


@dataclass(frozen=True)
class PasswordRules:
    min_length: int = 0
    max_length: int = 0
    min_letters: int = 0
    min_uppers: int = 0
    min_lowers: int = 0
    min_numbers: int = 0
    min_specials: int = 0


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------


def gen_rand(length: int) -> bytes:
    return secrets.token_bytes(length)


def gen_rand_hex(length: int) -> str:
    """`length` random alphanumerics, hex encoded (2 * length characters)."""
    return "".join(_ALPHANUM[b % len(_ALPHANUM)] for b in gen_rand(length)).encode("ascii").hex()


def gen_pass(length: int) -> str:
    """URL-safe random password of exactly `length` characters."""
    return base64.urlsafe_b64encode(gen_rand(length)).decode("ascii")[:length]


# ---------------------------------------------------------------------------
# Character classes
# ---------------------------------------------------------------------------


def _classify(ch: str) -> str:
    cat = unicodedata.category(ch)
    if cat.startswith("N"):
        return "number"
    if cat == "Lu":
        return "upper"
    if cat == "Ll":
        return "lower"
    if cat.startswith("P") or cat.startswith("S"):
        return "special"
    if cat.startswith("L"):
        return "letter"
    return "invalid"


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


class PasswordVault:
    """Hash, verify and policy-check passwords.

    Usage:
        vault = PasswordVault(WeakDictionary.load(settings.pw_dictionaries))
        stored = vault.hash("correct horse")
        vault.verify("correct horse", stored)   # raises PasswordMismatch on failure
    """

    def __init__(self, dictionary: WeakDictionary | None = None, rounds: int = 0) -> None:
        self.dictionary = dictionary if dictionary is not None else WeakDictionary()
        self._hasher = sha512_crypt.using(rounds=rounds) if rounds else sha512_crypt
        self._dummy = self._hasher.hash("warden_timing_dummy")  # [V2]

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored: str | None) -> None:
        """Return None on success; raise PasswordMismatch otherwise [V1]."""
        if not stored or not password:
            raise PasswordMismatch()
        try:
            if stored.startswith("$6$"):
                ok = sha512_crypt.verify(password, stored)
            elif stored.startswith("$2"):
                ok = bcrypt.checkpw(password.encode("utf-8"), stored.encode("utf-8"))
            else:
                ok = False
        except (ValueError, TypeError):
            ok = False
        if not ok:
            raise PasswordMismatch()

    def verify_dummy(self, password: str) -> None:
        """Burn the same time as a real verification [V2]."""
        try:
            self.verify(password or "x", self._dummy)
        except PasswordMismatch:
            pass

    def is_weak(self, password: str) -> bool:
        return self.dictionary.is_weak(password)

    def check_rules(self, password: str, rules: PasswordRules) -> list[str]:
        """Return every rule violation; an empty list means acceptable."""
        problems: list[str] = []

        if password == "":
            problems.append("No password was provided")
        elif rules.min_length and len(password) < rules.min_length:
            problems.append("Password is too short")
        elif rules.max_length and len(password) > rules.max_length:
            return [f"Password is too long: (>{rules.max_length})"]

        if self.is_weak(password):
            problems.append("Password is a weak common password")

        counts = {"number": 0, "upper": 0, "lower": 0, "special": 0, "letter": 0}
        for pos, ch in enumerate(password, start=1):
            kind = _classify(ch)
            if kind == "invalid":
                problems.append(f"Invalid character encountered at position {pos}")
                continue
            counts[kind] += 1
        letters = counts["upper"] + counts["lower"] + counts["letter"]

        if rules.min_letters and letters < rules.min_letters:
            problems.append(f"Not enough letters ({rules.min_letters}+)")
        if rules.min_uppers and counts["upper"] < rules.min_uppers:
            problems.append(f"Not enough upper case letters ({rules.min_uppers}+)")
        if rules.min_lowers and counts["lower"] < rules.min_lowers:
            problems.append(f"Not enough lower case letters ({rules.min_lowers}+)")
        if rules.min_specials and counts["special"] < rules.min_specials:
            problems.append(f"Not enough special character ({rules.min_specials}+)")
        if rules.min_numbers and counts["number"] < rules.min_numbers:
            problems.append(f"Not enough numbers ({rules.min_numbers}+)")
        return problems

