"""
auth/pwdict.py -- Weak password dictionary.

The dictionary is a lower-cased set loaded once at startup from one or more
plain text files, one password per line. Lines starting with '#' are
comments. A configured file that cannot be read is fatal: running without
the intended dictionary would silently accept weak passwords. No configured
file at all is only a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from core.errors import Internal

logger = logging.getLogger("warden.auth")


class WeakDictionary:
    """Set of known-weak passwords; `password in dictionary` is case-insensitive."""

    def __init__(self, words: Iterable[str] = ()) -> None:
        self._words = {w.lower() for w in words}
        self.files = 0

    @classmethod
    def load(cls, paths: Iterable[str]) -> "WeakDictionary":
        paths = list(paths)
        dictionary = cls()
        if not paths:
            logger.warning("No weak password dictionaries configured - skipping")
            return dictionary

        for name in paths:
            path = Path(name)
            if not path.is_file():
                raise Internal(f"Could not find password dictionary file :{name}")
            count = 0
            with path.open(encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    word = line.rstrip("\r\n")
                    if not word or (len(word) > 1 and word.startswith("#")):
                        continue
                    dictionary._words.add(word.lower())
                    count += 1
            dictionary.files += 1
            logger.debug("Loaded weak password dictionary %s (%d passwords)", name, count)

        logger.info(
            "Loaded %d weak password dictionaries with %d unique passwords", dictionary.files, len(dictionary)
        )
        return dictionary

    def __len__(self) -> int:
        return len(self._words)

    def __contains__(self, password: object) -> bool:
        return isinstance(password, str) and password.lower() in self._words

    def is_weak(self, password: str) -> bool:
        return password in self

    def details(self) -> str:
        return (
            f"Password Dictionary Checker: Loaded {self.files} Weak Password Dictionaries "
            f"with {len(self)} unique passwords"
        )
