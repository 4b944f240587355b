"""
rally.engine.nickname — Nickname Validation
============================================

Format rules checked before an admission transaction is opened.  Uniqueness
is *not* checked here; that needs the program's membership list and happens
inside the transaction.
"""

from __future__ import annotations

import re

from rally.config import NicknameRules

# Letters (any script), digits, underscore, dot and hyphen.
_ALLOWED = re.compile(r"^[\w.\-]+$")


def normalize_nickname(nickname: str | None) -> str:
    return (nickname or "").strip()


def validate_nickname(nickname: str, rules: NicknameRules | None = None) -> str | None:
    """Return a human-readable problem with *nickname*, or ``None`` if valid.

    *nickname* is expected to be normalized (see :func:`normalize_nickname`).
    """
    rules = rules or NicknameRules()
    if not nickname:
        return "Nickname is required"
    if len(nickname) < rules.min_length:
        return f"Nickname must be at least {rules.min_length} characters"
    if len(nickname) > rules.max_length:
        return f"Nickname must be at most {rules.max_length} characters"
    if not _ALLOWED.match(nickname):
        return "Nickname may only contain letters, digits, '_', '.' and '-'"

    folded = nickname.casefold()
    for word in rules.banned_words:
        if word and word.casefold() in folded:
            return "Nickname contains a word that is not allowed"
    return None
