"""Merge-field placeholder syntaxes: ``{{KEY}}``, ``${KEY}``, ``[KEY]``, ``%KEY%``."""

from __future__ import annotations

import re
from typing import Any

KEY_PATTERN = r"[A-Za-z_][A-Za-z0-9_.\-]*"

# one regex per syntax; group 1 is the key
PLACEHOLDER_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\{\{\s*(" + KEY_PATTERN + r")\s*\}\}"),
    re.compile(r"\$\{(" + KEY_PATTERN + r")\}"),
    re.compile(r"\[(" + KEY_PATTERN + r")\]"),
    re.compile(r"%(" + KEY_PATTERN + r")%"),
)

_ANY_RE = re.compile("|".join(f"(?:{p.pattern})" for p in PLACEHOLDER_RES))


def has_placeholder(text: str) -> bool:
    return isinstance(text, str) and _ANY_RE.search(text) is not None


def placeholder_forms(key: str) -> list[str]:
    """Literal spellings of ``key`` in every supported syntax."""
    return ["{{" + key + "}}", "${" + key + "}", "[" + key + "]", "%" + key + "%"]


def find_placeholders(obj: Any) -> set[str]:
    """Every key referenced by any syntax in any string leaf of ``obj``."""
    found: set[str] = set()
    if isinstance(obj, str):
        for rx in PLACEHOLDER_RES:
            found.update(m.group(1) for m in rx.finditer(obj))
    elif isinstance(obj, dict):
        for v in obj.values():
            found |= find_placeholders(v)
    elif isinstance(obj, (list, tuple)):
        for v in obj:
            found |= find_placeholders(v)
    return found
