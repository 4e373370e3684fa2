"""Handle name normalization and validation.

A handle has the form ``<label>@<space>``. Both labels follow the same rules:
1 to 62 characters of ``[a-z0-9-]``, no leading, trailing or doubled hyphen.
A punycode ``xn--`` prefix is allowed and excluded from the hyphen checks.
"""

from __future__ import annotations

import re

MAX_LABEL_LENGTH = 62
PUNYCODE_PREFIX = "xn--"

_LABEL_CHARS_RE = re.compile(r"^[a-z0-9-]+$")


def normalize_handle(name: str) -> str:
    return name.strip().lower()


def is_valid_label(label: str) -> bool:
    if not label or len(label) > MAX_LABEL_LENGTH:
        return False
    verify_range = label
    if label.startswith(PUNYCODE_PREFIX) and len(label) > len(PUNYCODE_PREFIX):
        verify_range = label[len(PUNYCODE_PREFIX) :]
    if verify_range.startswith("-") or verify_range.endswith("-"):
        return False
    if "--" in verify_range:
        return False
    return bool(_LABEL_CHARS_RE.fullmatch(verify_range))


def split_handle(name: str) -> tuple[str, str]:
    label, sep, space = name.partition("@")
    if not sep:
        raise ValueError(f"handle must contain '@': {name!r}")
    return label, space


def is_valid_handle(name: str) -> bool:
    if name.count("@") != 1:
        return False
    label, space = split_handle(name)
    return is_valid_label(label) and is_valid_label(space)


def sanitize_query(query: str) -> str:
    """Reduce free text to the characters the proposal search accepts."""
    return re.sub(r"[^a-z0-9\-]", "", query.lower())
