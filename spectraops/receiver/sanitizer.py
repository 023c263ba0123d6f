"""Markup stripping for free-text fields before persistence."""

import re
from typing import Optional

_TAG_RE = re.compile(r"</?[^>]+(>|$)")


def _normalize_control_chars(text: str) -> str:
    # Keep common whitespace, blank out other control characters.
    return "".join(ch if (ch >= " " or ch in "\n\r\t") else " " for ch in text)


def strip_tags(text: str) -> str:
    """
    Remove HTML/script tags from ``text``.

    Repeats until nothing matches, so fragments such as ``<scr<b>ipt>``
    cannot reassemble into a tag and the result is stable under a second
    pass.
    """
    previous = None
    while previous != text:
        previous = text
        text = _TAG_RE.sub("", text)
    return text


def sanitize(value: Optional[str]) -> Optional[str]:
    """Strip markup and control characters; ``None`` passes through."""
    if value is None:
        return None
    return strip_tags(_normalize_control_chars(value)).strip()
