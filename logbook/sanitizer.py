"""Markup stripping for user supplied free text.

Stored fields are plain text: tags are removed, but characters such as ``&``
and quotes are kept literally. Clients escape on output.
"""

import html
from typing import Optional

import bleach


def sanitize_text(value: str) -> str:
    """Return *value* with every HTML tag removed and outer whitespace trimmed.

    Message bodies, supervisor and patient fields and roster names all pass
    through here before they are stored.
    """
    cleaned = bleach.clean(value or "", tags=[], attributes={}, strip=True)
    # bleach emits HTML entities; the database holds plain text.
    return html.unescape(cleaned).strip()


def sanitize_optional(value: Optional[str]) -> Optional[str]:
    """Like :func:`sanitize_text` but maps blank results to ``None``."""

    if value is None:
        return None
    return sanitize_text(value) or None


__all__ = ["sanitize_optional", "sanitize_text"]
