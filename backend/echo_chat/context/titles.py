"""Conversation title derivation."""

from __future__ import annotations

from echo_chat.constants import TITLE_ELLIPSIS, TITLE_MAX_CHARS


def truncate_title(text: str) -> str:
    """
    First line of `text`, shortened to at most TITLE_MAX_CHARS characters.

    Longer lines keep the first (max - len(ellipsis)) characters and end
    with the ellipsis.
    """
    stripped = text.strip()
    first_line = stripped.splitlines()[0].strip() if stripped else ""
    if len(first_line) > TITLE_MAX_CHARS:
        keep = TITLE_MAX_CHARS - len(TITLE_ELLIPSIS)
        return first_line[:keep].rstrip() + TITLE_ELLIPSIS
    return first_line
