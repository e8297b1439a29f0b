from __future__ import annotations

from enum import Enum


class TurnKind(str, Enum):
    """Why the turn exists: a new user message, an edited one, or a regeneration."""

    SEND = "SEND"
    EDIT = "EDIT"
    REGENERATE = "REGENERATE"
