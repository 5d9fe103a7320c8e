"""Game identity format validation (Steam64-style ids)."""

from __future__ import annotations

from collections.abc import Iterable

from rolesync.config import get_settings

GAME_ID_LENGTH = 17


class InvalidGameIdError(ValueError):
    """Raised when a game identity is not a well-formed Steam64-style id."""


def is_valid_game_id(value: str | None, *, prefixes: Iterable[str] | None = None) -> bool:
    """Return whether the value is a 17-digit id with an accepted prefix."""

    if not isinstance(value, str):
        return False
    if len(value) != GAME_ID_LENGTH or not value.isascii() or not value.isdigit():
        return False
    accepted = tuple(prefixes) if prefixes is not None else tuple(get_settings().game_id_prefixes)
    return value.startswith(accepted)


def validate_game_id(value: str | None, *, prefixes: Iterable[str] | None = None) -> str:
    """Return the cleaned game id or raise InvalidGameIdError."""

    cleaned = value.strip() if isinstance(value, str) else value
    if not is_valid_game_id(cleaned, prefixes=prefixes):
        raise InvalidGameIdError(f"Invalid game id: {value!r}")
    return cleaned
