from __future__ import annotations

import secrets

CODE_LENGTH = 6
_LOWEST = 10 ** (CODE_LENGTH - 1)
_SPAN = 9 * _LOWEST


def generate_code() -> str:
    """Six-digit numeric code, uniform over [100000, 999999]."""

    return str(_LOWEST + secrets.randbelow(_SPAN))
