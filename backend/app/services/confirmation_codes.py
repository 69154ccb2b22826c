"""Receiver confirmation code generation and normalization."""
from __future__ import annotations

import re
import secrets

from app.core.errors import ValidationError

CODE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
DEFAULT_CODE_LENGTH = 8


def generate_confirmation_code(length: int = DEFAULT_CODE_LENGTH) -> str:
    """Return an upper-case alphanumeric code drawn from a CSPRNG.

    Uniqueness is the storage layer's job; callers retry on collision.
    """
    if length < 1:
        raise ValueError("Code length must be positive")
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_confirmation_code(raw: str | None, length: int = DEFAULT_CODE_LENGTH) -> str:
    """Case-fold a user-entered code and reject anything malformed.

    Whitespace and dashes are tolerated since people transcribe codes as
    ``A1B2-C3D4``.
    """
    code = re.sub(r"[\s\-]", "", raw or "").upper()
    if not code:
        raise ValidationError("Confirmation code is required")
    if len(code) != length or any(ch not in CODE_ALPHABET for ch in code):
        raise ValidationError(
            f"Confirmation code must be {length} letters or digits"
        )
    return code
