from typing import Mapping, Optional

from ..exceptions import EmptyOrMissingCode, InvalidCodeLength
from ..models import AuthCode

# Checked in order; the first column with a value wins.
CODE_COLUMN_ALIASES = (
    "code",
    "Code",
    "CODE",
    "auth_code",
    "authCode",
    "AuthCode",
    "authentication_code",
    "Authentication Code",
)


def _has_value(value: Optional[object]) -> bool:
    return value is not None and value != ""


def extract_code(row: Mapping[str, Optional[object]]) -> str:
    """Pull the authentication code out of a parsed row.

    Falls back to the first column when no known header is present.
    Raises ``EmptyOrMissingCode`` or ``InvalidCodeLength``.
    """
    raw: Optional[object] = None
    for alias in CODE_COLUMN_ALIASES:
        if _has_value(row.get(alias)):
            raw = row[alias]
            break
    else:
        raw = next(iter(row.values()), None)

    code = str(raw).strip() if raw is not None else ""
    if not code:
        raise EmptyOrMissingCode("Empty or missing code")

    if not AuthCode.MIN_LENGTH <= len(code) <= AuthCode.MAX_LENGTH:
        raise InvalidCodeLength(
            f"Code length must be between {AuthCode.MIN_LENGTH}-{AuthCode.MAX_LENGTH} characters",
            value=code,
        )
    return code
