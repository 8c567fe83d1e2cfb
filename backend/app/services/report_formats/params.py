from __future__ import annotations

"""backend/app/services/report_formats/params.py

Report format parameter types and value validation.

Bounds are stored as 64-bit integers. An absent bound is stored as the
type's extreme value (PARAM_MIN_ABSENT / PARAM_MAX_ABSENT), so those two
values can never be supplied as a real bound.
"""

import enum
import re
from typing import Iterable, Optional


PARAM_MIN_ABSENT = -(2**63)
PARAM_MAX_ABSENT = 2**63 - 1

# Comma separated format ids; only the first id may be empty.
REPORT_FORMAT_LIST_RE = re.compile(r"^(?:[A-Za-z0-9_-]+)?(?:,(?:[A-Za-z0-9_-])+)*$")

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class ParamType(enum.IntEnum):
    BOOLEAN = 0
    INTEGER = 1
    SELECTION = 2
    STRING = 3
    TEXT = 4
    REPORT_FORMAT_LIST = 5

    @property
    def type_name(self) -> str:
        return self.name.lower()

    @classmethod
    def from_name(cls, name: str | None) -> Optional["ParamType"]:
        if not name:
            return None
        try:
            return cls[name.strip().upper()]
        except KeyError:
            return None


def _clamp(value: int) -> int:
    return max(PARAM_MIN_ABSENT, min(PARAM_MAX_ABSENT, value))


def parse_c_integer(text: str | None) -> int:
    """
    Parse the leading integer of `text` the way C's strtoll(text, NULL, 0)
    does: optional whitespace and sign, 0x for hex, a leading 0 for octal,
    trailing garbage ignored, out of range values saturated, and 0 when no
    digits are found.
    """
    if not text:
        return 0
    s = text.lstrip(" \t\n\r\f\v")
    sign = 1
    if s[:1] in ("+", "-"):
        sign = -1 if s[0] == "-" else 1
        s = s[1:]

    base = 10
    if s[:2].lower() == "0x" and s[2:3] and s[2].lower() in _DIGITS[:16]:
        base = 16
        s = s[2:]
    elif s[:1] == "0":
        base = 8

    allowed = _DIGITS[:base]
    digits = []
    for ch in s:
        if ch.lower() not in allowed:
            break
        digits.append(ch)
    if not digits:
        return 0
    return _clamp(sign * int("".join(digits), base))


def parse_bound(text: str | None) -> int | None:
    """
    Strictly parse an explicit bound from a feed manifest.

    Returns None when the text is not a complete integer or when it
    reaches the absent-bound sentinels.
    """
    if text is None:
        return None
    stripped = text.strip()
    if not stripped:
        return None
    try:
        value = int(stripped, 0)
    except ValueError:
        return None
    if value <= PARAM_MIN_ABSENT or value >= PARAM_MAX_ABSENT:
        return None
    return value


def is_valid_bounds(type_min: int, type_max: int) -> bool:
    """Explicitly supplied bounds must not be the absent sentinels."""
    return type_min != PARAM_MIN_ABSENT and type_max != PARAM_MAX_ABSENT


def validate_param_value(
    param_type: int,
    value: str,
    *,
    type_min: int = PARAM_MIN_ABSENT,
    type_max: int = PARAM_MAX_ABSENT,
    options: Iterable[str] = (),
) -> bool:
    """Return True when `value` is acceptable for a param of `param_type`."""
    if param_type == ParamType.INTEGER:
        actual = parse_c_integer(value)
        return type_min <= actual <= type_max

    if param_type == ParamType.SELECTION:
        return any(option == value for option in options if option is not None)

    if param_type in (ParamType.STRING, ParamType.TEXT):
        actual = len(value.encode("utf-8"))
        return type_min <= actual <= type_max

    if param_type == ParamType.REPORT_FORMAT_LIST:
        return REPORT_FORMAT_LIST_RE.match(value) is not None

    return True


def validate_param(param, value: str) -> bool:
    """Validate `value` against a stored param row (active or trash)."""
    return validate_param_value(
        param.type,
        value,
        type_min=param.type_min,
        type_max=param.type_max,
        options=[option.value for option in param.options],
    )


def split_report_format_list(value: str | None) -> list[str]:
    """Distinct, non-empty ids of a report_format_list value, in order."""
    seen: list[str] = []
    for part in (value or "").split(","):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen
