"""Typed environment variable readers.

All helpers treat unset and blank variables the same way and return the
supplied default. Malformed values raise ``ValueError`` naming the variable so
misconfiguration fails loudly instead of silently falling back.
"""

import os
from typing import List, Optional

_TRUE_VALUES = {"1", "true", "yes", "on", "y", "t"}
_FALSE_VALUES = {"0", "false", "no", "off", "n", "f"}


def _raw(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def get_env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return a stripped string value or the default when unset/blank."""
    value = _raw(name)
    return default if value is None else value


def get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Return an integer value or the default when unset/blank."""
    value = _raw(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer for {name}: '{value}'") from exc


def get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Return a float value or the default when unset/blank."""
    value = _raw(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number for {name}: '{value}'") from exc


def get_env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Return a boolean value or the default when unset/blank."""
    value = _raw(name)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: '{value}'")


def get_env_list(name: str, default: Optional[List[str]] = None) -> List[str]:
    """Return a comma-separated list with blank items dropped."""
    value = _raw(name)
    if value is None:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]
