from __future__ import annotations

import os
from typing import Iterable, List, Optional

_BOOL_WORDS = {
    "1": True, "true": True, "yes": True, "on": True,
    "0": False, "false": False, "no": False, "off": False,
}


def _raw(name: str) -> Optional[str]:
    # Blank counts as unset so `FOO=` in a .env file falls back to the default.
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def env_bool(name: str, *, default: bool = False) -> bool:
    """Parse a yes/no style flag; unknown words are a configuration error."""
    value = _raw(name)
    if value is None:
        return default
    try:
        return _BOOL_WORDS[value.lower()]
    except KeyError:
        raise ValueError(f"Invalid boolean for {name!r}: {value!r}") from None


def env_int(name: str, *, default: int) -> int:
    value = _raw(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid integer for {name!r}: {value!r}") from None


def env_list(name: str, *, default: Iterable[str] | None = None, separator: str = ",") -> List[str]:
    value = _raw(name)
    if value is None:
        return list(default or [])
    return [part.strip() for part in value.split(separator) if part.strip()]


__all__ = ["env_bool", "env_int", "env_list"]
