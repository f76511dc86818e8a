"""Typed readers for environment settings. Malformed values fail loudly at import."""
from __future__ import annotations

import os
from typing import Iterable, List, Optional

_BOOLS = {"1": True, "true": True, "yes": True, "on": True, "0": False, "false": False, "no": False, "off": False}


def _raw(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_bool(name: str, *, default: bool = False) -> bool:
    value = _raw(name)
    if value is None:
        return default
    try:
        return _BOOLS[value.lower()]
    except KeyError:
        raise ValueError(f"Invalid boolean for {name!r}: {value!r}")


def env_int(name: str, default: int) -> int:
    value = _raw(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid integer for {name!r}: {value!r}")


def env_float(name: str, default: float) -> float:
    value = _raw(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid number for {name!r}: {value!r}")


def env_list(name: str, *, default: Iterable[str] = (), separator: str = ",") -> List[str]:
    """Comma separated list; a missing variable yields `default`, blanks are dropped."""
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(separator) if item.strip()]


__all__ = ["env_bool", "env_int", "env_float", "env_list"]
