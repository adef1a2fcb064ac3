from __future__ import annotations

import os

PRIMARY_PREFIX = "HEADPOSE_TRACKER_"
LEGACY_PREFIX = "VTO_TRACKER_"

_FALSE_VALUES = {"0", "false", "no", "off", ""}


def get_env(name: str, default: str | None = None) -> str | None:
    """
    Resolve configuration environment variables.

    Prefers the Headpose Tracker prefix while still honouring the older
    virtual try-on names so existing kiosk deployments keep working.
    """
    for prefix in (PRIMARY_PREFIX, LEGACY_PREFIX):
        value = os.getenv(f"{prefix}{name}")
        if value is not None:
            return value
    return default


def get_env_flag(name: str, default: bool = False) -> bool:
    """Boolean variant of :func:`get_env`; unset means ``default``."""
    value = get_env(name)
    if value is None:
        return default
    return value.strip().lower() not in _FALSE_VALUES
