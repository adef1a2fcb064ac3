from __future__ import annotations

from dataclasses import dataclass, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from .env import get_env, get_env_flag

try:  # pragma: no cover - Python 3.11+
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python <3.11
    import tomli as tomllib  # type: ignore[no-redef]

DEFAULT_DEVICE_ID = "default"
DEFAULT_PROFILE_MAX_AGE_DAYS = 30.0


@dataclass(frozen=True)
class AppConfig:
    device_id: str = DEFAULT_DEVICE_ID
    profile_max_age_days: float = DEFAULT_PROFILE_MAX_AGE_DAYS
    profiles_file: Path | None = None
    persist_profiles: bool = True
    tracking_config: Path | None = None


def _config_path() -> Path | None:
    """Resolve the TOML configuration file, if present."""
    env_override = get_env("CONFIG")
    if env_override:
        path = Path(env_override).expanduser()
        return path if path.exists() else None

    default_path = Path("config/headpose_tracker.toml")
    if default_path.exists():
        return default_path
    return None


def _load_toml(path: Path) -> Mapping[str, Any]:
    with path.open("rb") as handle:
        return tomllib.load(handle)


def _optional_path(raw: Any, base: Path | None) -> Path | None:
    if not raw or not isinstance(raw, str):
        return None
    path = Path(raw).expanduser()
    if not path.is_absolute() and base is not None:
        path = base.parent / path
    return path


def _build_config(raw: Mapping[str, Any], source: Path | None) -> AppConfig:
    section = raw.get("app", raw)
    if not isinstance(section, Mapping):
        section = {}
    device_id = str(section.get("device_id") or DEFAULT_DEVICE_ID).strip() or DEFAULT_DEVICE_ID
    try:
        max_age = float(section.get("profile_max_age_days", DEFAULT_PROFILE_MAX_AGE_DAYS))
    except (TypeError, ValueError):
        max_age = DEFAULT_PROFILE_MAX_AGE_DAYS
    if max_age <= 0:
        max_age = DEFAULT_PROFILE_MAX_AGE_DAYS
    return AppConfig(
        device_id=device_id,
        profile_max_age_days=max_age,
        profiles_file=_optional_path(section.get("profiles_file"), source),
        persist_profiles=bool(section.get("persist_profiles", True)),
        tracking_config=_optional_path(section.get("tracking_config"), source),
    )


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load configuration once, falling back to built-in defaults."""
    path = _config_path()
    config = _build_config(_load_toml(path), path) if path else AppConfig()
    device_override = (get_env("DEVICE_ID") or "").strip()
    if device_override:
        config = replace(config, device_id=device_override)
    if not get_env_flag("PERSIST_PROFILES", default=config.persist_profiles):
        config = replace(config, persist_profiles=False)
    return config


def as_dict() -> dict[str, Any]:
    """Return the effective configuration for debug/CLI display."""
    config = get_config()
    return {
        "device_id": config.device_id,
        "profile_max_age_days": config.profile_max_age_days,
        "profiles_file": str(config.profiles_file) if config.profiles_file else None,
        "persist_profiles": config.persist_profiles,
        "tracking_config": str(config.tracking_config) if config.tracking_config else None,
        "source": str(_config_path() or "defaults"),
    }
