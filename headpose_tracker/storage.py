from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Any, Callable, Dict, Iterable, List, Protocol

from .env import get_env
from .models import CalibrationProfile, ValidationError

DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"
DEFAULT_PROFILES_FILENAME = "camera_profiles.json"
DEFAULT_MAX_AGE_DAYS = 30.0
LOGGER = logging.getLogger(__name__)

__all__ = [
    "ProfileStore",
    "InMemoryProfileStore",
    "JsonProfileStore",
    "profile_key",
    "default_profiles_file",
]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _now_ts() -> float:
    return _now_utc().timestamp()


def _data_dir() -> Path:
    override = get_env("DATA_DIR")
    base = Path(override).expanduser() if override else DEFAULT_DATA_DIR
    base.mkdir(parents=True, exist_ok=True)
    return base


def default_profiles_file() -> Path:
    override = get_env("PROFILES_FILE")
    if override:
        target = Path(override).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        return target
    return _data_dir() / DEFAULT_PROFILES_FILENAME


def profile_key(device_id: str, width: int, height: int) -> str:
    """Key a profile by device fingerprint and capture resolution."""
    return f"{device_id}_{int(width)}x{int(height)}"


class ProfileStore(Protocol):
    """Key-value persistence for calibration profiles."""

    def load(self, key: str) -> CalibrationProfile | None: ...

    def save(self, profile: CalibrationProfile) -> None: ...

    def delete(self, key: str) -> bool: ...

    def list_profiles(self) -> List[CalibrationProfile]: ...

    def clear_all(self) -> int: ...

    def clear_expired(self) -> int: ...


class _ExpiringProfileStore(ABC):
    """Expiry and bookkeeping shared by the concrete stores."""

    def __init__(self, *, max_age_days: float = DEFAULT_MAX_AGE_DAYS, clock: Callable[[], float] = _now_ts) -> None:
        self.max_age_s = float(max_age_days) * 86400.0
        self._clock = clock

    @abstractmethod
    def _read(self) -> Dict[str, Dict[str, Any]]:
        """All stored records keyed by device key."""

    @abstractmethod
    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        """Replace the stored records."""

    def _is_expired(self, profile: CalibrationProfile) -> bool:
        return (self._clock() - profile.timestamp) > self.max_age_s

    def load(self, key: str) -> CalibrationProfile | None:
        records = self._read()
        raw = records.get(key)
        if raw is None:
            return None
        try:
            profile = CalibrationProfile.from_dict(raw)
        except ValidationError as exc:
            LOGGER.warning("Discarding unreadable camera profile %s: %s", key, exc)
            records.pop(key, None)
            self._write(records)
            return None
        if self._is_expired(profile):
            LOGGER.info("Camera profile %s expired; removing it", key)
            records.pop(key, None)
            self._write(records)
            return None
        return profile

    def save(self, profile: CalibrationProfile) -> None:
        records = self._read()
        records[profile.device_key] = profile.to_dict()
        self._write(records)
        LOGGER.info("Saved camera profile %s (focal %.1f px)", profile.device_key, profile.focal_length)

    def delete(self, key: str) -> bool:
        records = self._read()
        if key not in records:
            return False
        records.pop(key)
        self._write(records)
        return True

    def list_profiles(self) -> List[CalibrationProfile]:
        profiles: List[CalibrationProfile] = []
        for key, raw in sorted(self._read().items()):
            try:
                profiles.append(CalibrationProfile.from_dict(raw))
            except ValidationError as exc:
                LOGGER.warning("Skipping unreadable camera profile %s: %s", key, exc)
        return profiles

    def clear_all(self) -> int:
        count = len(self._read())
        self._write({})
        return count

    def clear_expired(self) -> int:
        records = self._read()
        kept: Dict[str, Dict[str, Any]] = {}
        for key, raw in records.items():
            try:
                profile = CalibrationProfile.from_dict(raw)
            except ValidationError:
                continue
            if not self._is_expired(profile):
                kept[key] = raw
        removed = len(records) - len(kept)
        if removed:
            self._write(kept)
            LOGGER.info("Cleared %d expired camera profile(s)", removed)
        return removed

    def export_json(self) -> str:
        payload = {"profiles": [profile.to_dict() for profile in self.list_profiles()]}
        return json.dumps(payload, indent=2, sort_keys=True) + "\n"

    def import_json(self, text: str) -> int:
        """Merge profiles from exported JSON text; returns the number imported."""
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Could not parse profile export: {exc}") from exc
        entries: Iterable[Any]
        if isinstance(payload, dict) and isinstance(payload.get("profiles"), list):
            entries = payload["profiles"]
        elif isinstance(payload, list):
            entries = payload
        else:
            raise ValueError("Profile export must be a list or an object with a 'profiles' list")
        profiles = [CalibrationProfile.from_dict(entry) for entry in entries]
        records = self._read()
        for profile in profiles:
            records[profile.device_key] = profile.to_dict()
        self._write(records)
        return len(profiles)


class InMemoryProfileStore(_ExpiringProfileStore):
    def __init__(self, *, max_age_days: float = DEFAULT_MAX_AGE_DAYS, clock: Callable[[], float] = _now_ts) -> None:
        super().__init__(max_age_days=max_age_days, clock=clock)
        self._records: Dict[str, Dict[str, Any]] = {}

    def _read(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._records)

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        self._records = dict(records)


class JsonProfileStore(_ExpiringProfileStore):
    """Profiles persisted to a single JSON document with atomic replace on write."""

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_age_days: float = DEFAULT_MAX_AGE_DAYS,
        clock: Callable[[], float] = _now_ts,
    ) -> None:
        super().__init__(max_age_days=max_age_days, clock=clock)
        self.path = Path(path).expanduser() if path else default_profiles_file()

    def _read(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8").strip() or "{}"
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Could not parse {self.path}: {exc}") from exc
        profiles = payload.get("profiles", {}) if isinstance(payload, dict) else None
        if not isinstance(profiles, dict):
            raise ValueError(f"{self.path} must contain a JSON object with a 'profiles' mapping")
        return dict(profiles)

    def _write(self, records: Dict[str, Dict[str, Any]]) -> None:
        payload = json.dumps({"profiles": records}, indent=2, sort_keys=True) + "\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with NamedTemporaryFile("w", dir=self.path.parent, delete=False, encoding="utf-8") as tmp:
            tmp.write(payload)
            temp_path = Path(tmp.name)
        temp_path.replace(self.path)
