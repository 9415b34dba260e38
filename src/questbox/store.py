from __future__ import annotations

"""Schema-checked persistence of per-profile progress in key-value storage."""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Protocol

from jsonschema import Draft202012Validator

from .models import AllProgress, Profile, Progress
from .paths import schema_dir

_LOGGER = logging.getLogger(__name__)

PROGRESS_STORAGE_KEY = "questbox_progress"
CUSTOM_THEMES_STORAGE_KEY = "questbox_custom_themes"
CATALOG_STORAGE_KEY = "questbox_catalog"
STORAGE_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,63}$")


class KeyValueStorage(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> bool: ...


@dataclass
class FileStorage:
    """One JSON document per key under `root`, replaced atomically on write."""

    root: Path

    def _path(self, key: str) -> Path:
        if not STORAGE_KEY_PATTERN.match(key):
            raise ValueError(f"Invalid storage key: {key!r}")
        return self.root / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.parent / f".{path.name}.tmp"
        for attempt in range(5):
            temp_path.write_text(value, encoding="utf-8")
            try:
                temp_path.replace(path)
                return
            except PermissionError:
                if attempt == 4:
                    raise
                time.sleep(0.02 * (attempt + 1))

    def remove(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        return True


@dataclass
class ValidationResult:
    """Tagged parse result: `progress` is set only when `ok` is true."""

    ok: bool
    progress: AllProgress | None = None
    errors: list[str] = field(default_factory=list)


def load_progress_schema() -> dict[str, Any]:
    path = schema_dir() / "progress.schema.json"
    return json.loads(path.read_text(encoding="utf-8"))


_VALIDATOR: Draft202012Validator | None = None


def progress_validator() -> Draft202012Validator:
    global _VALIDATOR
    if _VALIDATOR is None:
        _VALIDATOR = Draft202012Validator(load_progress_schema())
    return _VALIDATOR


def schema_errors(payload: Any, validator: Draft202012Validator | None = None) -> list[str]:
    active = validator or progress_validator()
    errors = sorted(active.iter_errors(payload), key=lambda err: [str(part) for part in err.path])
    messages: list[str] = []
    for error in errors:
        where = ".".join(str(part) for part in error.path) or "<root>"
        messages.append(f"{where}: {error.message}")
    return messages


def empty_progress() -> Progress:
    return Progress()


def empty_progress_for(profiles: Iterable[Profile]) -> AllProgress:
    return {profile.id: empty_progress() for profile in profiles}


def migrate_progress_entry(raw: dict[str, Any]) -> dict[str, Any]:
    """Default fields added after the first stored shape.

    Older records lack `streakSavers`, `completionHistory` and `activeTimers`;
    older timers were a bare start-time string per task.
    """

    migrated = dict(raw)
    migrated.setdefault("streakSavers", 0)
    migrated.setdefault("completionHistory", [])
    timers = migrated.get("activeTimers") or {}
    migrated["activeTimers"] = {
        task_id: {"startTime": state, "elapsedBeforePause": 0} if isinstance(state, str) else state
        for task_id, state in timers.items()
    }
    return migrated


def parse_all_progress(payload: Any) -> ValidationResult:
    errors = schema_errors(payload)
    if errors:
        return ValidationResult(ok=False, errors=errors)
    progress = {
        str(profile_id): Progress.from_dict(migrate_progress_entry(entry)) for profile_id, entry in payload.items()
    }
    return ValidationResult(ok=True, progress=progress)


def serialize_all_progress(all_progress: AllProgress) -> dict[str, Any]:
    return {profile_id: progress.to_dict() for profile_id, progress in all_progress.items()}


class ProgressStore:
    """The only path between in-memory progress and durable storage."""

    def __init__(self, storage: KeyValueStorage, key: str = PROGRESS_STORAGE_KEY) -> None:
        self.storage = storage
        self.key = key
        self.last_load_status = "unloaded"
        self.last_load_errors: list[str] = []

    def _fallback(self, profiles: list[Profile], status: str, errors: list[str]) -> AllProgress:
        self.last_load_status = status
        self.last_load_errors = errors
        return empty_progress_for(profiles)

    def load(self, profiles: Iterable[Profile]) -> AllProgress:
        """Read stored progress, falling back to fresh records on any defect.

        A corrupt blob is left in place; it is only replaced by the next save.
        """

        profile_list = list(profiles)
        try:
            raw = self.storage.get(self.key)
        except (OSError, UnicodeDecodeError) as exc:
            _LOGGER.warning("Could not read stored progress, using initial progress: %s", exc)
            return self._fallback(profile_list, "fallback", [str(exc)])
        if raw is None:
            _LOGGER.info("No stored progress found, using initial progress.")
            return self._fallback(profile_list, "fresh", [])

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            _LOGGER.warning("Stored progress is not valid JSON, using initial progress: %s", exc)
            return self._fallback(profile_list, "fallback", [f"<root>: {exc.msg}"])

        result = parse_all_progress(payload)
        if not result.ok or result.progress is None:
            _LOGGER.warning("Stored progress is invalid, using initial progress: %s", "; ".join(result.errors[:5]))
            return self._fallback(profile_list, "fallback", result.errors)

        loaded = result.progress
        for profile in profile_list:
            if profile.id not in loaded:
                loaded[profile.id] = empty_progress()
        self.last_load_status = "loaded"
        self.last_load_errors = []
        return loaded

    def save(self, all_progress: AllProgress) -> ValidationResult:
        """Validate and persist; invalid data is refused and the prior blob kept."""

        payload = serialize_all_progress(all_progress)
        errors = schema_errors(payload)
        if errors:
            _LOGGER.error("Refusing to save invalid progress data: %s", "; ".join(errors[:5]))
            return ValidationResult(ok=False, errors=errors)
        try:
            self.storage.set(self.key, json.dumps(payload, indent=2))
        except OSError as exc:
            _LOGGER.error("Failed to save progress: %s", exc)
            return ValidationResult(ok=False, errors=[str(exc)])
        return ValidationResult(ok=True, progress=all_progress)

    def reset_all(self, profiles: Iterable[Profile]) -> AllProgress:
        self.storage.remove(self.key)
        self.last_load_status = "fresh"
        self.last_load_errors = []
        return empty_progress_for(profiles)
