from __future__ import annotations

"""Configuration loading: YAML documents validated against packaged JSON schemas."""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from jsonschema import Draft202012Validator

from .models import Profile, Reward, Task, XPPolicy
from .paths import config_dir, schema_dir

_LOGGER = logging.getLogger(__name__)

CONFIG_DOCUMENTS = {
    "tasks": "tasks.yaml",
    "rewards": "rewards.yaml",
    "profiles": "profiles.yaml",
    "xp_policy": "xp_policy.yaml",
}


class ConfigError(ValueError):
    """Configuration file missing, unreadable or invalid."""


@dataclass(frozen=True)
class AppConfig:
    tasks: list[Task]
    rewards: list[Reward]
    profiles: list[Profile]
    xp_policy: XPPolicy
    source_dir: Path

    def profile(self, profile_id: str) -> Profile:
        for profile in self.profiles:
            if profile.id == profile_id:
                return profile
        raise KeyError(f"Unknown profile_id: {profile_id}")


def _load_schema(name: str) -> dict[str, Any]:
    path = schema_dir() / f"{name}.schema.json"
    if not path.exists():
        raise ConfigError(f"Schema file not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Schema is not valid JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Schema must be a JSON object: {path}")
    return payload


@lru_cache(maxsize=None)
def validator_for(name: str) -> Draft202012Validator:
    return Draft202012Validator(_load_schema(name))


def document_errors(name: str, payload: Any) -> list[str]:
    errors = sorted(validator_for(name).iter_errors(payload), key=lambda err: [str(part) for part in err.path])
    return [f"{'.'.join(str(part) for part in error.path) or '<root>'}: {error.message}" for error in errors]


def _read_document(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file is not valid YAML: {path}") from exc


def _semantic_errors(name: str, payload: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    key = {"tasks": "tasks", "rewards": "rewards", "profiles": "profiles"}.get(name)
    if key:
        seen: set[str] = set()
        for item in payload.get(key, []):
            item_id = item.get("id")
            if item_id in seen:
                errors.append(f"{key}: duplicate id {item_id!r}")
            seen.add(item_id)
    if name == "profiles":
        for item in payload.get("profiles", []):
            timezone = item.get("timezone")
            if not timezone:
                continue
            try:
                ZoneInfo(timezone)
            except (ZoneInfoNotFoundError, ValueError):
                errors.append(f"profiles: unknown timezone {timezone!r} for {item.get('id')!r}")
    if name == "rewards":
        for item in payload.get("rewards", []):
            limit = item.get("limit", {})
            if limit.get("type") != "none" and not limit.get("count"):
                errors.append(f"rewards: {item.get('id')!r} has a {limit.get('type')} limit without a count")
    return errors


def check_document(name: str, path: Path) -> list[str]:
    payload = _read_document(path)
    errors = document_errors(name, payload)
    if errors:
        return errors
    return _semantic_errors(name, payload)


def load_document(name: str, directory: Path) -> dict[str, Any]:
    path = directory / CONFIG_DOCUMENTS[name]
    payload = _read_document(path)
    errors = document_errors(name, payload) or _semantic_errors(name, payload)
    if errors:
        raise ConfigError(f"Config validation failed for {path} at {errors[0]}")
    return payload


def load_config(directory: Path | None = None) -> AppConfig:
    """Load and validate every configuration document from `directory`."""

    source = directory or config_dir()
    if not source.is_dir():
        raise ConfigError(f"Config directory not found: {source}")
    tasks = [Task.from_dict(item) for item in load_document("tasks", source)["tasks"]]
    rewards = [Reward.from_dict(item) for item in load_document("rewards", source)["rewards"]]
    profiles = [Profile.from_dict(item) for item in load_document("profiles", source)["profiles"]]
    xp_policy = XPPolicy.from_dict(load_document("xp_policy", source)["xpPolicy"])
    _LOGGER.debug("Loaded %d tasks, %d rewards, %d profiles from %s", len(tasks), len(rewards), len(profiles), source)
    return AppConfig(tasks=tasks, rewards=rewards, profiles=profiles, xp_policy=xp_policy, source_dir=source)


def validate_config_dir(directory: Path | None = None) -> list[dict[str, Any]]:
    """Check each configuration document and report PASS/FAIL/ERROR per file."""

    source = directory or config_dir()
    results: list[dict[str, Any]] = []
    for name, file_name in CONFIG_DOCUMENTS.items():
        path = source / file_name
        try:
            errors = check_document(name, path)
        except ConfigError as exc:
            results.append({"file": file_name, "status": "ERROR", "errors": [str(exc)]})
            continue
        results.append({"file": file_name, "status": "FAIL" if errors else "PASS", "errors": errors})
    return results
