from __future__ import annotations

"""Quest/reward catalog: configured entries plus custom and generated ones."""

import json
import logging
import math
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from .config import AppConfig, document_errors
from .models import DIFFICULTY_VALUES, LIMIT_TYPES, REPEAT_VALUES, Reward, RewardLimit, Task
from .store import CATALOG_STORAGE_KEY, KeyValueStorage

_LOGGER = logging.getLogger(__name__)

GENERATED_TASK_XP_RANGE = (10, 100)
GENERATED_REWARD_COST_RANGE = (50, 500)
MAX_NAME_CHARS = 120
MAX_DESCRIPTION_CHARS = 500


class CatalogError(ValueError):
    """Structured catalog validation error."""

    def __init__(self, code: str, message: str, **context: Any) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        for key, value in self.context.items():
            if value is not None:
                payload[key] = value
        return payload


class GeneratedContentError(CatalogError):
    """Generator output that does not fit the task/reward shape."""


def new_catalog_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _clamp(value: float, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, int(round(value))))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _text(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""


def validate_generated_task(payload: Any) -> Task:
    """Turn generator output into a catalog task with a fresh id."""

    if not isinstance(payload, dict):
        raise GeneratedContentError("GENERATED_TASK_INVALID", "Generated task must be an object.")
    name = _text(payload, "name")
    description = _text(payload, "description")
    xp = payload.get("xp")
    repeatable = payload.get("repeatable")
    if not name or not description or not _is_number(xp) or repeatable not in REPEAT_VALUES:
        raise GeneratedContentError(
            "GENERATED_TASK_INVALID",
            "Generated task is missing required fields or has incorrect types.",
        )
    difficulty = payload.get("difficulty")
    return Task(
        id=new_catalog_id("ai"),
        name=name[:MAX_NAME_CHARS],
        description=description[:MAX_DESCRIPTION_CHARS],
        xp=_clamp(xp, GENERATED_TASK_XP_RANGE),
        repeatable=repeatable,
        difficulty=difficulty if difficulty in DIFFICULTY_VALUES else None,
    )


def validate_generated_reward(payload: Any) -> Reward:
    """Turn generator output into a catalog reward; generated rewards never need approval."""

    if not isinstance(payload, dict):
        raise GeneratedContentError("GENERATED_REWARD_INVALID", "Generated reward must be an object.")
    name = _text(payload, "name")
    description = _text(payload, "description")
    cost = payload.get("cost")
    limit = payload.get("limit")
    limit_type = limit.get("type") if isinstance(limit, dict) else None
    if not name or not description or not _is_number(cost) or limit_type not in LIMIT_TYPES:
        raise GeneratedContentError(
            "GENERATED_REWARD_INVALID",
            "Generated reward is missing required fields or has incorrect types.",
        )
    count = limit.get("count")
    if limit_type == "none":
        parsed_count = None
    elif _is_number(count) and count >= 1:
        parsed_count = int(count)
    else:
        parsed_count = 1
    return Reward(
        id=new_catalog_id("ai"),
        name=name[:MAX_NAME_CHARS],
        description=description[:MAX_DESCRIPTION_CHARS],
        cost=_clamp(cost, GENERATED_REWARD_COST_RANGE),
        limit=RewardLimit(type=limit_type, count=parsed_count),
        needs_approval=False,
    )


def create_custom_reward(payload: dict[str, Any]) -> Reward:
    name = _text(payload, "name")
    if not name:
        raise CatalogError("REWARD_NAME_REQUIRED", "Reward name cannot be empty.")
    if len(name) > MAX_NAME_CHARS:
        raise CatalogError("REWARD_NAME_TOO_LONG", f"Reward name must be at most {MAX_NAME_CHARS} characters.")
    cost = payload.get("cost")
    if not isinstance(cost, int) or isinstance(cost, bool) or cost <= 0:
        raise CatalogError("REWARD_COST_INVALID", "XP cost must be a positive number.")
    limit = payload.get("limit") or {}
    limit_type = limit.get("type", "none")
    if limit_type not in LIMIT_TYPES:
        raise CatalogError("REWARD_LIMIT_INVALID", f"Limit type must be one of {', '.join(LIMIT_TYPES)}.")
    count = limit.get("count")
    if limit_type != "none" and (not isinstance(count, int) or isinstance(count, bool) or count <= 0):
        raise CatalogError("REWARD_LIMIT_INVALID", "Limit count must be a positive number.")
    return Reward(
        id=new_catalog_id("custom"),
        name=name,
        description=_text(payload, "description")[:MAX_DESCRIPTION_CHARS],
        cost=cost,
        limit=RewardLimit(type=limit_type, count=count if limit_type != "none" else None),
        needs_approval=bool(payload.get("needsApproval", False)),
    )


def apply_task_changes(task: Task, changes: dict[str, Any]) -> Task:
    name = changes.get("name", task.name)
    if not isinstance(name, str) or not name.strip():
        raise CatalogError("TASK_NAME_REQUIRED", "Task name cannot be empty.", task_id=task.id)
    if len(name.strip()) > MAX_NAME_CHARS:
        raise CatalogError("TASK_NAME_TOO_LONG", f"Task name must be at most {MAX_NAME_CHARS} characters.", task_id=task.id)
    xp = changes.get("xp", task.xp)
    if not isinstance(xp, int) or isinstance(xp, bool) or xp < 0:
        raise CatalogError("TASK_XP_INVALID", "XP must be a non-negative number.", task_id=task.id)
    difficulty = changes.get("difficulty", task.difficulty)
    if difficulty is not None and difficulty not in DIFFICULTY_VALUES:
        raise CatalogError("TASK_DIFFICULTY_INVALID", "Unknown difficulty.", task_id=task.id)
    description = changes.get("description", task.description)
    return replace(
        task,
        name=name.strip(),
        description=str(description or "").strip()[:MAX_DESCRIPTION_CHARS],
        xp=xp,
        difficulty=difficulty,
    )


@dataclass
class Catalog:
    """Configured entries with custom/generated entries listed first, newest first."""

    base_tasks: list[Task]
    base_rewards: list[Reward]
    custom_tasks: list[Task] = field(default_factory=list)
    custom_rewards: list[Reward] = field(default_factory=list)
    task_edits: dict[str, Task] = field(default_factory=dict)

    @property
    def tasks(self) -> list[Task]:
        return [*self.custom_tasks, *(self.task_edits.get(task.id, task) for task in self.base_tasks)]

    @property
    def rewards(self) -> list[Reward]:
        return [*self.custom_rewards, *self.base_rewards]

    def task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(f"Unknown task_id: {task_id}")

    def reward(self, reward_id: str) -> Reward:
        for reward in self.rewards:
            if reward.id == reward_id:
                return reward
        raise KeyError(f"Unknown reward_id: {reward_id}")

    def add_task(self, task: Task) -> Task:
        self.custom_tasks.insert(0, task)
        return task

    def add_reward(self, reward: Reward) -> Reward:
        self.custom_rewards.insert(0, reward)
        return reward

    def update_task(self, task_id: str, changes: dict[str, Any]) -> Task:
        updated = apply_task_changes(self.task(task_id), changes)
        for index, task in enumerate(self.custom_tasks):
            if task.id == task_id:
                self.custom_tasks[index] = updated
                return updated
        self.task_edits[task_id] = updated
        return updated

    def to_overlay(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.custom_tasks],
            "rewards": [reward.to_dict() for reward in self.custom_rewards],
            "taskEdits": [task.to_dict() for task in self.task_edits.values()],
        }


def overlay_errors(overlay: Any) -> list[str]:
    if not isinstance(overlay, dict):
        return ["<root>: catalog overlay must be an object"]
    errors = document_errors("tasks", {"tasks": overlay.get("tasks", [])})
    errors += document_errors("tasks", {"tasks": overlay.get("taskEdits", [])})
    errors += document_errors("rewards", {"rewards": overlay.get("rewards", [])})
    return errors


class CatalogStore:
    """Persists custom/generated catalog entries under their own storage key."""

    def __init__(self, storage: KeyValueStorage, key: str = CATALOG_STORAGE_KEY) -> None:
        self.storage = storage
        self.key = key

    def load(self, config: AppConfig) -> Catalog:
        catalog = Catalog(base_tasks=list(config.tasks), base_rewards=list(config.rewards))
        try:
            raw = self.storage.get(self.key)
        except (OSError, UnicodeDecodeError) as exc:
            _LOGGER.warning("Could not read stored catalog, ignoring custom entries: %s", exc)
            return catalog
        if raw is None:
            return catalog
        try:
            overlay = json.loads(raw)
        except json.JSONDecodeError as exc:
            _LOGGER.warning("Stored catalog is not valid JSON, ignoring custom entries: %s", exc)
            return catalog
        errors = overlay_errors(overlay)
        if errors:
            _LOGGER.warning("Stored catalog is invalid, ignoring custom entries: %s", "; ".join(errors[:5]))
            return catalog
        base_ids = {task.id for task in config.tasks}
        catalog.custom_tasks = [Task.from_dict(item) for item in overlay.get("tasks", [])]
        catalog.custom_rewards = [Reward.from_dict(item) for item in overlay.get("rewards", [])]
        catalog.task_edits = {
            item["id"]: Task.from_dict(item) for item in overlay.get("taskEdits", []) if item["id"] in base_ids
        }
        return catalog

    def save(self, catalog: Catalog) -> list[str]:
        overlay = catalog.to_overlay()
        errors = overlay_errors(overlay)
        if errors:
            _LOGGER.error("Refusing to save invalid catalog data: %s", "; ".join(errors[:5]))
            return errors
        self.storage.set(self.key, json.dumps(overlay, indent=2))
        return []
