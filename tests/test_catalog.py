from __future__ import annotations

import json
from pathlib import Path

import pytest

from questbox.catalog import (
    CatalogError,
    CatalogStore,
    GeneratedContentError,
    create_custom_reward,
    validate_generated_reward,
    validate_generated_task,
)
from questbox.config import load_config
from questbox.store import CATALOG_STORAGE_KEY, FileStorage


def test_generated_task_is_clamped_and_gets_fresh_id() -> None:
    payload = {"name": "Sock Safari", "description": "Pair every sock.", "xp": 400, "repeatable": "weekly"}
    first = validate_generated_task(payload)
    second = validate_generated_task(payload)
    assert first.xp == 100
    assert first.id.startswith("ai_")
    assert first.id != second.id
    assert validate_generated_task({**payload, "xp": 2}).xp == 10


def test_generated_task_rejects_missing_fields() -> None:
    with pytest.raises(GeneratedContentError) as excinfo:
        validate_generated_task({"name": "No xp", "description": "x", "repeatable": "daily"})
    assert excinfo.value.code == "GENERATED_TASK_INVALID"
    with pytest.raises(GeneratedContentError):
        validate_generated_task({"name": "Bad", "description": "x", "xp": 10, "repeatable": "hourly"})
    with pytest.raises(GeneratedContentError):
        validate_generated_task(["not", "an", "object"])


def test_generated_reward_defaults() -> None:
    reward = validate_generated_reward(
        {"name": "Pillow Fort", "description": "Build a fort.", "cost": 9000, "limit": {"type": "weekly"}}
    )
    assert reward.cost == 500
    assert reward.limit.count == 1
    assert reward.needs_approval is False
    unlimited = validate_generated_reward({"name": "Hug", "description": "A hug.", "cost": 1, "limit": {"type": "none"}})
    assert unlimited.cost == 50
    assert unlimited.limit.count is None


def test_custom_reward_validation() -> None:
    reward = create_custom_reward({"name": " Zoo Trip ", "cost": 400, "limit": {"type": "monthly", "count": 1}})
    assert reward.id.startswith("custom_")
    assert reward.name == "Zoo Trip"
    with pytest.raises(CatalogError) as excinfo:
        create_custom_reward({"name": "Free", "cost": 0})
    assert excinfo.value.code == "REWARD_COST_INVALID"
    with pytest.raises(CatalogError):
        create_custom_reward({"name": "Limited", "cost": 10, "limit": {"type": "daily"}})
    with pytest.raises(CatalogError):
        create_custom_reward({"name": "   ", "cost": 10})


def test_overlay_persists_custom_entries_and_edits(tmp_path: Path) -> None:
    config = load_config()
    store = CatalogStore(FileStorage(tmp_path))
    catalog = store.load(config)
    generated = catalog.add_task(
        validate_generated_task({"name": "Leaf Hunt", "description": "Rake leaves.", "xp": 30, "repeatable": "none"})
    )
    catalog.update_task("make_bed", {"xp": 35, "name": "Bed Boss"})
    assert store.save(catalog) == []

    reloaded = store.load(config)
    assert reloaded.tasks[0].id == generated.id
    assert reloaded.task("make_bed").xp == 35
    assert reloaded.task("make_bed").name == "Bed Boss"
    assert len(reloaded.tasks) == len(config.tasks) + 1


def test_update_task_rejects_bad_changes(tmp_path: Path) -> None:
    catalog = CatalogStore(FileStorage(tmp_path)).load(load_config())
    with pytest.raises(CatalogError):
        catalog.update_task("make_bed", {"name": ""})
    with pytest.raises(CatalogError):
        catalog.update_task("make_bed", {"xp": -1})
    with pytest.raises(CatalogError):
        catalog.update_task("make_bed", {"difficulty": "legendary"})
    with pytest.raises(KeyError):
        catalog.update_task("missing", {"xp": 5})


def test_invalid_overlay_is_ignored(tmp_path: Path) -> None:
    storage = FileStorage(tmp_path)
    storage.set(CATALOG_STORAGE_KEY, json.dumps({"tasks": [{"id": "broken"}]}))
    catalog = CatalogStore(storage).load(load_config())
    assert catalog.custom_tasks == []
    assert [task.id for task in catalog.tasks] == [task.id for task in load_config().tasks]


def test_undecodable_overlay_is_ignored(tmp_path: Path) -> None:
    (tmp_path / f"{CATALOG_STORAGE_KEY}.json").write_bytes(b'{"tasks": \xff}')
    catalog = CatalogStore(FileStorage(tmp_path)).load(load_config())
    assert catalog.custom_tasks == []
    assert [task.id for task in catalog.tasks] == [task.id for task in load_config().tasks]


@pytest.mark.parametrize("value", [float("inf"), float("-inf"), float("nan")])
def test_generated_content_rejects_non_finite_numbers(value: float) -> None:
    with pytest.raises(GeneratedContentError):
        validate_generated_task(
            {"name": "Star Gazer", "description": "Count stars.", "xp": value, "repeatable": "daily"}
        )
    with pytest.raises(GeneratedContentError):
        validate_generated_reward(
            {"name": "Telescope", "description": "Look up.", "cost": value, "limit": {"type": "none"}}
        )
