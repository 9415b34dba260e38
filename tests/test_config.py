from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from questbox.config import ConfigError, load_config, validate_config_dir
from questbox.paths import package_root


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text.strip() + "\n", encoding="utf-8")


def _copy_defaults(tmp_path: Path) -> Path:
    target = tmp_path / "config"
    shutil.copytree(package_root() / "defaults", target)
    return target


def test_default_config_loads() -> None:
    config = load_config()
    assert [profile.id for profile in config.profiles] == ["alex", "sam"]
    assert config.xp_policy.xp_per_level == 500
    assert config.xp_policy.daily_xp_cap == 200
    assert config.xp_policy.streak_bonus.days == 3
    homework = next(task for task in config.tasks if task.id == "homework")
    assert homework.timer == 45
    assert homework.penalty_factor == 0.5
    assert config.profile("sam").name == "Sam"
    with pytest.raises(KeyError):
        config.profile("nobody")


def test_default_config_validates() -> None:
    results = validate_config_dir()
    assert [result["status"] for result in results] == ["PASS", "PASS", "PASS", "PASS"]


def test_config_dir_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_dir = _copy_defaults(tmp_path)
    _write(
        config_dir / "profiles.yaml",
        """
profiles:
  - id: robin
    name: "Robin"
    pin: "0000"
    timezone: "Europe/Berlin"
""",
    )
    monkeypatch.setenv("QUESTBOX_CONFIG_DIR", str(config_dir))
    config = load_config()
    assert [profile.id for profile in config.profiles] == ["robin"]
    assert config.profiles[0].timezone == "Europe/Berlin"


def test_duplicate_task_ids_fail_validation(tmp_path: Path) -> None:
    config_dir = _copy_defaults(tmp_path)
    _write(
        config_dir / "tasks.yaml",
        """
tasks:
  - id: dishes
    name: "Dishes"
    description: "Wash up."
    xp: 10
    repeatable: daily
  - id: dishes
    name: "Dishes again"
    description: "Wash up twice."
    xp: 10
    repeatable: daily
""",
    )
    results = {result["file"]: result for result in validate_config_dir(config_dir)}
    assert results["tasks.yaml"]["status"] == "FAIL"
    assert "duplicate id 'dishes'" in results["tasks.yaml"]["errors"][0]
    with pytest.raises(ConfigError):
        load_config(config_dir)


def test_degenerate_policy_is_rejected(tmp_path: Path) -> None:
    config_dir = _copy_defaults(tmp_path)
    _write(
        config_dir / "xp_policy.yaml",
        """
xpPolicy:
  xpPerLevel: 0
  dailyXpCap: 200
  streakBonus:
    days: 3
    multiplier: 1.5
  diminishingReturns:
    afterTaskCount: 5
    reductionFactor: 0.5
""",
    )
    results = {result["file"]: result for result in validate_config_dir(config_dir)}
    assert results["xp_policy.yaml"]["status"] == "FAIL"
    assert results["xp_policy.yaml"]["errors"][0].startswith("xpPolicy.xpPerLevel")


def test_missing_and_malformed_files_report_error(tmp_path: Path) -> None:
    config_dir = _copy_defaults(tmp_path)
    (config_dir / "rewards.yaml").unlink()
    _write(config_dir / "profiles.yaml", "profiles: [unclosed")
    results = {result["file"]: result for result in validate_config_dir(config_dir)}
    assert results["rewards.yaml"]["status"] == "ERROR"
    assert results["profiles.yaml"]["status"] == "ERROR"
    assert results["tasks.yaml"]["status"] == "PASS"


def test_unknown_timezone_and_limit_without_count(tmp_path: Path) -> None:
    config_dir = _copy_defaults(tmp_path)
    _write(
        config_dir / "profiles.yaml",
        """
profiles:
  - id: alex
    name: "Alex"
    pin: "1234"
    timezone: "Mars/Olympus_Mons"
""",
    )
    _write(
        config_dir / "rewards.yaml",
        """
rewards:
  - id: treat
    name: "Treat"
    cost: 10
    limit:
      type: daily
    needsApproval: false
""",
    )
    results = {result["file"]: result for result in validate_config_dir(config_dir)}
    assert results["profiles.yaml"]["status"] == "FAIL"
    assert results["rewards.yaml"]["status"] == "FAIL"
