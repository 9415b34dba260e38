from __future__ import annotations

import os
from pathlib import Path


def package_root() -> Path:
    return Path(__file__).resolve().parent


def questbox_home() -> Path:
    configured = os.environ.get("QUESTBOX_HOME")
    if configured:
        return Path(configured).expanduser().resolve()
    return Path.home() / ".questbox"


def config_dir() -> Path:
    configured = os.environ.get("QUESTBOX_CONFIG_DIR", "").strip()
    if configured:
        return Path(configured).expanduser().resolve()
    return package_root() / "defaults"


def schema_dir() -> Path:
    return package_root() / "schemas"


def ensure_home_dirs(base: Path) -> dict[str, Path]:
    state = base / "state"
    telemetry = base / "telemetry"
    exports = base / "exports"
    for path in (base, state, telemetry, exports):
        path.mkdir(parents=True, exist_ok=True)
    return {"base": base, "state": state, "telemetry": telemetry, "exports": exports}
