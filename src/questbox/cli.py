from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any
from uuid import uuid4

import uvicorn

from .api import create_app
from .config import ConfigError, validate_config_dir
from .service import QuestBoxService


def _service(config_dir: Path | None = None) -> QuestBoxService:
    return QuestBoxService.create(config_dir=config_dir)


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def _print_error(exc: Exception) -> None:
    to_dict = getattr(exc, "to_dict", None)
    if callable(to_dict):
        payload = to_dict()
    elif isinstance(exc, KeyError):
        payload = {"code": "NOT_FOUND", "message": str(exc.args[0]) if exc.args else "Not found"}
    elif isinstance(exc, PermissionError):
        payload = {"code": "PIN_REJECTED", "message": str(exc)}
    else:
        payload = {"code": "BAD_REQUEST", "message": str(exc)}
    print(json.dumps({"error": payload}, indent=2), file=sys.stderr)


def _read_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_validation(results: list[dict[str, Any]]) -> int:
    failed = False
    for result in results:
        print(f"[{result['status']}] {result['file']}")
        for error in result["errors"]:
            print(f"  - {error}")
        failed = failed or result["status"] != "PASS"
    return 1 if failed else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="QuestBox chore quests, XP and rewards")
    parser.add_argument("--config-dir", default=None, help="Directory holding tasks/rewards/profiles/xp_policy YAML")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)
    default_profile = os.environ.get("QUESTBOX_PROFILE") or None

    def add_profile(cmd: argparse.ArgumentParser) -> None:
        cmd.add_argument(
            "--profile",
            default=default_profile,
            required=default_profile is None,
            help="Profile id (defaults to QUESTBOX_PROFILE)",
        )

    sub.add_parser("profiles", help="List profiles with XP and level")

    quests_cmd = sub.add_parser("quests", help="List available and completed-today quests")
    add_profile(quests_cmd)

    rewards_cmd = sub.add_parser("rewards", help="List rewards with affordability and limits")
    add_profile(rewards_cmd)

    complete_cmd = sub.add_parser("complete", help="Complete a quest and earn XP")
    complete_cmd.add_argument("task_id")
    add_profile(complete_cmd)

    timer_cmd = sub.add_parser("timer", help="Quest timer operations")
    timer_cmd.add_argument("action", choices=["start", "pause", "resume", "reset"])
    timer_cmd.add_argument("task_id")
    add_profile(timer_cmd)

    purchase_cmd = sub.add_parser("purchase", help="Spend XP on a reward")
    purchase_cmd.add_argument("reward_id")
    purchase_cmd.add_argument("--pin", default=None, help="Guardian PIN for rewards that need approval")
    add_profile(purchase_cmd)

    scorecard_cmd = sub.add_parser("scorecard", help="Print level, streak and recent history")
    add_profile(scorecard_cmd)

    sub.add_parser("leaderboard", help="Rank profiles by XP")

    reset_cmd = sub.add_parser("reset", help="Reset one profile's progress (PIN required)")
    reset_cmd.add_argument("--pin", required=True)
    add_profile(reset_cmd)

    reset_all_cmd = sub.add_parser("reset-all", help="Erase stored progress for every profile")
    reset_all_cmd.add_argument("--confirm", action="store_true", help="Required; this cannot be undone")

    export_cmd = sub.add_parser("export", help="Export all progress as JSON")
    export_cmd.add_argument("--out", default=None, help="Optional output JSON path")

    import_cmd = sub.add_parser("import", help="Replace all progress from an exported JSON file")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--confirm", action="store_true", help="Required; replaces every profile")

    validate_cmd = sub.add_parser("validate-config", help="Validate configuration YAML against schemas")
    validate_cmd.add_argument("--dir", default=None, help="Directory to validate (defaults to --config-dir)")

    catalog_cmd = sub.add_parser("catalog", help="Quest and reward catalog operations")
    catalog_sub = catalog_cmd.add_subparsers(dest="catalog_command", required=True)
    catalog_sub.add_parser("list", help="List every quest and reward")
    catalog_add_reward = catalog_sub.add_parser("add-reward", help="Create a custom reward (PIN required)")
    catalog_add_reward.add_argument("--name", required=True)
    catalog_add_reward.add_argument("--description", default="")
    catalog_add_reward.add_argument("--cost", type=int, required=True)
    catalog_add_reward.add_argument("--limit-type", default="none", choices=["daily", "weekly", "monthly", "none"])
    catalog_add_reward.add_argument("--limit-count", type=int, default=None)
    catalog_add_reward.add_argument("--needs-approval", action="store_true")
    catalog_add_reward.add_argument("--pin", required=True)
    add_profile(catalog_add_reward)
    catalog_update = catalog_sub.add_parser("update-task", help="Edit a quest (PIN required)")
    catalog_update.add_argument("task_id")
    catalog_update.add_argument("--name", default=None)
    catalog_update.add_argument("--description", default=None)
    catalog_update.add_argument("--xp", type=int, default=None)
    catalog_update.add_argument("--difficulty", default=None, choices=["easy", "medium", "hard"])
    catalog_update.add_argument("--pin", required=True)
    add_profile(catalog_update)
    catalog_import = catalog_sub.add_parser("import-generated", help="Add generator output from a JSON file")
    catalog_import.add_argument("kind", choices=["task", "reward"])
    catalog_import.add_argument("path", help="JSON object, or a list of objects")

    telemetry_cmd = sub.add_parser("telemetry", help="Local event log operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_sub.add_parser("status", help="Show event log path and event count")
    telemetry_export = telemetry_sub.add_parser("export", help="Export aggregated event summary")
    telemetry_export.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    telemetry_export.add_argument("--out", default=None, help="Optional output JSON path")
    telemetry_export.add_argument("--actor-id", default=None, help="Optional actor id filter")
    telemetry_sub.add_parser("purge", help="Delete the local event log")

    api_cmd = sub.add_parser("api", help="Run local API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config_dir = Path(args.config_dir).expanduser() if args.config_dir else None

    if args.command == "validate-config":
        target = Path(args.dir).expanduser() if args.dir else config_dir
        return _print_validation(validate_config_dir(target))

    try:
        service = _service(config_dir)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2
    trace_id = f"cli:{uuid4()}"
    context = {"source": "cli", "trace_id": trace_id}

    try:
        if args.command == "profiles":
            _print(service.list_profiles())
            return 0

        if args.command == "quests":
            _print(service.list_quests(args.profile))
            return 0

        if args.command == "rewards":
            _print(service.list_rewards(args.profile))
            return 0

        if args.command == "complete":
            _print(service.complete_task(args.profile, args.task_id, **context))
            return 0

        if args.command == "timer":
            handlers = {
                "start": service.start_timer,
                "pause": service.pause_timer,
                "resume": service.resume_timer,
                "reset": service.reset_timer,
            }
            _print(handlers[args.action](args.profile, args.task_id, **context))
            return 0

        if args.command == "purchase":
            _print(service.purchase_reward(args.profile, args.reward_id, pin=args.pin, **context))
            return 0

        if args.command == "scorecard":
            _print(service.get_scorecard(args.profile))
            return 0

        if args.command == "leaderboard":
            _print(service.leaderboard())
            return 0

        if args.command == "reset":
            _print(service.reset_profile(args.profile, args.pin, **context))
            return 0

        if args.command == "reset-all":
            _print(service.reset_all(confirm=args.confirm, **context))
            return 0

        if args.command == "export":
            _print(service.export_progress(Path(args.out) if args.out else None))
            return 0

        if args.command == "import":
            _print(service.import_progress(_read_json(args.path), confirm=args.confirm, **context))
            return 0

        if args.command == "catalog":
            if args.catalog_command == "list":
                _print(service.list_catalog())
                return 0
            if args.catalog_command == "add-reward":
                limit: dict[str, Any] = {"type": args.limit_type}
                if args.limit_count is not None:
                    limit["count"] = args.limit_count
                payload = {
                    "name": args.name,
                    "description": args.description,
                    "cost": args.cost,
                    "limit": limit,
                    "needsApproval": args.needs_approval,
                }
                _print(service.add_custom_reward(args.profile, payload, args.pin, **context))
                return 0
            if args.catalog_command == "update-task":
                changes = {
                    key: value
                    for key, value in {
                        "name": args.name,
                        "description": args.description,
                        "xp": args.xp,
                        "difficulty": args.difficulty,
                    }.items()
                    if value is not None
                }
                _print(service.update_task(args.profile, args.task_id, changes, args.pin, **context))
                return 0
            if args.catalog_command == "import-generated":
                document = _read_json(args.path)
                items = document if isinstance(document, list) else [document]
                add = service.add_generated_task if args.kind == "task" else service.add_generated_reward
                _print([add(item, **context) for item in items])
                return 0

        if args.command == "telemetry":
            if args.telemetry_command == "status":
                _print(service.telemetry_status())
                return 0
            if args.telemetry_command == "export":
                out_path = Path(args.out) if args.out else None
                _print(service.telemetry_export(args.range, out_path, actor_id=args.actor_id))
                return 0
            if args.telemetry_command == "purge":
                _print(service.telemetry_purge())
                return 0
    except (KeyError, ValueError, PermissionError) as exc:
        _print_error(exc)
        return 1

    if args.command == "api":
        app = create_app(service)
        uvicorn.run(app, host=args.host, port=args.port, log_level="info")
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
