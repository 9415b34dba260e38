from __future__ import annotations

"""QuestBox application service: profile flows, persistence and audit events."""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .availability import available_quests, completed_today_quests
from .catalog import (
    Catalog,
    CatalogStore,
    create_custom_reward,
    validate_generated_reward,
    validate_generated_task,
)
from .clock import day_string, ensure_aware, local_now, now_iso
from .config import AppConfig, load_config
from .models import AllProgress, Profile, Progress, Reward, Task
from .paths import ensure_home_dirs, questbox_home
from .policy import calculate_level, earned_on, last_award, process_task_completion
from .rewards import RewardPurchaseError, is_limit_reached, next_reward, purchase_reward, purchases_in_window
from .security import require_pin
from .store import FileStorage, ProgressStore, parse_all_progress
from .telemetry import TelemetryLogger, parse_range
from .timers import pause_timer, reset_timer, start_timer, timer_elapsed_ms, timer_remaining_seconds

_LOGGER = logging.getLogger(__name__)

RECENT_HISTORY_LIMIT = 10


class QuestUnavailableError(ValueError):
    """Structured rejection for quests that cannot be completed or timed right now."""

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


def _detail_hash(message: str) -> str:
    return hashlib.sha256(message.encode("utf-8")).hexdigest()


@dataclass
class QuestBoxService:
    """In-memory progress snapshot for every profile, persisted after each mutation."""

    home: Path
    dirs: dict[str, Path]
    config: AppConfig
    store: ProgressStore
    catalog_store: CatalogStore
    catalog: Catalog
    telemetry: TelemetryLogger
    progress: AllProgress

    @classmethod
    def create(cls, config_dir: Path | None = None, home: Path | None = None) -> "QuestBoxService":
        """Load configuration, stored progress and the catalog, then log startup."""

        home = home or questbox_home()
        dirs = ensure_home_dirs(home)
        config = load_config(config_dir)
        storage = FileStorage(dirs["state"])
        store = ProgressStore(storage)
        catalog_store = CatalogStore(storage)
        telemetry = TelemetryLogger(events_path=dirs["telemetry"] / "events.jsonl")
        service = cls(
            home=home,
            dirs=dirs,
            config=config,
            store=store,
            catalog_store=catalog_store,
            catalog=catalog_store.load(config),
            telemetry=telemetry,
            progress=store.load(config.profiles),
        )
        if store.last_load_status == "fallback":
            service._emit_event(
                "store.load_fallback",
                actor="system",
                actor_id="system:store",
                source="cli",
                data={"error_count": len(store.last_load_errors), "errors": store.last_load_errors[:5]},
            )
        service._emit_event(
            "app.started",
            actor="system",
            actor_id="system:questbox",
            source="cli",
            data={
                "home_path_hash": _detail_hash(str(home)),
                "profile_count": len(config.profiles),
                "task_count": len(service.catalog.tasks),
                "reward_count": len(service.catalog.rewards),
                "load_status": store.last_load_status,
            },
        )
        return service

    def _emit_event(
        self,
        event_type: str,
        *,
        actor: str,
        actor_id: str | None,
        source: str,
        data: dict[str, Any],
        trace_id: str | None = None,
    ) -> None:
        self.telemetry.log_event(
            event_type,
            actor=actor,
            actor_id=actor_id,
            source=source,
            data=data,
            trace_id=trace_id,
        )

    def _profile(self, profile_id: str) -> Profile:
        return self.config.profile(profile_id)

    def _profile_now(self, profile: Profile, now: datetime | None) -> datetime:
        if now is None:
            return local_now(profile.timezone)
        current = ensure_aware(now)
        if profile.timezone:
            try:
                return current.astimezone(ZoneInfo(profile.timezone))
            except ZoneInfoNotFoundError:
                return current
        return current

    def _progress_for(self, profile_id: str) -> Progress:
        return self.progress.setdefault(profile_id, Progress())

    def _persist(self, *, source: str, actor_id: str | None, trace_id: str | None) -> bool:
        result = self.store.save(self.progress)
        if not result.ok:
            self._emit_event(
                "store.save_rejected",
                actor="system",
                actor_id=actor_id,
                source=source,
                trace_id=trace_id,
                data={"error_count": len(result.errors), "errors": result.errors[:5]},
            )
        return result.ok

    def _persist_catalog(self, *, source: str, actor_id: str | None, trace_id: str | None) -> bool:
        errors = self.catalog_store.save(self.catalog)
        if errors:
            self._emit_event(
                "store.save_rejected",
                actor="system",
                actor_id=actor_id,
                source=source,
                trace_id=trace_id,
                data={"target": "catalog", "error_count": len(errors), "errors": errors[:5]},
            )
        return not errors

    def _level(self, xp: int) -> dict[str, Any]:
        return calculate_level(xp, self.config.xp_policy.xp_per_level).to_dict()

    # Profiles and read views

    def list_profiles(self) -> list[dict[str, Any]]:
        rows = []
        for profile in self.config.profiles:
            progress = self._progress_for(profile.id)
            rows.append({**profile.to_public_dict(), "xp": progress.xp, "level": self._level(progress.xp)["level"]})
        return rows

    def get_progress(self, profile_id: str) -> dict[str, Any]:
        profile = self._profile(profile_id)
        return {"profile_id": profile.id, "progress": self._progress_for(profile.id).to_dict()}

    def _timer_view(self, task: Task, progress: Progress, now: datetime) -> dict[str, Any] | None:
        state = progress.active_timers.get(task.id)
        if state is None:
            return None
        return {
            "running": state.running,
            "elapsed_seconds": timer_elapsed_ms(state, now) // 1000,
            "remaining_seconds": timer_remaining_seconds(task, state, now),
        }

    def list_quests(self, profile_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Partition the catalog into quests available today and quests done today."""

        profile = self._profile(profile_id)
        current = self._profile_now(profile, now)
        progress = self._progress_for(profile.id)
        tasks = self.catalog.tasks
        return {
            "profile_id": profile.id,
            "date": day_string(current),
            "available": [
                {**task.to_dict(), "activeTimer": self._timer_view(task, progress, current)}
                for task in available_quests(tasks, progress, current)
            ],
            "completed_today": [task.to_dict() for task in completed_today_quests(tasks, progress, current)],
        }

    def list_rewards(self, profile_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        profile = self._profile(profile_id)
        current = self._profile_now(profile, now)
        progress = self._progress_for(profile.id)
        return {
            "profile_id": profile.id,
            "xp": progress.xp,
            "rewards": [
                {
                    **reward.to_dict(),
                    "affordable": progress.xp >= reward.cost,
                    "limitReached": is_limit_reached(reward, progress, current),
                    "purchasedInWindow": purchases_in_window(reward, progress, current),
                }
                for reward in self.catalog.rewards
            ],
        }

    def get_scorecard(self, profile_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Return level, streak, today's XP against the cap, next reward and recent history."""

        profile = self._profile(profile_id)
        current = self._profile_now(profile, now)
        progress = self._progress_for(profile.id)
        today = day_string(current)
        upcoming: Reward | None = next_reward(self.catalog.rewards, progress)
        history = [record.to_dict() for record in reversed(progress.completion_history)]
        return {
            "profile_id": profile.id,
            "name": profile.name,
            "generated_at": now_iso(current),
            "xp": progress.xp,
            "level": self._level(progress.xp),
            "streak": progress.streak,
            "streak_savers": progress.streak_savers,
            "last_completion_date": progress.last_completion_date,
            "xp_today": earned_on(progress, today),
            "daily_xp_cap": self.config.xp_policy.daily_xp_cap,
            "next_reward": None
            if upcoming is None
            else {"id": upcoming.id, "name": upcoming.name, "cost": upcoming.cost, "xp_needed": upcoming.cost - progress.xp},
            "recent_history": history[:RECENT_HISTORY_LIMIT],
        }

    def leaderboard(self) -> list[dict[str, Any]]:
        rows = []
        for profile in self.config.profiles:
            progress = self.progress.get(profile.id)
            xp = progress.xp if progress is not None else 0
            rows.append({"id": profile.id, "name": profile.name, "xp": xp, "level": self._level(xp)["level"]})
        rows.sort(key=lambda row: -row["xp"])
        for index, row in enumerate(rows, start=1):
            row["rank"] = index
        return rows

    def export_progress(self, out_path: Path | None = None) -> dict[str, Any]:
        """Serialize every profile's progress; optionally write it to `out_path`."""

        payload = {profile_id: progress.to_dict() for profile_id, progress in self.progress.items()}
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        return payload

    def import_progress(
        self,
        payload: Any,
        *,
        confirm: bool = False,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Replace all progress with a previously exported document."""

        if not confirm:
            raise ValueError("Importing progress replaces every profile; pass confirm=True.")
        result = parse_all_progress(payload)
        if not result.ok or result.progress is None:
            _LOGGER.warning("Rejected progress import: %s", "; ".join(result.errors[:5]))
            raise ValueError(f"Progress document is invalid: {'; '.join(result.errors[:5])}")
        imported = result.progress
        for profile in self.config.profiles:
            imported.setdefault(profile.id, Progress())
        self.progress = imported
        saved = self._persist(source=source, actor_id=actor_id, trace_id=trace_id)
        self._emit_event(
            "progress.imported",
            actor="guardian",
            actor_id=actor_id,
            source=source,
            trace_id=trace_id,
            data={"profile_count": len(imported), "saved": saved},
        )
        return {"profile_ids": sorted(imported), "saved": saved}

    # Completions and timers

    def complete_task(
        self,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Award XP for one completion and return the summary shown to the profile."""

        profile = self._profile(profile_id)
        task = self.catalog.task(task_id)
        actor_id = actor_id or f"profile:{profile.id}"
        current = self._profile_now(profile, now)
        before = self._progress_for(profile.id)

        if task.id not in {item.id for item in available_quests(self.catalog.tasks, before, current)}:
            message = f"Quest {task.id!r} is not available ({task.repeatable}) for {profile.id!r} today."
            self._emit_event(
                "quest.rejected",
                actor="profile",
                actor_id=actor_id,
                source=source,
                trace_id=trace_id,
                data={"profile_id": profile.id, "task_id": task.id, "reason": "unavailable"},
            )
            raise QuestUnavailableError(
                "QUEST_UNAVAILABLE",
                message,
                task_id=task.id,
                repeatable=task.repeatable,
                date=day_string(current),
            )

        after = process_task_completion(task, before, self.config.xp_policy, self.catalog.tasks, current)
        self.progress[profile.id] = after
        saved = self._persist(source=source, actor_id=actor_id, trace_id=trace_id)

        xp_earned = last_award(after)
        today = day_string(current)
        level_before = calculate_level(before.xp, self.config.xp_policy.xp_per_level)
        level_after = calculate_level(after.xp, self.config.xp_policy.xp_per_level)
        summary = {
            "profile_id": profile.id,
            "task_id": task.id,
            "task_name": task.name,
            "date": today,
            "base_xp": task.xp,
            "xp_earned": xp_earned,
            "total_xp": after.xp,
            "xp_today": earned_on(after, today),
            "daily_cap_reached": earned_on(after, today) >= self.config.xp_policy.daily_xp_cap,
            "streak": after.streak,
            "level": level_after.to_dict(),
            "level_up": level_after.level > level_before.level,
            "saved": saved,
        }
        self._emit_event(
            "quest.completed",
            actor="profile",
            actor_id=actor_id,
            source=source,
            trace_id=trace_id,
            data={
                "profile_id": profile.id,
                "task_id": task.id,
                "xp_earned": xp_earned,
                "base_xp": task.xp,
                "streak": after.streak,
                "level": level_after.level,
                "level_up": summary["level_up"],
            },
        )
        return summary

    def _timed_task(self, task_id: str) -> Task:
        task = self.catalog.task(task_id)
        if not task.timer:
            raise QuestUnavailableError("TIMER_NOT_SUPPORTED", f"Quest {task.id!r} has no timer.", task_id=task.id)
        return task

    def _update_timer(
        self,
        action: str,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None,
        source: str,
        actor_id: str | None,
        trace_id: str | None,
    ) -> dict[str, Any]:
        profile = self._profile(profile_id)
        task = self._timed_task(task_id)
        actor_id = actor_id or f"profile:{profile.id}"
        current = self._profile_now(profile, now)
        before = self._progress_for(profile.id)
        state = before.active_timers.get(task.id)

        if action == "start":
            after = start_timer(before, task.id, current)
        elif action == "resume":
            if state is None:
                raise QuestUnavailableError("TIMER_NOT_STARTED", f"No timer to resume for {task.id!r}.", task_id=task.id)
            after = start_timer(before, task.id, current)
        elif action == "pause":
            if state is None:
                raise QuestUnavailableError("TIMER_NOT_STARTED", f"No timer to pause for {task.id!r}.", task_id=task.id)
            after = pause_timer(before, task.id, current)
        else:
            after = reset_timer(before, task.id)

        changed = after is not before
        saved = True
        if changed:
            self.progress[profile.id] = after
            saved = self._persist(source=source, actor_id=actor_id, trace_id=trace_id)
            self._emit_event(
                "timer.updated",
                actor="profile",
                actor_id=actor_id,
                source=source,
                trace_id=trace_id,
                data={"profile_id": profile.id, "task_id": task.id, "action": action},
            )
        return {
            "profile_id": profile.id,
            "task_id": task.id,
            "action": action,
            "changed": changed,
            "timer": self._timer_view(task, after, current),
            "saved": saved,
        }

    def start_timer(
        self,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Start a quest timer; a paused timer resumes and a running one is left alone."""

        return self._update_timer(
            "start", profile_id, task_id, now=now, source=source, actor_id=actor_id, trace_id=trace_id
        )

    def pause_timer(
        self,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        return self._update_timer(
            "pause", profile_id, task_id, now=now, source=source, actor_id=actor_id, trace_id=trace_id
        )

    def resume_timer(
        self,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        return self._update_timer(
            "resume", profile_id, task_id, now=now, source=source, actor_id=actor_id, trace_id=trace_id
        )

    def reset_timer(
        self,
        profile_id: str,
        task_id: str,
        *,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        return self._update_timer(
            "reset", profile_id, task_id, now=now, source=source, actor_id=actor_id, trace_id=trace_id
        )

    # Rewards

    def purchase_reward(
        self,
        profile_id: str,
        reward_id: str,
        *,
        pin: str | None = None,
        now: datetime | None = None,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Spend XP on a reward; rewards needing approval require the profile PIN."""

        profile = self._profile(profile_id)
        reward = self.catalog.reward(reward_id)
        actor_id = actor_id or f"profile:{profile.id}"
        current = self._profile_now(profile, now)
        before = self._progress_for(profile.id)

        def _reject(code: str, message: str) -> None:
            self._emit_event(
                "reward.rejected",
                actor="profile",
                actor_id=actor_id,
                source=source,
                trace_id=trace_id,
                data={"profile_id": profile.id, "reward_id": reward.id, "code": code, "detail_hash": _detail_hash(message)},
            )

        if reward.needs_approval:
            if pin is None:
                error = RewardPurchaseError(
                    "REWARD_APPROVAL_REQUIRED",
                    "This reward needs guardian approval; a PIN is required.",
                    reward_id=reward.id,
                )
                _reject(error.code, error.message)
                raise error
            try:
                require_pin(profile, pin, "approve this reward")
            except PermissionError as exc:
                _reject("PIN_REJECTED", str(exc))
                raise

        try:
            after = purchase_reward(reward, before, current)
        except RewardPurchaseError as exc:
            _reject(exc.code, exc.message)
            raise

        self.progress[profile.id] = after
        saved = self._persist(source=source, actor_id=actor_id, trace_id=trace_id)
        self._emit_event(
            "reward.purchased",
            actor="guardian" if reward.needs_approval else "profile",
            actor_id=actor_id,
            source=source,
            trace_id=trace_id,
            data={
                "profile_id": profile.id,
                "reward_id": reward.id,
                "cost": reward.cost,
                "approved": reward.needs_approval,
            },
        )
        return {
            "profile_id": profile.id,
            "reward_id": reward.id,
            "reward_name": reward.name,
            "cost": reward.cost,
            "xp_remaining": after.xp,
            "date": day_string(current),
            "limit_reached": is_limit_reached(reward, after, current),
            "saved": saved,
        }

    # Resets

    def reset_profile(
        self,
        profile_id: str,
        pin: str | None,
        *,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Zero one profile's progress after a PIN check. Streak savers are kept."""

        profile = self._profile(profile_id)
        actor_id = actor_id or f"profile:{profile.id}"
        require_pin(profile, pin, "reset progress")
        before = self._progress_for(profile.id)
        self.progress[profile.id] = Progress(streak_savers=before.streak_savers)
        saved = self._persist(source=source, actor_id=actor_id, trace_id=trace_id)
        self._emit_event(
            "progress.reset",
            actor="guardian",
            actor_id=actor_id,
            source=source,
            trace_id=trace_id,
            data={"profile_id": profile.id, "xp_cleared": before.xp, "saved": saved},
        )
        return {"profile_id": profile.id, "progress": self.progress[profile.id].to_dict(), "saved": saved}

    def reset_all(
        self,
        *,
        confirm: bool = False,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        if not confirm:
            raise ValueError("Resetting all progress cannot be undone; pass confirm=True.")
        self.progress = self.store.reset_all(self.config.profiles)
        _LOGGER.info("Reset progress for %d profiles.", len(self.progress))
        self._emit_event(
            "progress.reset_all",
            actor="guardian",
            actor_id=actor_id or "guardian:unknown",
            source=source,
            trace_id=trace_id,
            data={"profile_count": len(self.progress)},
        )
        return {"profile_ids": sorted(self.progress), "reset": True}

    # Catalog

    def _catalog_updated(
        self,
        action: str,
        item_id: str,
        *,
        actor: str,
        source: str,
        actor_id: str | None,
        trace_id: str | None,
    ) -> bool:
        saved = self._persist_catalog(source=source, actor_id=actor_id, trace_id=trace_id)
        self._emit_event(
            "catalog.updated",
            actor=actor,
            actor_id=actor_id,
            source=source,
            trace_id=trace_id,
            data={"action": action, "item_id": item_id, "saved": saved},
        )
        return saved

    def add_generated_task(
        self,
        payload: Any,
        *,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Validate generator output and list it first in the quest catalog."""

        task = self.catalog.add_task(validate_generated_task(payload))
        saved = self._catalog_updated(
            "add_generated_task", task.id, actor="system", source=source, actor_id=actor_id, trace_id=trace_id
        )
        return {"task": task.to_dict(), "saved": saved}

    def add_generated_reward(
        self,
        payload: Any,
        *,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        reward = self.catalog.add_reward(validate_generated_reward(payload))
        saved = self._catalog_updated(
            "add_generated_reward", reward.id, actor="system", source=source, actor_id=actor_id, trace_id=trace_id
        )
        return {"reward": reward.to_dict(), "saved": saved}

    def add_custom_reward(
        self,
        profile_id: str,
        payload: dict[str, Any],
        pin: str | None,
        *,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        profile = self._profile(profile_id)
        require_pin(profile, pin, "add a custom reward")
        reward = self.catalog.add_reward(create_custom_reward(payload))
        saved = self._catalog_updated(
            "add_custom_reward",
            reward.id,
            actor="guardian",
            source=source,
            actor_id=actor_id or f"profile:{profile.id}",
            trace_id=trace_id,
        )
        return {"reward": reward.to_dict(), "saved": saved}

    def update_task(
        self,
        profile_id: str,
        task_id: str,
        changes: dict[str, Any],
        pin: str | None,
        *,
        source: str = "cli",
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        profile = self._profile(profile_id)
        require_pin(profile, pin, "edit a quest")
        task = self.catalog.update_task(task_id, changes)
        saved = self._catalog_updated(
            "update_task",
            task.id,
            actor="guardian",
            source=source,
            actor_id=actor_id or f"profile:{profile.id}",
            trace_id=trace_id,
        )
        return {"task": task.to_dict(), "saved": saved}

    def list_catalog(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.catalog.tasks],
            "rewards": [reward.to_dict() for reward in self.catalog.rewards],
        }

    # Telemetry

    def telemetry_status(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "path": str(self.telemetry.events_path),
            "event_count": self.telemetry.count_events(),
        }

    def telemetry_export(self, range_value: str, out_path: Path | None = None, actor_id: str | None = None) -> dict[str, Any]:
        parse_range(range_value)
        return self.telemetry.export_summary(range_value=range_value, out_path=out_path, actor_id=actor_id)

    def telemetry_purge(self) -> dict[str, Any]:
        return {"purged": self.telemetry.purge(), "path": str(self.telemetry.events_path)}

