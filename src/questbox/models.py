from __future__ import annotations

"""Catalog, profile, policy and progress records.

Documents on disk keep the camelCase keys of the stored format; the dataclasses
expose snake_case attributes and convert at the `from_dict`/`to_dict` seam.
"""

from dataclasses import dataclass, field
from typing import Any

REPEAT_VALUES = ("daily", "weekly", "none")
DIFFICULTY_VALUES = ("easy", "medium", "hard")
LIMIT_TYPES = ("daily", "weekly", "monthly", "none")
DEFAULT_XP_PENALTY_FACTOR = 0.5


def _optional_float(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


@dataclass(frozen=True)
class Task:
    id: str
    name: str
    description: str
    xp: int
    repeatable: str
    difficulty: str | None = None
    timer: float | None = None  # minutes
    xp_penalty_factor: float | None = None

    @property
    def penalty_factor(self) -> float:
        if self.xp_penalty_factor is None:
            return DEFAULT_XP_PENALTY_FACTOR
        return self.xp_penalty_factor

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Task":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            description=str(payload.get("description", "")),
            xp=int(payload["xp"]),
            repeatable=str(payload.get("repeatable", "none")),
            difficulty=payload.get("difficulty"),
            timer=_optional_float(payload.get("timer")),
            xp_penalty_factor=_optional_float(payload.get("xpPenaltyFactor")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "xp": self.xp,
            "repeatable": self.repeatable,
        }
        if self.difficulty is not None:
            payload["difficulty"] = self.difficulty
        if self.timer is not None:
            payload["timer"] = self.timer
        if self.xp_penalty_factor is not None:
            payload["xpPenaltyFactor"] = self.xp_penalty_factor
        return payload


@dataclass(frozen=True)
class RewardLimit:
    type: str = "none"
    count: int | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "RewardLimit":
        payload = payload or {}
        count = payload.get("count")
        return cls(type=str(payload.get("type", "none")), count=int(count) if count is not None else None)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.count is not None:
            payload["count"] = self.count
        return payload


@dataclass(frozen=True)
class Reward:
    id: str
    name: str
    cost: int
    limit: RewardLimit = field(default_factory=RewardLimit)
    needs_approval: bool = False
    description: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Reward":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            cost=int(payload["cost"]),
            limit=RewardLimit.from_dict(payload.get("limit")),
            needs_approval=bool(payload.get("needsApproval", False)),
            description=payload.get("description"),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description is not None:
            payload["description"] = self.description
        payload["cost"] = self.cost
        payload["limit"] = self.limit.to_dict()
        payload["needsApproval"] = self.needs_approval
        return payload


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    pin: str
    timezone: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Profile":
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            pin=str(payload["pin"]),
            timezone=payload.get("timezone"),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Profile view without the PIN."""

        return {"id": self.id, "name": self.name, "timezone": self.timezone}


@dataclass(frozen=True)
class StreakBonus:
    days: int
    multiplier: float


@dataclass(frozen=True)
class DiminishingReturns:
    after_task_count: int
    reduction_factor: float


@dataclass(frozen=True)
class XPPolicy:
    xp_per_level: int
    daily_xp_cap: int
    streak_bonus: StreakBonus
    diminishing_returns: DiminishingReturns
    no_streak_reduction_factor: float | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "XPPolicy":
        bonus = payload.get("streakBonus", {})
        diminishing = payload.get("diminishingReturns", {})
        return cls(
            xp_per_level=int(payload["xpPerLevel"]),
            daily_xp_cap=int(payload["dailyXpCap"]),
            streak_bonus=StreakBonus(days=int(bonus["days"]), multiplier=float(bonus["multiplier"])),
            diminishing_returns=DiminishingReturns(
                after_task_count=int(diminishing["afterTaskCount"]),
                reduction_factor=float(diminishing["reductionFactor"]),
            ),
            no_streak_reduction_factor=_optional_float(payload.get("noStreakReductionFactor")),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "xpPerLevel": self.xp_per_level,
            "dailyXpCap": self.daily_xp_cap,
            "streakBonus": {"days": self.streak_bonus.days, "multiplier": self.streak_bonus.multiplier},
            "diminishingReturns": {
                "afterTaskCount": self.diminishing_returns.after_task_count,
                "reductionFactor": self.diminishing_returns.reduction_factor,
            },
        }
        if self.no_streak_reduction_factor is not None:
            payload["noStreakReductionFactor"] = self.no_streak_reduction_factor
        return payload


@dataclass(frozen=True)
class CompletionRecord:
    task_id: str
    task_name: str
    completion_date: str
    xp_earned: int

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CompletionRecord":
        return cls(
            task_id=str(payload["taskId"]),
            task_name=str(payload["taskName"]),
            completion_date=str(payload["completionDate"]),
            xp_earned=int(payload["xpEarned"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "taskName": self.task_name,
            "completionDate": self.completion_date,
            "xpEarned": self.xp_earned,
        }


@dataclass(frozen=True)
class TimerState:
    start_time: str | None = None  # ISO instant; None while paused
    elapsed_before_pause: int = 0  # milliseconds

    @property
    def running(self) -> bool:
        return self.start_time is not None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TimerState":
        return cls(
            start_time=payload.get("startTime"),
            elapsed_before_pause=int(payload.get("elapsedBeforePause", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"startTime": self.start_time, "elapsedBeforePause": self.elapsed_before_pause}


@dataclass
class Progress:
    xp: int = 0
    streak: int = 0
    last_completion_date: str | None = None
    daily_completions: dict[str, list[str]] = field(default_factory=dict)
    purchased_rewards: dict[str, list[str]] = field(default_factory=dict)
    streak_savers: int = 0
    completion_history: list[CompletionRecord] = field(default_factory=list)
    active_timers: dict[str, TimerState] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Progress":
        return cls(
            xp=int(payload.get("xp", 0)),
            streak=int(payload.get("streak", 0)),
            last_completion_date=payload.get("lastCompletionDate"),
            daily_completions={
                str(day): [str(task_id) for task_id in ids]
                for day, ids in (payload.get("dailyCompletions") or {}).items()
            },
            purchased_rewards={
                str(reward_id): [str(day) for day in days]
                for reward_id, days in (payload.get("purchasedRewards") or {}).items()
            },
            streak_savers=int(payload.get("streakSavers", 0)),
            completion_history=[CompletionRecord.from_dict(item) for item in payload.get("completionHistory") or []],
            active_timers={
                str(task_id): TimerState.from_dict(state)
                for task_id, state in (payload.get("activeTimers") or {}).items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "xp": self.xp,
            "streak": self.streak,
            "lastCompletionDate": self.last_completion_date,
            "dailyCompletions": {day: list(ids) for day, ids in self.daily_completions.items()},
            "purchasedRewards": {reward_id: list(days) for reward_id, days in self.purchased_rewards.items()},
            "streakSavers": self.streak_savers,
            "completionHistory": [record.to_dict() for record in self.completion_history],
            "activeTimers": {task_id: state.to_dict() for task_id, state in self.active_timers.items()},
        }


AllProgress = dict[str, Progress]
