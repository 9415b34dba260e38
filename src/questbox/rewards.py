from __future__ import annotations

"""Reward redemption windows and the purchase transition."""

from dataclasses import replace
from datetime import datetime
from typing import Any

from .clock import day_string, local_now, parse_day, week_start
from .models import Progress, Reward


class RewardPurchaseError(ValueError):
    """Structured purchase rejection for stable CLI/API responses."""

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


def _in_window(limit_type: str, purchase_day: str, now: datetime) -> bool:
    try:
        purchased = parse_day(purchase_day)
    except ValueError:
        return False
    today = now.date()
    if limit_type == "daily":
        return purchased == today
    if limit_type == "weekly":
        return purchased >= week_start(today)
    if limit_type == "monthly":
        return purchased.year == today.year and purchased.month == today.month
    return False


def purchases_in_window(reward: Reward, progress: Progress, now: datetime | None = None) -> int:
    current = now or local_now()
    purchases = progress.purchased_rewards.get(reward.id, [])
    return sum(1 for day in purchases if _in_window(reward.limit.type, day, current))


def is_limit_reached(reward: Reward, progress: Progress, now: datetime | None = None) -> bool:
    limit = reward.limit
    if limit.type == "none" or not limit.count:
        return False
    purchases = progress.purchased_rewards.get(reward.id, [])
    if len(purchases) < limit.count:
        return False
    return purchases_in_window(reward, progress, now) >= limit.count


def can_afford(reward: Reward, progress: Progress) -> bool:
    return progress.xp >= reward.cost


def purchase_reward(reward: Reward, progress: Progress, now: datetime | None = None) -> Progress:
    """Debit the reward cost and record today's purchase."""

    current = now or local_now()
    if not can_afford(reward, progress):
        raise RewardPurchaseError(
            "REWARD_INSUFFICIENT_XP",
            f"Reward costs {reward.cost} XP; only {progress.xp} XP available.",
            reward_id=reward.id,
            cost=reward.cost,
            xp=progress.xp,
        )
    if is_limit_reached(reward, progress, current):
        raise RewardPurchaseError(
            "REWARD_LIMIT_REACHED",
            f"Reward limit reached ({reward.limit.count} per {reward.limit.type} window).",
            reward_id=reward.id,
            limit_type=reward.limit.type,
            limit_count=reward.limit.count,
        )
    purchased = dict(progress.purchased_rewards)
    purchased[reward.id] = [*purchased.get(reward.id, []), day_string(current)]
    return replace(progress, xp=progress.xp - reward.cost, purchased_rewards=purchased)


def next_reward(rewards: list[Reward], progress: Progress) -> Reward | None:
    """Cheapest reward the profile cannot afford yet."""

    pending = sorted((reward for reward in rewards if reward.cost > progress.xp), key=lambda reward: reward.cost)
    return pending[0] if pending else None
