from __future__ import annotations

from datetime import UTC, datetime

import pytest

from questbox.models import Progress, Reward, RewardLimit
from questbox.rewards import RewardPurchaseError, is_limit_reached, next_reward, purchase_reward

WEDNESDAY = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)


def _reward(limit_type: str, count: int | None, cost: int = 10) -> Reward:
    return Reward(id=f"{limit_type}_reward", name="Reward", cost=cost, limit=RewardLimit(type=limit_type, count=count))


def test_daily_limit_round_trip() -> None:
    reward = _reward("daily", 2)
    progress = Progress(xp=100)

    progress = purchase_reward(reward, progress, WEDNESDAY)
    assert not is_limit_reached(reward, progress, WEDNESDAY)
    progress = purchase_reward(reward, progress, WEDNESDAY)
    assert is_limit_reached(reward, progress, WEDNESDAY)
    assert progress.xp == 80
    assert progress.purchased_rewards[reward.id] == ["2026-03-04", "2026-03-04"]

    thursday = datetime(2026, 3, 5, 8, 0, tzinfo=UTC)
    assert not is_limit_reached(reward, progress, thursday)


def test_limit_reached_purchase_is_rejected() -> None:
    reward = _reward("daily", 1)
    progress = purchase_reward(reward, Progress(xp=100), WEDNESDAY)
    with pytest.raises(RewardPurchaseError) as excinfo:
        purchase_reward(reward, progress, WEDNESDAY)
    assert excinfo.value.code == "REWARD_LIMIT_REACHED"
    assert excinfo.value.to_dict()["limit_type"] == "daily"


def test_weekly_window_starts_on_sunday() -> None:
    reward = _reward("weekly", 1)
    sunday_purchase = Progress(purchased_rewards={reward.id: ["2026-03-01"]})
    saturday_purchase = Progress(purchased_rewards={reward.id: ["2026-02-28"]})
    assert is_limit_reached(reward, sunday_purchase, WEDNESDAY)
    assert not is_limit_reached(reward, saturday_purchase, WEDNESDAY)


def test_monthly_window_compares_year_and_month() -> None:
    reward = _reward("monthly", 1)
    assert is_limit_reached(reward, Progress(purchased_rewards={reward.id: ["2026-03-01"]}), WEDNESDAY)
    assert not is_limit_reached(reward, Progress(purchased_rewards={reward.id: ["2026-02-27"]}), WEDNESDAY)
    assert not is_limit_reached(reward, Progress(purchased_rewards={reward.id: ["2025-03-04"]}), WEDNESDAY)


def test_unlimited_rewards_never_reach_a_limit() -> None:
    progress = Progress(purchased_rewards={"none_reward": ["2026-03-04"] * 10, "daily_reward": ["2026-03-04"] * 3})
    assert not is_limit_reached(_reward("none", None), progress, WEDNESDAY)
    assert not is_limit_reached(_reward("daily", None), progress, WEDNESDAY)
    assert not is_limit_reached(_reward("daily", 0), progress, WEDNESDAY)


def test_insufficient_xp_is_rejected_without_mutation() -> None:
    reward = _reward("none", None, cost=50)
    progress = Progress(xp=49)
    with pytest.raises(RewardPurchaseError) as excinfo:
        purchase_reward(reward, progress, WEDNESDAY)
    assert excinfo.value.code == "REWARD_INSUFFICIENT_XP"
    assert progress.xp == 49
    assert progress.purchased_rewards == {}


def test_next_reward_is_cheapest_unaffordable() -> None:
    rewards = [_reward("none", None, cost=300), _reward("daily", 1, cost=120), _reward("weekly", 1, cost=40)]
    upcoming = next_reward(rewards, Progress(xp=100))
    assert upcoming is not None and upcoming.cost == 120
    assert next_reward(rewards, Progress(xp=1000)) is None
