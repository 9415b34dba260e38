from __future__ import annotations

"""XP policy engine: level math and the progress transition for one completion."""

import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Sequence

from .clock import day_string, local_now, parse_day, previous_day
from .models import CompletionRecord, Progress, Task, XPPolicy
from .timers import timer_expired


@dataclass(frozen=True)
class LevelInfo:
    level: int
    xp_in_level: int
    xp_to_next_level: int
    progress_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "xp_in_level": self.xp_in_level,
            "xp_to_next_level": self.xp_to_next_level,
            "progress_percent": self.progress_percent,
        }


def round_xp(value: float) -> int:
    """Round half away from zero for the non-negative XP domain (12.5 -> 13)."""

    return int(math.floor(value + 0.5))


def calculate_level(xp: int, xp_per_level: int) -> LevelInfo:
    if xp_per_level <= 0:
        return LevelInfo(level=1, xp_in_level=0, xp_to_next_level=0, progress_percent=0.0)
    level = xp // xp_per_level + 1
    xp_in_level = xp % xp_per_level
    return LevelInfo(
        level=level,
        xp_in_level=xp_in_level,
        xp_to_next_level=xp_per_level,
        progress_percent=100 * xp_in_level / xp_per_level,
    )


def streak_for_day(progress: Progress, today: str) -> int:
    last = progress.last_completion_date
    if last == today:
        return progress.streak
    if last is not None:
        try:
            if parse_day(last) == previous_day(parse_day(today)):
                return progress.streak + 1
        except ValueError:
            return 1
    return 1


def earned_on(progress: Progress, day: str) -> int:
    return sum(record.xp_earned for record in progress.completion_history if record.completion_date == day)


def modified_xp(
    task: Task,
    progress: Progress,
    policy: XPPolicy,
    *,
    completion_index: int,
    streak: int,
    now: datetime,
) -> int:
    """Apply timer penalty, diminishing returns and the streak modifier in order."""

    xp = task.xp

    timer = progress.active_timers.get(task.id)
    if task.timer and timer is not None and timer_expired(task, timer, now):
        xp = round_xp(xp * task.penalty_factor)

    diminishing = policy.diminishing_returns
    if completion_index >= diminishing.after_task_count:
        xp = round_xp(xp * diminishing.reduction_factor)

    bonus = policy.streak_bonus
    if bonus.days > 0 and streak >= bonus.days and streak % bonus.days == 0:
        xp = round_xp(xp * bonus.multiplier)
    elif streak <= 1 and policy.no_streak_reduction_factor is not None:
        xp = round_xp(xp * policy.no_streak_reduction_factor)

    return xp


def process_task_completion(
    task: Task,
    progress: Progress,
    policy: XPPolicy,
    all_tasks: Sequence[Task] | None = None,
    now: datetime | None = None,
) -> Progress:
    """Return the progress that results from completing `task` at `now`.

    `all_tasks` is accepted for call-site compatibility; the daily total comes
    from the recorded history, not from current task definitions. The input
    progress is never mutated.
    """

    current = now or local_now()
    today = day_string(current)
    todays_ids = progress.daily_completions.get(today, [])
    streak = streak_for_day(progress, today)

    raw_xp = modified_xp(
        task,
        progress,
        policy,
        completion_index=len(todays_ids),
        streak=streak,
        now=current,
    )
    remaining = policy.daily_xp_cap - earned_on(progress, today)
    awarded = max(0, min(raw_xp, remaining))

    daily_completions = dict(progress.daily_completions)
    daily_completions[today] = [*todays_ids, task.id]
    history = [
        *progress.completion_history,
        CompletionRecord(task_id=task.id, task_name=task.name, completion_date=today, xp_earned=awarded),
    ]
    timers = {task_id: state for task_id, state in progress.active_timers.items() if task_id != task.id}

    return replace(
        progress,
        xp=progress.xp + awarded,
        streak=streak,
        last_completion_date=today,
        daily_completions=daily_completions,
        completion_history=history,
        active_timers=timers,
    )


def last_award(progress: Progress) -> int:
    if not progress.completion_history:
        return 0
    return progress.completion_history[-1].xp_earned
