from __future__ import annotations

from datetime import datetime
from typing import Sequence

from .clock import day_string, local_now, week_days
from .models import Progress, Task


def available_quests(catalog: Sequence[Task], progress: Progress, now: datetime | None = None) -> list[Task]:
    """Tasks that can still be completed today, in catalog order."""

    current = now or local_now()
    today = day_string(current)
    todays_ids = set(progress.daily_completions.get(today, []))
    week_ids = {
        task_id for day in week_days(current.date()) for task_id in progress.daily_completions.get(day, [])
    }
    ever_ids = {task_id for ids in progress.daily_completions.values() for task_id in ids}

    available: list[Task] = []
    for task in catalog:
        if task.repeatable == "daily" and task.id in todays_ids:
            continue
        if task.repeatable == "weekly" and task.id in week_ids:
            continue
        if task.repeatable == "none" and task.id in ever_ids:
            continue
        available.append(task)
    return available


def completed_today_quests(catalog: Sequence[Task], progress: Progress, now: datetime | None = None) -> list[Task]:
    today = day_string(now or local_now())
    todays_ids = set(progress.daily_completions.get(today, []))
    return [task for task in catalog if task.id in todays_ids]
