from __future__ import annotations

"""Wall-clock quest timers stored in `Progress.active_timers`."""

from dataclasses import replace
from datetime import datetime

from .clock import ensure_aware, local_now, now_iso, parse_instant
from .models import Progress, Task, TimerState


def timer_elapsed_ms(state: TimerState, now: datetime | None = None) -> int:
    elapsed = max(0, state.elapsed_before_pause)
    started = parse_instant(state.start_time)
    if started is None:
        return elapsed
    current = ensure_aware(now or local_now())
    running_ms = int((current - started).total_seconds() * 1000)
    return elapsed + max(0, running_ms)


def timer_expired(task: Task, state: TimerState, now: datetime | None = None) -> bool:
    if not task.timer:
        return False
    return timer_elapsed_ms(state, now) > task.timer * 60_000


def timer_remaining_seconds(task: Task, state: TimerState, now: datetime | None = None) -> float | None:
    if not task.timer:
        return None
    remaining_ms = task.timer * 60_000 - timer_elapsed_ms(state, now)
    return max(0.0, remaining_ms / 1000)


def _with_timers(progress: Progress, timers: dict[str, TimerState]) -> Progress:
    return replace(progress, active_timers=timers)


def start_timer(progress: Progress, task_id: str, now: datetime | None = None) -> Progress:
    """Start a timer, or resume it when paused. A running timer is left alone."""

    current = progress.active_timers.get(task_id)
    if current is not None and current.running:
        return progress
    elapsed = current.elapsed_before_pause if current is not None else 0
    timers = dict(progress.active_timers)
    timers[task_id] = TimerState(start_time=now_iso(now or local_now()), elapsed_before_pause=elapsed)
    return _with_timers(progress, timers)


def pause_timer(progress: Progress, task_id: str, now: datetime | None = None) -> Progress:
    current = progress.active_timers.get(task_id)
    if current is None or not current.running:
        return progress
    timers = dict(progress.active_timers)
    timers[task_id] = TimerState(start_time=None, elapsed_before_pause=timer_elapsed_ms(current, now))
    return _with_timers(progress, timers)


def reset_timer(progress: Progress, task_id: str) -> Progress:
    if task_id not in progress.active_timers:
        return progress
    timers = {key: value for key, value in progress.active_timers.items() if key != task_id}
    return _with_timers(progress, timers)
