from __future__ import annotations

from datetime import UTC, datetime, timedelta

from questbox.availability import available_quests, completed_today_quests
from questbox.models import DiminishingReturns, Progress, StreakBonus, Task, TimerState, XPPolicy
from questbox.policy import process_task_completion
from questbox.timers import pause_timer, reset_timer, start_timer, timer_elapsed_ms, timer_remaining_seconds

WEDNESDAY = datetime(2026, 3, 4, 12, 0, tzinfo=UTC)
CATALOG = [
    Task(id="bed", name="Bed", description="", xp=10, repeatable="daily"),
    Task(id="room", name="Room", description="", xp=40, repeatable="weekly"),
    Task(id="car", name="Car", description="", xp=100, repeatable="none"),
    Task(id="reading", name="Reading", description="", xp=30, repeatable="daily", timer=25),
]
POLICY = XPPolicy(
    xp_per_level=500,
    daily_xp_cap=200,
    streak_bonus=StreakBonus(days=3, multiplier=1.5),
    diminishing_returns=DiminishingReturns(after_task_count=5, reduction_factor=0.5),
)


def _ids(tasks: list[Task]) -> list[str]:
    return [task.id for task in tasks]


def test_fresh_progress_has_everything_available_in_catalog_order() -> None:
    assert _ids(available_quests(CATALOG, Progress(), WEDNESDAY)) == ["bed", "room", "car", "reading"]
    assert completed_today_quests(CATALOG, Progress(), WEDNESDAY) == []


def test_daily_quest_returns_the_next_day() -> None:
    progress = Progress(daily_completions={"2026-03-04": ["bed"]})
    assert "bed" not in _ids(available_quests(CATALOG, progress, WEDNESDAY))
    assert _ids(completed_today_quests(CATALOG, progress, WEDNESDAY)) == ["bed"]
    assert "bed" in _ids(available_quests(CATALOG, progress, WEDNESDAY + timedelta(days=1)))


def test_weekly_quest_returns_after_the_week_rolls_over() -> None:
    progress = Progress(daily_completions={"2026-03-01": ["room"]})
    assert "room" not in _ids(available_quests(CATALOG, progress, WEDNESDAY))
    saturday = datetime(2026, 3, 7, 12, 0, tzinfo=UTC)
    next_sunday = datetime(2026, 3, 8, 12, 0, tzinfo=UTC)
    assert "room" not in _ids(available_quests(CATALOG, progress, saturday))
    assert "room" in _ids(available_quests(CATALOG, progress, next_sunday))


def test_one_time_quest_disappears_permanently() -> None:
    progress = process_task_completion(CATALOG[2], Progress(), POLICY, now=WEDNESDAY)
    for offset in (0, 1, 30, 400):
        assert "car" not in _ids(available_quests(CATALOG, progress, WEDNESDAY + timedelta(days=offset)))


def test_unknown_repeatable_value_stays_available() -> None:
    odd = Task(id="odd", name="Odd", description="", xp=5, repeatable="hourly")
    progress = Progress(daily_completions={"2026-03-04": ["odd"]})
    assert _ids(available_quests([odd], progress, WEDNESDAY)) == ["odd"]


def test_timer_start_pause_resume_reset() -> None:
    task = CATALOG[3]
    progress = start_timer(Progress(), "reading", WEDNESDAY)
    assert progress.active_timers["reading"].running
    assert start_timer(progress, "reading", WEDNESDAY + timedelta(minutes=5)) is progress

    paused = pause_timer(progress, "reading", WEDNESDAY + timedelta(minutes=10))
    state = paused.active_timers["reading"]
    assert not state.running
    assert state.elapsed_before_pause == 10 * 60_000
    assert timer_elapsed_ms(state, WEDNESDAY + timedelta(hours=2)) == 10 * 60_000
    assert timer_remaining_seconds(task, state, WEDNESDAY) == 15 * 60

    resumed = start_timer(paused, "reading", WEDNESDAY + timedelta(hours=1))
    assert timer_elapsed_ms(resumed.active_timers["reading"], WEDNESDAY + timedelta(hours=1, minutes=5)) == 15 * 60_000

    assert "reading" not in reset_timer(resumed, "reading").active_timers
    assert "reading" in progress.active_timers


def test_remaining_seconds_never_negative() -> None:
    state = TimerState(start_time=None, elapsed_before_pause=60 * 60_000)
    assert timer_remaining_seconds(CATALOG[3], state, WEDNESDAY) == 0.0
    assert timer_remaining_seconds(CATALOG[0], state, WEDNESDAY) is None
