from __future__ import annotations

"""Audit trail for QuestBox: every award, purchase and reset as one JSONL line.

Events are scrubbed before they are written: control characters are dropped,
long strings are cut at `MAX_TEXT_LENGTH` and PIN-like keys are replaced. When
scrubbing changed anything a second `risk.flagged` event records how much.
"""

import json
import logging
import platform
import re
import unicodedata
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any, Iterable

_LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = frozenset(
    {
        "app.started",
        "quest.completed",
        "quest.rejected",
        "reward.purchased",
        "reward.rejected",
        "timer.updated",
        "progress.reset",
        "progress.reset_all",
        "progress.imported",
        "catalog.updated",
        "store.load_fallback",
        "store.save_rejected",
        "risk.flagged",
    }
)
VALID_ACTOR_KINDS = ("profile", "guardian", "system")
VALID_SOURCES = ("cli", "api")
PIN_KEYS = frozenset({"pin", "pin_hash", "candidate_pin"})
MAX_TEXT_LENGTH = 200
TOP_N = 10

_RANGE_UNITS = {"h": "hours", "d": "days", "w": "weeks"}
_RANGE_PATTERN = re.compile(r"^(\d+)([hdw])$")


def _stamp(value: datetime) -> str:
    return value.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _read_stamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed.astimezone(UTC) if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@lru_cache(maxsize=1)
def build_info() -> dict[str, str]:
    try:
        app_version = package_version("questbox")
    except PackageNotFoundError:
        app_version = "0.1.0"
    return {
        "app_version": app_version,
        "python_version": platform.python_version(),
        "platform": platform.platform(),
    }


@dataclass
class ScrubReport:
    redacted: int = 0
    truncated: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.redacted or self.truncated)


def _clean_text(value: str, report: ScrubReport) -> str:
    text = "".join(ch for ch in value if unicodedata.category(ch)[0] != "C").strip()
    if len(text) > MAX_TEXT_LENGTH:
        report.truncated += 1
        return text[:MAX_TEXT_LENGTH] + "...[truncated]"
    return text


def _scrub(value: Any, report: ScrubReport) -> Any:
    if isinstance(value, dict):
        cleaned: dict[str, Any] = {}
        for key, item in value.items():
            name = _clean_text(str(key), report)
            if name.lower() in PIN_KEYS:
                report.redacted += 1
                cleaned[name] = "[redacted]"
            else:
                cleaned[name] = _scrub(item, report)
        return cleaned
    if isinstance(value, (list, tuple)):
        return [_scrub(item, report) for item in value]
    if value is None or isinstance(value, (bool, int, float)):
        return value
    return _clean_text(str(value), report)


def scrub_event_data(data: Any) -> tuple[Any, ScrubReport]:
    """Return a JSON-safe copy of `data` and what had to be removed from it."""

    report = ScrubReport()
    return _scrub(data, report), report


def sanitize_actor_id(value: Any) -> str:
    if value is None:
        return "unknown"
    return _clean_text(str(value), ScrubReport()) or "unknown"


def actor_of(event_actor: Any, actor_id: Any | None = None) -> dict[str, str]:
    """Normalize an actor kind (or a stored `{kind, id}` mapping) for an event."""

    kind: Any = event_actor
    if isinstance(event_actor, dict):
        kind = event_actor.get("kind")
        actor_id = actor_id if actor_id is not None else event_actor.get("id")
    kind = str(kind or "").strip().lower()
    return {
        "kind": kind if kind in VALID_ACTOR_KINDS else "system",
        "id": sanitize_actor_id(actor_id),
    }


def parse_range(range_value: str) -> timedelta:
    """Parse export windows such as `24h`, `7d` or `2w`."""

    match = _RANGE_PATTERN.match(range_value.strip().lower())
    if match is None:
        raise ValueError(f"Invalid range {range_value!r}; use a count and unit such as 24h, 7d or 2w.")
    amount = int(match.group(1))
    if amount == 0:
        raise ValueError("Range must cover at least one hour.")
    return timedelta(**{_RANGE_UNITS[match.group(2)]: amount})


def _top(counter: Counter[str], key: str) -> list[dict[str, Any]]:
    ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{key: name, "count": count} for name, count in ranked[:TOP_N]]


@dataclass
class TelemetryLogger:
    """Append-only QuestBox event log stored at `events_path`."""

    events_path: Path
    build: dict[str, str] = field(default_factory=build_info)

    def __post_init__(self) -> None:
        self.events_path.parent.mkdir(parents=True, exist_ok=True)

    def _write(self, event: dict[str, Any]) -> None:
        line = json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(line + "\n")

    def _envelope(
        self,
        event_type: str,
        data: dict[str, Any],
        *,
        actor: str,
        actor_id: str | None,
        source: str,
        trace_id: str | None,
    ) -> dict[str, Any]:
        if event_type not in VALID_EVENT_TYPES:
            event_type, data = "risk.flagged", {"reason": "invalid_event_type", "requested_event_type": event_type}
        source = source.strip().lower() if isinstance(source, str) else ""
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _stamp(datetime.now(tz=UTC)),
            "event_type": event_type,
            "actor": actor_of(actor, actor_id),
            "source": source if source in VALID_SOURCES else "cli",
            "trace_id": trace_id,
            "build": self.build,
            "data": data,
        }

    def log_event(
        self,
        event_type: str,
        *,
        actor: str,
        source: str,
        data: dict[str, Any],
        actor_id: str | None = None,
        trace_id: str | None = None,
    ) -> None:
        """Record one event. Write failures are logged and never reach the caller."""

        scrubbed, report = scrub_event_data(data)
        if not isinstance(scrubbed, dict):
            scrubbed = {"value": scrubbed}
        context = {"actor_id": actor_id, "source": source, "trace_id": trace_id}
        events = [self._envelope(event_type, scrubbed, actor=actor, **context)]
        if report.changed:
            flag = {
                "reason": "telemetry_sanitized",
                "trigger_event_type": event_type,
                "fields_redacted_count": report.redacted,
                "fields_truncated_count": report.truncated,
            }
            events.append(self._envelope("risk.flagged", flag, actor="system", **context))
        try:
            for event in events:
                self._write(event)
        except (OSError, TypeError, ValueError):
            _LOGGER.exception("Could not append %s event to %s", event_type, self.events_path)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events = []
        for line in self.events_path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                _LOGGER.debug("Skipping unreadable event line in %s", self.events_path)
                continue
            if isinstance(payload, dict):
                events.append(payload)
        return events

    def count_events(self) -> int:
        if not self.events_path.exists():
            return 0
        return sum(1 for line in self.events_path.read_text(encoding="utf-8").splitlines() if line.strip())

    def purge(self) -> bool:
        try:
            self.events_path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _window(self, start: datetime, end: datetime, actor_id: str | None) -> Iterable[dict[str, Any]]:
        for event in self.iter_events():
            ts = _read_stamp(event.get("ts"))
            if ts is None or ts < start or ts > end:
                continue
            if actor_id is not None and actor_of(event.get("actor"))["id"] != actor_id:
                continue
            yield event

    def export_summary(
        self,
        *,
        range_value: str,
        out_path: Path | None = None,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        """Summarize quest and reward activity within the last `range_value`."""

        end = datetime.now(tz=UTC)
        start = end - parse_range(range_value)
        actor_filter = None if actor_id is None else sanitize_actor_id(actor_id)

        by_type: Counter[str] = Counter()
        quests: Counter[str] = Counter()
        rewards: Counter[str] = Counter()
        completers: Counter[str] = Counter()
        xp_awarded = xp_spent = 0
        for event in self._window(start, end, actor_filter):
            event_type = str(event.get("event_type"))
            data = event.get("data") if isinstance(event.get("data"), dict) else {}
            by_type[event_type] += 1
            if event_type == "quest.completed":
                completers[actor_of(event.get("actor"))["id"]] += 1
                xp_awarded += int(data.get("xp_earned", 0))
                if data.get("task_id"):
                    quests[str(data["task_id"])] += 1
            elif event_type == "reward.purchased":
                xp_spent += int(data.get("cost", 0))
                if data.get("reward_id"):
                    rewards[str(data["reward_id"])] += 1

        summary = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _stamp(end),
            "range": range_value,
            "actor_id_filter": actor_filter,
            "window_start": _stamp(start),
            "window_end": _stamp(end),
            "events_considered": sum(by_type.values()),
            "events_by_type": dict(sorted(by_type.items())),
            "completions_total": by_type["quest.completed"],
            "completions_by_actor_id": dict(sorted(completers.items())),
            "xp_awarded_total": xp_awarded,
            "xp_spent_total": xp_spent,
            "rejections_total": by_type["quest.rejected"] + by_type["reward.rejected"],
            "risk_flags_count": by_type["risk.flagged"],
            "top_quests_completed": _top(quests, "task_id"),
            "top_rewards_purchased": _top(rewards, "reward_id"),
        }
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        return summary
