"""
Module: cascade_engines.effective_time
Responsibility:
    Convert possibly overlapping, possibly duplicated work sessions into
    the wall-clock time production was actually running inside a reporting
    window, and split that time across the tasks that were running.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Algorithm (``calculate_effective_time``):
    1. Sessions of excluded tasks are removed and counted.
    2. Sessions with a missing timestamp or ``start >= end`` are dropped.
    3. The rest are sorted by start and swept once: a session starting at
       or before the open period's end extends it, otherwise the open
       period closes and a new one starts.
    4. Each merged period is clipped to ``[range_start, range_end]`` and
       contributes only when the clipped span is non-empty. Periods that
       extend outside the window are counted as clipped.

Values may be datetimes (durations measured in minutes) or plain numbers
(already in minutes).
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Hashable

from cascade_engines.tracer import traced_engine
from cascade_kernel.domain.precision import ZERO, add, div, to_decimal


@dataclass(frozen=True)
class WorkInterval:
    task_id: str
    start: Any
    end: Any


@dataclass(frozen=True)
class EffectiveTimeResult:
    total_minutes: Decimal
    total_hours: Decimal
    sessions_count: int
    merged_periods_count: int
    duplicates_eliminated: int
    clipped_periods: int
    excluded_sessions_count: int
    merged_periods: tuple[tuple[Any, Any], ...] = ()

    def diagnostics(self) -> dict[str, Any]:
        return {
            "effective_minutes": self.total_minutes,
            "effective_hours": self.total_hours,
            "sessions_count": self.sessions_count,
            "merged_periods_count": self.merged_periods_count,
            "duplicates_eliminated": self.duplicates_eliminated,
            "clipped_periods": self.clipped_periods,
            "excluded_sessions_count": self.excluded_sessions_count,
        }


def _minutes(start: Any, end: Any) -> Decimal:
    span = end - start
    if isinstance(span, timedelta):
        return div(Decimal(str(span.total_seconds())), 60)
    return to_decimal(span)


def _is_valid(start: Any, end: Any) -> bool:
    return start is not None and end is not None and start < end


def merge_intervals(intervals: Iterable[tuple[Any, Any]]) -> list[tuple[Any, Any]]:
    """Union of intervals as the minimal sorted list of disjoint periods.

    Touching intervals (one ends where the next starts) merge. Invalid
    intervals are ignored.
    """
    valid = sorted(
        ((start, end) for start, end in intervals if _is_valid(start, end)),
        key=lambda interval: interval[0],
    )
    merged: list[tuple[Any, Any]] = []
    for start, end in valid:
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def _split_excluded(
    sessions: Sequence[WorkInterval], excluded_task_ids: Collection[Hashable],
) -> tuple[list[WorkInterval], int]:
    excluded = {str(task_id) for task_id in excluded_task_ids}
    kept = [s for s in sessions if str(s.task_id) not in excluded]
    return kept, len(sessions) - len(kept)


@traced_engine(
    "effective_time", "1.0",
    fingerprint_fields=("sessions", "range_start", "range_end", "excluded_task_ids"),
)
def calculate_effective_time(
    sessions: Sequence[WorkInterval],
    range_start: Any,
    range_end: Any,
    excluded_task_ids: Collection[Hashable] = (),
) -> EffectiveTimeResult:
    """Effective running time of ``sessions`` inside the window."""
    included, excluded_count = _split_excluded(sessions, excluded_task_ids)
    valid = [s for s in included if _is_valid(s.start, s.end)]
    merged = merge_intervals((s.start, s.end) for s in valid)

    total_minutes = ZERO
    clipped = 0
    for start, end in merged:
        clipped_start = max(start, range_start)
        clipped_end = min(end, range_end)
        if clipped_start < clipped_end:
            total_minutes = add(total_minutes, _minutes(clipped_start, clipped_end))
            if start < range_start or end > range_end:
                clipped += 1

    return EffectiveTimeResult(
        total_minutes=total_minutes,
        total_hours=div(total_minutes, 60),
        sessions_count=len(valid),
        merged_periods_count=len(merged),
        duplicates_eliminated=len(valid) - len(merged),
        clipped_periods=clipped,
        excluded_sessions_count=excluded_count,
        merged_periods=tuple(merged),
    )


def allocate_minutes_per_task(
    sessions: Sequence[WorkInterval],
    range_start: Any,
    range_end: Any,
    excluded_task_ids: Collection[Hashable] = (),
) -> dict[str, Decimal]:
    """Split effective minutes across tasks.

    Every elementary slice of the window is shared equally by the distinct
    tasks running in it, so a task's minutes never exceed the wall-clock
    time it ran and the per-task values sum to the effective minutes
    (up to four-place rounding).
    """
    included, _ = _split_excluded(sessions, excluded_task_ids)

    events: dict[Any, list[tuple[int, str]]] = {}
    for session in included:
        if not _is_valid(session.start, session.end):
            continue
        start = max(session.start, range_start)
        end = min(session.end, range_end)
        if not start < end:
            continue
        task_id = str(session.task_id)
        events.setdefault(start, []).append((1, task_id))
        events.setdefault(end, []).append((-1, task_id))

    allocation: dict[str, Decimal] = {}
    active: Counter[str] = Counter()
    previous = None
    for point in sorted(events):
        if previous is not None:
            running = sorted(task for task, count in active.items() if count > 0)
            if running:
                share = div(_minutes(previous, point), len(running))
                for task_id in running:
                    allocation[task_id] = add(allocation.get(task_id, ZERO), share)
        for delta, task_id in events[point]:
            active[task_id] += delta
        previous = point
    return allocation


def cost_per_minute(amount: Any, effective_minutes: Any) -> Decimal:
    """``amount / effective_minutes``; 0 when no time was recorded."""
    return div(amount, effective_minutes)
