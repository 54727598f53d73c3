from __future__ import annotations

import datetime
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

from database import (
    get_week,
    list_pharmacists,
    pharmacist_to_worker,
    save_week_warnings,
    week_plan_from_db,
)
from generator.models import WORKDAYS, PharmacyRules, PlannedShift, WeekPlan, Worker
from rules import generator_settings, load_active_rules, minutes_to_time, rules_from_payload, time_to_minutes

SLICE_MINUTES = 30
MIN_SHIFT_HOURS = 2.0


def week_dates(week_start: str) -> List[str]:
    start = datetime.date.fromisoformat(week_start)
    return [(start + datetime.timedelta(days=offset)).isoformat() for offset in range(len(WORKDAYS))]


def _format_hours(value: float) -> str:
    return f"{value:g}"


def _coverage_warnings(day_shifts: List[PlannedShift], rules: PharmacyRules) -> List[str]:
    windows = [
        (shift.worker_id, time_to_minutes(shift.start), time_to_minutes(shift.end)) for shift in day_shifts
    ]
    warnings: List[str] = []
    for req in rules.staffing_requirements:
        req_start = time_to_minutes(req.start)
        req_end = time_to_minutes(req.end)
        periods = []
        current: Optional[List[int]] = None
        for check in range(req_start, req_end, SLICE_MINUTES):
            working = {worker_id for worker_id, start, end in windows if start <= check < end}
            count = len(working)
            if count < req.required:
                period_end = min(check + SLICE_MINUTES, req_end)
                if current is None:
                    current = [check, period_end, count]
                else:
                    current[1] = period_end
                    current[2] = min(current[2], count)
            elif current is not None:
                periods.append(current)
                current = None
        if current is not None:
            periods.append(current)
        for start, end, min_count in periods:
            start, end = max(start, req_start), min(end, req_end)
            if start >= end:
                continue
            warnings.append(
                f"Insufficient coverage {minutes_to_time(start)}-{minutes_to_time(end)}: "
                f"{min_count}/{req.required} "
                f"(requirement: {minutes_to_time(req_start)}-{minutes_to_time(req_end)})"
            )
    return warnings


def validate_schedule(
    plan: WeekPlan,
    rules: PharmacyRules,
    workers: Optional[Iterable[Worker]] = None,
    *,
    min_shift_hours: float = MIN_SHIFT_HOURS,
) -> Dict[str, List[str]]:
    """Return ``{date: [warning, ...]}`` for the six workdays of ``plan``.

    The result depends only on the shift list and the rules: shifts are read
    in a canonical order so reordering the input never changes the output.
    Dates without findings are omitted.
    """
    names = {worker.id: worker.name for worker in workers or []}
    by_date: Dict[str, List[PlannedShift]] = defaultdict(list)
    for shift in plan.shifts:
        by_date[shift.date].append(shift)

    warnings: Dict[str, List[str]] = {}
    for date_str in week_dates(plan.week_start):
        day_shifts = sorted(
            by_date.get(date_str, []),
            key=lambda item: (item.worker_id, time_to_minutes(item.start), time_to_minutes(item.end), item.type),
        )
        day_warnings = _coverage_warnings(day_shifts, rules)

        daily_hours: Dict[str, float] = defaultdict(float)
        for shift in day_shifts:
            hours = shift.hours
            daily_hours[shift.worker_id] += hours
            name = names.get(shift.worker_id) or shift.worker_id
            if shift.type in ("morning", "afternoon") and hours < min_shift_hours:
                day_warnings.append(
                    f"Shift too short: {name} has a {shift.type} shift of {hours:.1f}h "
                    f"(minimum: {_format_hours(min_shift_hours)}h)"
                )
            if hours > rules.max_hours_per_shift:
                day_warnings.append(
                    f"Shift exceeds max hours: {name} works {hours:.1f}h "
                    f"(max: {_format_hours(rules.max_hours_per_shift)}h)"
                )
        for worker_id in sorted(daily_hours):
            total = daily_hours[worker_id]
            if total > rules.max_hours_per_day:
                name = names.get(worker_id) or worker_id
                day_warnings.append(
                    f"Daily hours exceeded: {name} works {total:.1f}h "
                    f"(max: {_format_hours(rules.max_hours_per_day)}h)"
                )
        if day_warnings:
            warnings[date_str] = day_warnings
    return warnings


def count_warnings(warnings: Dict[str, List[str]]) -> int:
    return sum(len(items) for items in warnings.values())


def validate_week_schedule(session, week_start: datetime.date, *, pharmacist_session=None) -> Dict[str, Any]:
    """Recompute and store warnings for a stored week, e.g. after a manual edit."""
    normalized_start = _normalize_week_start(week_start)
    week = get_week(session, normalized_start)
    if not week:
        return {
            "week_start": normalized_start.isoformat(),
            "week_id": None,
            "warnings": {},
            "warning_count": 0,
            "issues": [
                {
                    "type": "missing_schedule",
                    "severity": "error",
                    "message": "No schedule exists for the requested week.",
                }
            ],
        }
    payload = load_active_rules(session)
    rules = rules_from_payload(payload)
    workers = [pharmacist_to_worker(item) for item in list_pharmacists(pharmacist_session)]
    plan = week_plan_from_db(session, normalized_start)
    warnings = validate_schedule(plan, rules, workers, min_shift_hours=generator_settings(payload).min_shift_hours)
    save_week_warnings(session, normalized_start, warnings)
    return {
        "week_start": normalized_start.isoformat(),
        "week_id": week.id,
        "warnings": warnings,
        "warning_count": count_warnings(warnings),
        "issues": [],
    }


def _normalize_week_start(date_value: datetime.date | datetime.datetime) -> datetime.date:
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    return date_value - datetime.timedelta(days=date_value.weekday())
