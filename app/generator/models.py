from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

WORKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]
DAY_ORDER = WORKDAYS + ["Sunday"]
FREE_DAY = "FREE_DAY"
SHIFT_TYPES = ("morning", "afternoon", "full")
FULL_TIME_HOURS = 40.0


def _minutes(label: str) -> int:
    hours, minutes = label.split(":", 1)
    return int(hours) * 60 + int(minutes)


@dataclass
class GeneratorSettings:
    min_shift_hours: float = 2.0
    min_available: int = 3
    full_time_threshold: float = FULL_TIME_HOURS
    max_resolve_attempts: int = 50
    hour_tolerance: float = 0.1
    min_day_hours_after_trim: float = 4.0
    first_pass: str = "rotation"
    day_retry_limit: int = 50


@dataclass
class Worker:
    id: str
    name: str
    weekly_hours: float
    free_day: str = ""
    free_saturday_week: Optional[int] = None
    is_active: bool = True
    fixed_day_patterns: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def has_free_day(self) -> bool:
        if self.free_day in WORKDAYS:
            return True
        return any(pattern_id == FREE_DAY for _, pattern_id in self.fixed_day_patterns)

    @property
    def working_days_per_week(self) -> int:
        return 5 if self.has_free_day else 6

    @property
    def free_day_label(self) -> str:
        if self.free_day:
            return self.free_day
        for day, pattern_id in self.fixed_day_patterns:
            if pattern_id == FREE_DAY:
                return day
        return ""

    def is_free_on(self, day_name: str) -> bool:
        if self.free_day == day_name:
            return True
        return any(day == day_name and pattern_id == FREE_DAY for day, pattern_id in self.fixed_day_patterns)

    def fixed_pattern_for(self, day_name: str) -> Optional[str]:
        for day, pattern_id in self.fixed_day_patterns:
            if day == day_name:
                return pattern_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "weeklyHours": self.weekly_hours,
            "freeDay": self.free_day,
            "isActive": self.is_active,
            "fixedDayPatterns": [
                {"dayOfWeek": day, "patternId": pattern_id} for day, pattern_id in self.fixed_day_patterns
            ],
        }
        if self.free_saturday_week is not None:
            payload["freeSaturdayWeek"] = self.free_saturday_week
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Worker":
        fixed = []
        for entry in payload.get("fixedDayPatterns") or []:
            if isinstance(entry, dict) and entry.get("dayOfWeek") and entry.get("patternId"):
                fixed.append((str(entry["dayOfWeek"]), str(entry["patternId"])))
        saturday = payload.get("freeSaturdayWeek")
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            weekly_hours=float(payload.get("weeklyHours", 0) or 0),
            free_day=str(payload.get("freeDay") or ""),
            free_saturday_week=int(saturday) if saturday is not None else None,
            is_active=bool(payload.get("isActive", True)),
            fixed_day_patterns=fixed,
        )


@dataclass(frozen=True)
class ShiftPattern:
    id: str
    name: str
    short_form: str
    morning: Tuple[str, str]
    afternoon: Tuple[str, str]

    @property
    def has_break(self) -> bool:
        return _minutes(self.afternoon[0]) > _minutes(self.morning[1])

    @property
    def morning_hours(self) -> float:
        return (_minutes(self.morning[1]) - _minutes(self.morning[0])) / 60

    @property
    def afternoon_hours(self) -> float:
        return (_minutes(self.afternoon[1]) - _minutes(self.afternoon[0])) / 60

    @property
    def full_hours(self) -> float:
        return self.morning_hours + self.afternoon_hours

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "shortForm": self.short_form,
            "morningShift": {"startTime": self.morning[0], "endTime": self.morning[1]},
            "afternoonShift": {"startTime": self.afternoon[0], "endTime": self.afternoon[1]},
        }


@dataclass(frozen=True)
class StaffingRequirement:
    id: str
    start: str
    end: str
    required: int

    @property
    def key(self) -> str:
        return f"{self.start}-{self.end}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "startTime": self.start,
            "endTime": self.end,
            "requiredPharmacists": self.required,
        }


@dataclass(frozen=True)
class PharmacyRules:
    opening_time: str
    closing_time: str
    break_start: str
    break_end: str
    max_hours_per_shift: float
    max_hours_per_day: float
    fixed_shift_patterns: List[ShiftPattern] = field(default_factory=list)
    staffing_requirements: List[StaffingRequirement] = field(default_factory=list)
    name: str = ""

    def replace(self, **changes: Any) -> "PharmacyRules":
        return dataclasses.replace(self, **changes)

    def pattern_by_id(self, pattern_id: Optional[str]) -> Optional[ShiftPattern]:
        for pattern in self.fixed_shift_patterns:
            if pattern.id == pattern_id:
                return pattern
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "openingTime": self.opening_time,
            "closingTime": self.closing_time,
            "breakStartTime": self.break_start,
            "breakEndTime": self.break_end,
            "maxHoursPerShift": self.max_hours_per_shift,
            "maxHoursPerDay": self.max_hours_per_day,
            "fixedShiftPatterns": [pattern.to_dict() for pattern in self.fixed_shift_patterns],
            "staffingRequirements": [req.to_dict() for req in self.staffing_requirements],
        }


@dataclass
class PlannedShift:
    id: str
    worker_id: str
    date: str
    start: str
    end: str
    type: str
    is_break_time: bool = False
    pattern_id: Optional[str] = None

    @property
    def hours(self) -> float:
        return (_minutes(self.end) - _minutes(self.start)) / 60

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "pharmacistId": self.worker_id,
            "date": self.date,
            "startTime": self.start,
            "endTime": self.end,
            "type": self.type,
            "isBreakTime": self.is_break_time,
        }
        if self.pattern_id:
            payload["patternId"] = self.pattern_id
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PlannedShift":
        shift_type = payload.get("type") or "full"
        if shift_type not in SHIFT_TYPES:
            raise ValueError(f"Unsupported shift type '{shift_type}'.")
        return cls(
            id=str(payload.get("id") or ""),
            worker_id=str(payload["pharmacistId"]),
            date=str(payload["date"]),
            start=str(payload["startTime"]),
            end=str(payload["endTime"]),
            type=shift_type,
            is_break_time=bool(payload.get("isBreakTime", False)),
            pattern_id=payload.get("patternId"),
        )


@dataclass
class ShiftAssignment:
    """A worker's planned slot for one day before it becomes concrete shifts."""

    worker: Worker
    shift_type: str
    start: str
    end: str
    pattern_id: Optional[str] = None


@dataclass
class WeekPlan:
    id: str
    week_start: str
    week_end: str
    shifts: List[PlannedShift] = field(default_factory=list)
    warnings: Dict[str, List[str]] = field(default_factory=dict)
    unassigned: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def warning_count(self) -> int:
        return sum(len(items) for items in self.warnings.values())

    def shifts_on(self, date_str: str) -> List[PlannedShift]:
        return [shift for shift in self.shifts if shift.date == date_str]

    def with_shifts(self, shifts: List[PlannedShift]) -> "WeekPlan":
        return dataclasses.replace(self, shifts=list(shifts), warnings={}, unassigned=dict(self.unassigned))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "weekStart": self.week_start,
            "weekEnd": self.week_end,
            "shifts": [shift.to_dict() for shift in self.shifts],
            "warnings": {date: list(items) for date, items in self.warnings.items()},
        }
        if self.unassigned:
            payload["unassigned"] = {date: list(ids) for date, ids in self.unassigned.items()}
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "WeekPlan":
        return cls(
            id=str(payload.get("id") or f"schedule_{payload['weekStart']}"),
            week_start=str(payload["weekStart"]),
            week_end=str(payload["weekEnd"]),
            shifts=[PlannedShift.from_dict(item) for item in payload.get("shifts") or []],
            warnings={str(date): list(items) for date, items in (payload.get("warnings") or {}).items()},
            unassigned={str(date): list(ids) for date, ids in (payload.get("unassigned") or {}).items()},
        )


@dataclass
class RotationCursor:
    pattern_index: int = 0
    daily_patterns: List[str] = field(default_factory=list)


def default_cursor_index(worker_id: str, pattern_count: int) -> int:
    if pattern_count <= 0:
        return 0
    return sum(ord(char) for char in worker_id) % pattern_count


@dataclass
class WeekBuildContext:
    """Accumulators owned by a single week build."""

    pattern_usage: Dict[str, Dict[str, int]]
    cursors: Dict[str, RotationCursor]
    remaining_hours: Dict[str, float]
    remaining_days: Dict[str, int]

    @classmethod
    def fresh(
        cls,
        workers: List[Worker],
        patterns: List[ShiftPattern],
        *,
        full_time_threshold: float = FULL_TIME_HOURS,
        cursor_start: Optional[Dict[str, int]] = None,
    ) -> "WeekBuildContext":
        cursor_start = cursor_start or {}
        usage = {worker.id: {pattern.id: 0 for pattern in patterns} for worker in workers}
        cursors = {}
        for worker in workers:
            index = cursor_start.get(worker.id)
            if index is None:
                index = default_cursor_index(worker.id, len(patterns))
            cursors[worker.id] = RotationCursor(pattern_index=index)
        remaining_hours = {worker.id: float(worker.weekly_hours) for worker in workers}
        remaining_days = {
            worker.id: worker.working_days_per_week
            for worker in workers
            if worker.weekly_hours < full_time_threshold
        }
        return cls(
            pattern_usage=usage,
            cursors=cursors,
            remaining_hours=remaining_hours,
            remaining_days=remaining_days,
        )
