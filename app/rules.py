from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

from database import get_active_rules, upsert_rules
from generator.models import (
    GeneratorSettings,
    PharmacyRules,
    ShiftPattern,
    StaffingRequirement,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
MIN_BREAK_MINUTES = 30
MAX_BREAK_MINUTES = 150

BASELINE_RULES: Dict[str, Any] = {
    "name": "Default Rules",
    "openingTime": "09:00",
    "closingTime": "19:30",
    "breakStartTime": "12:30",
    "breakEndTime": "14:00",
    "maxHoursPerShift": 8,
    "maxHoursPerDay": 9,
    "fixedShiftPatterns": [
        {
            "id": "early",
            "name": "Early",
            "shortForm": "EM",
            "morningShift": {"startTime": "09:00", "endTime": "12:30"},
            "afternoonShift": {"startTime": "13:00", "endTime": "17:30"},
        },
        {
            "id": "late",
            "name": "Late",
            "shortForm": "LM",
            "morningShift": {"startTime": "11:00", "endTime": "13:00"},
            "afternoonShift": {"startTime": "14:00", "endTime": "19:30"},
        },
    ],
    "staffingRequirements": [
        {"id": "day", "startTime": "09:00", "endTime": "19:30", "requiredPharmacists": 2},
    ],
    "generator": {},
}


def time_to_minutes(value: str) -> int:
    """Parse an ``HH:MM`` label into minutes after midnight."""
    if not isinstance(value, str) or ":" not in value:
        raise ValueError(f"Invalid time label: {value!r}")
    hour_str, minute_str = value.strip().split(":", 1)
    try:
        hours = int(hour_str)
        minutes = int(minute_str)
    except ValueError as exc:
        raise ValueError(f"Invalid time label: {value!r}") from exc
    if hours < 0 or not 0 <= minutes < 60:
        raise ValueError(f"Invalid time label: {value!r}")
    return hours * 60 + minutes


def minutes_to_time(minutes: float) -> str:
    total = int(round(minutes))
    hours, mins = divmod(max(0, total), 60)
    return f"{hours:02d}:{mins:02d}"


def shift_hours(start: str, end: str) -> float:
    return (time_to_minutes(end) - time_to_minutes(start)) / 60


def overlap_minutes(start_a: int, end_a: int, start_b: int, end_b: int) -> int:
    return max(0, min(end_a, end_b) - max(start_a, start_b))


def _to_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _window(payload: Any, fallback: Tuple[str, str]) -> Tuple[str, str]:
    if not isinstance(payload, dict):
        return fallback
    start = payload.get("startTime") or payload.get("start") or fallback[0]
    end = payload.get("endTime") or payload.get("end") or fallback[1]
    return str(start), str(end)


def normalize_rules(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Fill missing keys from the baseline and validate time labels."""
    normalized = copy.deepcopy(BASELINE_RULES)
    if isinstance(payload, dict):
        for key, value in payload.items():
            if value is None:
                continue
            normalized[key] = copy.deepcopy(value)
    for key in ("openingTime", "closingTime", "breakStartTime", "breakEndTime"):
        time_to_minutes(normalized[key])
    if time_to_minutes(normalized["closingTime"]) <= time_to_minutes(normalized["openingTime"]):
        raise ValueError("closingTime must be after openingTime.")
    normalized["maxHoursPerShift"] = _to_float(normalized.get("maxHoursPerShift"), 8.0)
    normalized["maxHoursPerDay"] = _to_float(normalized.get("maxHoursPerDay"), 9.0)
    if not isinstance(normalized.get("fixedShiftPatterns"), list):
        normalized["fixedShiftPatterns"] = []
    if not isinstance(normalized.get("staffingRequirements"), list):
        normalized["staffingRequirements"] = []
    if not isinstance(normalized.get("generator"), dict):
        normalized["generator"] = {}
    return normalized


def rules_from_payload(payload: Optional[Dict[str, Any]]) -> PharmacyRules:
    data = normalize_rules(payload)
    patterns: List[ShiftPattern] = []
    for idx, entry in enumerate(data["fixedShiftPatterns"]):
        if not isinstance(entry, dict):
            continue
        morning = _window(entry.get("morningShift"), ("", ""))
        afternoon = _window(entry.get("afternoonShift"), ("", ""))
        for label in (*morning, *afternoon):
            time_to_minutes(label)
        pattern_id = str(entry.get("id") or f"pattern_{idx + 1}")
        patterns.append(
            ShiftPattern(
                id=pattern_id,
                name=str(entry.get("name") or pattern_id),
                short_form=str(entry.get("shortForm") or ""),
                morning=morning,
                afternoon=afternoon,
            )
        )
    requirements: List[StaffingRequirement] = []
    for idx, entry in enumerate(data["staffingRequirements"]):
        if not isinstance(entry, dict):
            continue
        start, end = _window(entry, ("", ""))
        if time_to_minutes(end) <= time_to_minutes(start):
            raise ValueError(f"Staffing requirement {start}-{end} has no duration.")
        requirements.append(
            StaffingRequirement(
                id=str(entry.get("id") or f"req_{idx + 1}"),
                start=start,
                end=end,
                required=int(entry.get("requiredPharmacists", entry.get("required", 1)) or 0),
            )
        )
    return PharmacyRules(
        opening_time=data["openingTime"],
        closing_time=data["closingTime"],
        break_start=data["breakStartTime"],
        break_end=data["breakEndTime"],
        max_hours_per_shift=data["maxHoursPerShift"],
        max_hours_per_day=data["maxHoursPerDay"],
        fixed_shift_patterns=patterns,
        staffing_requirements=requirements,
        name=str(data.get("name") or ""),
    )


def adapt_break_duration(rules: PharmacyRules) -> PharmacyRules:
    """Clamp the break into [30min, 2h30] by moving its end."""
    start = time_to_minutes(rules.break_start)
    duration = time_to_minutes(rules.break_end) - start
    if duration < MIN_BREAK_MINUTES:
        new_end = minutes_to_time(start + MIN_BREAK_MINUTES)
        logger.info("Break too short, extended to %s-%s", rules.break_start, new_end)
        return rules.replace(break_end=new_end)
    if duration > MAX_BREAK_MINUTES:
        new_end = minutes_to_time(start + MAX_BREAK_MINUTES)
        logger.info("Break too long, reduced to %s-%s", rules.break_start, new_end)
        return rules.replace(break_end=new_end)
    return rules


def generator_settings(payload: Optional[Dict[str, Any]]) -> GeneratorSettings:
    overrides = payload.get("generator") if isinstance(payload, dict) else None
    settings = GeneratorSettings()
    if not isinstance(overrides, dict):
        return settings
    for key, value in overrides.items():
        if not hasattr(settings, key):
            logger.warning("Ignoring unknown generator setting %r", key)
            continue
        current = getattr(settings, key)
        if isinstance(current, bool):
            setattr(settings, key, bool(value))
        elif isinstance(current, int):
            setattr(settings, key, int(value))
        elif isinstance(current, float):
            setattr(settings, key, float(value))
        else:
            setattr(settings, key, value)
    if settings.first_pass not in {"rotation", "shuffle"}:
        settings.first_pass = "rotation"
    return settings


def build_default_rules() -> Dict[str, Any]:
    return copy.deepcopy(BASELINE_RULES)


def ensure_default_rules(session_factory) -> None:
    with session_factory() as session:
        if get_active_rules(session) is None:
            params = build_default_rules()
            name = params.pop("name")
            upsert_rules(session, name, params, edited_by="system")


def load_active_rules(conn) -> Dict[str, Any]:
    """Return the active rules payload, normalized."""
    if conn is None:
        return normalize_rules({})
    if callable(conn):
        with conn() as session:
            return _profile_payload(get_active_rules(session))
    return _profile_payload(get_active_rules(conn))


def _profile_payload(profile) -> Dict[str, Any]:
    if profile is None:
        return normalize_rules({})
    params = profile.params_dict()
    params.setdefault("name", profile.name)
    return normalize_rules(params)
