from __future__ import annotations

import math
from typing import Dict, Iterable, List, Tuple

from rules import overlap_minutes, time_to_minutes
from .models import PharmacyRules, ShiftAssignment, ShiftPattern, StaffingRequirement


def assignment_intervals(assignment: ShiftAssignment, rules: PharmacyRules) -> List[Tuple[int, int]]:
    """Worked minute intervals for an assignment; full slots skip the pharmacy break."""
    start = time_to_minutes(assignment.start)
    end = time_to_minutes(assignment.end)
    if assignment.shift_type != "full":
        return [(start, end)] if end > start else []
    break_start = time_to_minutes(rules.break_start)
    break_end = time_to_minutes(rules.break_end)
    parts = []
    if min(end, break_start) > start:
        parts.append((start, min(end, break_start)))
    if end > max(start, break_end):
        parts.append((max(start, break_end), end))
    return parts


class CoverageTracker:
    """Fractional head-count per staffing requirement for one day."""

    def __init__(self, requirements: Iterable[StaffingRequirement]):
        self.requirements: List[StaffingRequirement] = list(requirements)
        self.coverage: Dict[str, float] = {req.key: 0.0 for req in self.requirements}
        self._bounds = {
            req.key: (time_to_minutes(req.start), time_to_minutes(req.end)) for req in self.requirements
        }

    def add_interval(self, start: int, end: int) -> None:
        for req in self.requirements:
            req_start, req_end = self._bounds[req.key]
            overlap = overlap_minutes(start, end, req_start, req_end)
            if overlap:
                self.coverage[req.key] += overlap / (req_end - req_start)

    def add_pattern(self, pattern: ShiftPattern) -> None:
        self.add_interval(time_to_minutes(pattern.morning[0]), time_to_minutes(pattern.morning[1]))
        self.add_interval(time_to_minutes(pattern.afternoon[0]), time_to_minutes(pattern.afternoon[1]))

    def add_assignment(self, assignment: ShiftAssignment, rules: PharmacyRules) -> None:
        for start, end in assignment_intervals(assignment, rules):
            self.add_interval(start, end)

    def value(self, req: StaffingRequirement) -> float:
        return self.coverage.get(req.key, 0.0)

    def gap(self, req: StaffingRequirement) -> float:
        return req.required - self.value(req)

    def unmet(self) -> List[StaffingRequirement]:
        return [req for req in self.requirements if self.value(req) < req.required]


def pattern_helps(pattern: ShiftPattern, req: StaffingRequirement) -> bool:
    req_start, req_end = time_to_minutes(req.start), time_to_minutes(req.end)
    for start, end in (pattern.morning, pattern.afternoon):
        if overlap_minutes(time_to_minutes(start), time_to_minutes(end), req_start, req_end) > 0:
            return True
    return False


def pattern_coverage_percent(pattern: ShiftPattern, req: StaffingRequirement) -> int:
    """Share of the requirement window the pattern staffs, as a rounded percentage."""
    req_start, req_end = time_to_minutes(req.start), time_to_minutes(req.end)
    covered = 0
    for start, end in (pattern.morning, pattern.afternoon):
        covered += overlap_minutes(time_to_minutes(start), time_to_minutes(end), req_start, req_end)
    return int(math.floor(covered * 100 / (req_end - req_start) + 0.5))
