from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Set, Tuple

from rules import minutes_to_time, time_to_minutes
from .coverage import CoverageTracker
from .models import (
    GeneratorSettings,
    PharmacyRules,
    ShiftAssignment,
    ShiftPattern,
    StaffingRequirement,
    WeekBuildContext,
    Worker,
)

logger = logging.getLogger(__name__)

EPSILON = 1e-6
NATURAL_FIT_HOURS = 0.5
FALLBACK_DAY_HOURS = 0.5
MIN_DAY_HOURS = 0.1

Slot = Tuple[str, int, int]


class PartTimeAllocator:
    """Gives each part-time worker today's exact share of their weekly hours.

    Slots are searched in priority order: a pattern slot that covers an
    unmet requirement, the pattern slot whose natural length is closest to the
    target, a synthetic slot anchored at opening (or closing), and finally a
    minimum-length slot from opening. The remaining-days ledger moves here;
    the remaining-hours ledger only moves once shifts are synthesized.
    """

    def __init__(
        self,
        rules: PharmacyRules,
        context: WeekBuildContext,
        settings: Optional[GeneratorSettings] = None,
    ):
        self.rules = rules
        self.context = context
        self.settings = settings or GeneratorSettings()
        self.patterns: List[ShiftPattern] = list(rules.fixed_shift_patterns)
        self.opening = time_to_minutes(rules.opening_time)
        self.closing = time_to_minutes(rules.closing_time)
        self.break_start = time_to_minutes(rules.break_start)
        self.break_end = time_to_minutes(rules.break_end)
        self.min_minutes = int(round(self.settings.min_shift_hours * 60))

    def hours_for_today(self, worker: Worker) -> float:
        days_per_week = worker.working_days_per_week
        remaining_hours = self.context.remaining_hours.get(worker.id, float(worker.weekly_hours))
        remaining_days = self.context.remaining_days.get(worker.id, days_per_week)
        daily_target = worker.weekly_hours / days_per_week

        if remaining_days <= 1:
            hours = remaining_hours
        else:
            reserved = daily_target * (remaining_days - 1)
            if remaining_hours >= reserved + daily_target - EPSILON:
                hours = daily_target
            elif remaining_hours > reserved:
                hours = remaining_hours - reserved
            else:
                hours = max(FALLBACK_DAY_HOURS, remaining_hours / remaining_days)
        if hours < MIN_DAY_HOURS:
            logger.info("%s has no hours left but must work; assigning minimum", worker.name)
            hours = FALLBACK_DAY_HOURS
        return hours

    def allocate_day(
        self,
        day_name: str,
        part_time: Iterable[Worker],
        coverage: CoverageTracker,
        assigned_ids: Set[str],
    ) -> List[ShiftAssignment]:
        assignments: List[ShiftAssignment] = []
        for worker in part_time:
            if worker.is_free_on(day_name) or worker.id in assigned_ids:
                continue
            hours = self.hours_for_today(worker)
            slot, pattern_id = self._choose_slot(coverage, hours)
            if slot is None:
                logger.warning("Cannot create any shift for %s on %s: pharmacy hours too short", worker.name, day_name)
                continue
            shift_type, start, end = slot
            assignment = ShiftAssignment(worker, shift_type, minutes_to_time(start), minutes_to_time(end), pattern_id)
            coverage.add_assignment(assignment, self.rules)
            days_left = self.context.remaining_days.get(worker.id, worker.working_days_per_week)
            self.context.remaining_days[worker.id] = days_left - 1
            assigned_ids.add(worker.id)
            assignments.append(assignment)
            logger.debug(
                "Part-time %s gets %s %s-%s (target %.2fh, %d days left)",
                worker.name,
                shift_type,
                assignment.start,
                assignment.end,
                hours,
                days_left - 1,
            )
        return assignments

    def _choose_slot(self, coverage: CoverageTracker, hours: float) -> Tuple[Optional[Slot], Optional[str]]:
        unmet = sorted(coverage.unmet(), key=coverage.gap, reverse=True)
        for req in unmet:
            pattern = self.best_pattern_for_requirement(req, hours)
            if pattern is None:
                continue
            slot = self.fit_to_requirement(pattern, req, hours)
            if slot is not None:
                return slot, pattern.id
        slot, pattern_id = self.closest_pattern_slot(hours)
        if slot is not None:
            return slot, pattern_id
        slot = self.anchored_slot(hours)
        if slot is not None:
            return slot, None
        fallback_end = self.opening + self.min_minutes
        if fallback_end <= self.closing:
            return ("morning", self.opening, fallback_end), None
        return None, None

    def _windows(self, pattern: ShiftPattern) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        morning = (time_to_minutes(pattern.morning[0]), time_to_minutes(pattern.morning[1]))
        afternoon = (time_to_minutes(pattern.afternoon[0]), time_to_minutes(pattern.afternoon[1]))
        return morning, afternoon

    def best_pattern_for_requirement(self, req: StaffingRequirement, hours: float) -> Optional[ShiftPattern]:
        req_start, req_end = time_to_minutes(req.start), time_to_minutes(req.end)
        best: Optional[ShiftPattern] = None
        best_score = 0
        for pattern in self.patterns:
            morning, afternoon = self._windows(pattern)
            morning_covers = morning[0] <= req_start and morning[1] >= req_end
            afternoon_covers = afternoon[0] <= req_start and afternoon[1] >= req_end
            full_covers = morning[0] <= req_start and afternoon[1] >= req_end
            if full_covers:
                score = 100
            elif afternoon_covers:
                score = 70
            elif morning_covers:
                score = 50
            else:
                continue
            if hours >= pattern.full_hours:
                score += 20
            elif hours >= pattern.afternoon_hours:
                score += 10
            elif hours >= pattern.morning_hours:
                score += 5
            else:
                score -= 50
            if score > best_score:
                best = pattern
                best_score = score
        return best

    def fit_to_requirement(self, pattern: ShiftPattern, req: StaffingRequirement, hours: float) -> Optional[Slot]:
        req_start, req_end = time_to_minutes(req.start), time_to_minutes(req.end)
        morning, afternoon = self._windows(pattern)
        options = []
        if morning[0] <= req_start and morning[1] >= req_end:
            options.append(("morning", morning, pattern.morning_hours))
        if afternoon[0] <= req_start and afternoon[1] >= req_end:
            options.append(("afternoon", afternoon, pattern.afternoon_hours))
        if morning[0] <= req_start and afternoon[1] >= req_end:
            options.append(("full", (morning[0], afternoon[1]), pattern.full_hours))
        for shift_type, window, natural in options:
            shrinking = natural > hours + NATURAL_FIT_HOURS
            if shrinking and shift_type != "full":
                continue
            slot = self.fit_slot(shift_type, window[0], hours)
            if slot is not None and slot[2] > req_start:
                return slot
        return None

    def closest_pattern_slot(self, hours: float) -> Tuple[Optional[Slot], Optional[str]]:
        best: Optional[Slot] = None
        best_pattern: Optional[str] = None
        best_score = 0.0
        for pattern in self.patterns:
            morning, afternoon = self._windows(pattern)
            configs = (
                ("full", morning[0], pattern.full_hours),
                ("afternoon", afternoon[0], pattern.afternoon_hours),
                ("morning", morning[0], pattern.morning_hours),
            )
            for shift_type, start, natural in configs:
                delta = abs(natural - hours)
                if delta <= NATURAL_FIT_HOURS:
                    score = 100 - delta * 10
                elif natural < hours:
                    score = 80.0
                else:
                    score = 70.0
                if score <= best_score:
                    continue
                slot = self.fit_slot(shift_type, start, hours)
                if slot is None:
                    continue
                best, best_pattern, best_score = slot, pattern.id, score
        return best, best_pattern

    def anchored_slot(self, hours: float) -> Optional[Slot]:
        minutes = int(round(hours * 60))
        if minutes <= 0:
            return None
        end = self._full_end(self.opening, minutes)
        if end <= self.closing:
            return ("full", self.opening, end)
        start = self._full_start(self.closing, minutes)
        if start >= self.opening:
            return ("full", start, self.closing)
        return None

    def fit_slot(self, shift_type: str, start: int, hours: float) -> Optional[Slot]:
        """Stretch or shrink a slot from ``start`` to exactly ``hours`` of work."""
        minutes = int(round(hours * 60))
        if minutes < self.min_minutes:
            return None
        if shift_type == "morning" and start < self.break_start < start + minutes:
            # A morning that would run into the break becomes a split day.
            shift_type = "full"
        if shift_type == "full":
            end = self._full_end(start, minutes)
            if end > self.closing:
                return None
            for part_start, part_end in ((start, min(end, self.break_start)), (max(start, self.break_end), end)):
                if 0 < part_end - part_start < self.min_minutes:
                    return None
            return shift_type, start, end
        end = start + minutes
        if end > self.closing:
            return None
        return shift_type, start, end

    def _full_end(self, start: int, minutes: int) -> int:
        if start >= self.break_end:
            return start + minutes
        if start >= self.break_start:
            return self.break_end + minutes
        before_break = self.break_start - start
        if minutes <= before_break:
            return start + minutes
        return self.break_end + (minutes - before_break)

    def _full_start(self, end: int, minutes: int) -> int:
        if end <= self.break_start:
            return end - minutes
        if end <= self.break_end:
            return self.break_start - minutes
        after_break = end - self.break_end
        if minutes <= after_break:
            return end - minutes
        return self.break_start - (minutes - after_break)
