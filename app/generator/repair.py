from __future__ import annotations

import dataclasses
import datetime
import logging
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from rules import minutes_to_time, time_to_minutes
from validation import count_warnings, validate_schedule
from .models import (
    GeneratorSettings,
    PharmacyRules,
    PlannedShift,
    WeekPlan,
    Worker,
    default_cursor_index,
)

if TYPE_CHECKING:
    from .engine import ScheduleGenerator

logger = logging.getLogger(__name__)


class WarningResolver:
    """Bounded local search over rotation start indices.

    Each attempt rebuilds the week from scratch with a perturbed cursor map
    for workers who have no fixed-day patterns. A candidate replaces the best
    plan only when it has strictly fewer warnings, so the result is never
    worse than the input. This is not an exhaustive solver.
    """

    def __init__(self, generator: "ScheduleGenerator"):
        self.generator = generator

    def attempt_budget(self, reassignable: List[Worker]) -> int:
        patterns = self.generator.rules.fixed_shift_patterns
        return min(
            len(patterns) * len(reassignable) * 2,
            self.generator.settings.max_resolve_attempts,
        )

    def cursor_map(self, attempt: int, reassignable: List[Worker]) -> Dict[str, int]:
        count = len(self.generator.rules.fixed_shift_patterns)
        positions = {worker.id: position for position, worker in enumerate(reassignable)}
        cursors: Dict[str, int] = {}
        for worker in self.generator.workers:
            position = positions.get(worker.id)
            if position is None:
                cursors[worker.id] = default_cursor_index(worker.id, count)
            else:
                cursors[worker.id] = (position + (attempt // len(reassignable)) % count + attempt) % count
        return cursors

    def resolve(self, plan: WeekPlan, week_start: datetime.date, week_number: int) -> WeekPlan:
        best = plan
        best_count = plan.warning_count
        if best_count == 0:
            return plan
        reassignable = [worker for worker in self.generator.workers if not worker.fixed_day_patterns]
        if not self.generator.rules.fixed_shift_patterns or not reassignable:
            logger.info("Nothing to reassign for week %s; keeping %d warnings", plan.week_start, best_count)
            return plan

        attempts = self.attempt_budget(reassignable)
        for attempt in range(attempts):
            candidate = self.generator.build_week(
                week_start,
                week_number,
                cursor_start=self.cursor_map(attempt, reassignable),
            )
            candidate.warnings = self.generator.validate(candidate)
            count = candidate.warning_count
            logger.debug("Resolve attempt %d/%d for %s: %d warnings", attempt + 1, attempts, plan.week_start, count)
            if count < best_count:
                best, best_count = candidate, count
                logger.info("Resolve attempt %d reduced warnings to %d", attempt + 1, count)
            if best_count == 0:
                break
        return best


@dataclasses.dataclass
class TrimOption:
    label: str
    index: int
    start: int
    end: int
    reduction: float


class HourBalancer:
    """Trims part-time shifts back to their weekly target after the week is built."""

    def __init__(
        self,
        rules: PharmacyRules,
        workers: List[Worker],
        settings: Optional[GeneratorSettings] = None,
    ):
        self.rules = rules
        self.workers = list(workers)
        self.settings = settings or GeneratorSettings()
        self.opening = time_to_minutes(rules.opening_time)
        self.break_end = time_to_minutes(rules.break_end)
        self.min_minutes = int(round(self.settings.min_shift_hours * 60))

    def balance(self, plan: WeekPlan) -> WeekPlan:
        shifts = list(plan.shifts)
        for worker in self.workers:
            if worker.weekly_hours >= self.settings.full_time_threshold:
                continue
            shifts = self._balance_worker(plan, worker, shifts)
        return plan.with_shifts(shifts)

    def _balance_worker(self, plan: WeekPlan, worker: Worker, shifts: List[PlannedShift]) -> List[PlannedShift]:
        assigned = sum(shift.hours for shift in shifts if shift.worker_id == worker.id)
        excess = assigned - worker.weekly_hours
        if excess < -self.settings.hour_tolerance:
            logger.info("%s ends the week %.1fh short of target", worker.name, -excess)
            return shifts
        if excess <= self.settings.hour_tolerance:
            return shifts
        logger.info(
            "Balancing %s: %.1fh assigned, target %sh, excess %.1fh",
            worker.name,
            assigned,
            worker.weekly_hours,
            excess,
        )
        dates = sorted({shift.date for shift in shifts if shift.worker_id == worker.id})
        processed = set()
        remaining = excess
        for date_str in dates:
            if remaining <= self.settings.hour_tolerance:
                break
            per_day = remaining / (len(dates) - len(processed))
            processed.add(date_str)
            day_total = sum(
                shift.hours for shift in shifts if shift.worker_id == worker.id and shift.date == date_str
            )
            if day_total - per_day < self.settings.min_day_hours_after_trim:
                continue
            options = self.trim_options(shifts, worker.id, date_str, per_day)
            if not options:
                continue
            choice, warnings = self._pick(plan, shifts, options, per_day)
            shifts = self._apply(shifts, choice)
            remaining -= choice.reduction
            logger.debug(
                "Trimmed %s on %s via %s by %.2fh (%d warnings)",
                worker.name,
                date_str,
                choice.label,
                choice.reduction,
                warnings,
            )
        if remaining > self.settings.hour_tolerance:
            logger.info("%s keeps %.1fh above target after balancing", worker.name, remaining)
        return shifts

    def trim_options(
        self,
        shifts: List[PlannedShift],
        worker_id: str,
        date_str: str,
        per_day: float,
    ) -> List[TrimOption]:
        """Boundary trims for one worker-day, each keeping the sub-shift at the minimum length."""
        morning: Optional[Tuple[int, PlannedShift]] = None
        afternoon: Optional[Tuple[int, PlannedShift]] = None
        for index, shift in enumerate(shifts):
            if shift.worker_id != worker_id or shift.date != date_str:
                continue
            if shift.type == "morning" and morning is None:
                morning = (index, shift)
            elif shift.type == "afternoon" and afternoon is None:
                afternoon = (index, shift)

        options: List[TrimOption] = []
        if afternoon is not None:
            index, shift = afternoon
            start, end = time_to_minutes(shift.start), time_to_minutes(shift.end)
            keep = self._kept_minutes(end - start, per_day)
            self._add_option(options, "afternoon-end", index, start, start + keep, end - start)
            self._add_option(options, "afternoon-start", index, max(end - keep, self.break_end), end, end - start)
        if morning is not None:
            index, shift = morning
            start, end = time_to_minutes(shift.start), time_to_minutes(shift.end)
            keep = self._kept_minutes(end - start, per_day)
            self._add_option(options, "morning-end", index, start, start + keep, end - start)
            self._add_option(options, "morning-start", index, max(end - keep, self.opening), end, end - start)
        return options

    def _kept_minutes(self, current: int, per_day: float) -> int:
        return max(self.min_minutes, int(round(current - per_day * 60)))

    @staticmethod
    def _add_option(options: List[TrimOption], label: str, index: int, start: int, end: int, current: int) -> None:
        reduction = (current - (end - start)) / 60
        if reduction > 0:
            options.append(TrimOption(label, index, start, end, reduction))

    def _pick(
        self,
        plan: WeekPlan,
        shifts: List[PlannedShift],
        options: List[TrimOption],
        per_day: float,
    ) -> Tuple[TrimOption, int]:
        best: Optional[TrimOption] = None
        best_key: Optional[Tuple[int, float]] = None
        for option in options:
            trial = plan.with_shifts(self._apply(shifts, option))
            warnings = count_warnings(
                validate_schedule(trial, self.rules, self.workers, min_shift_hours=self.settings.min_shift_hours)
            )
            key = (warnings, -min(option.reduction, per_day))
            if best_key is None or key < best_key:
                best, best_key = option, key
        return best, best_key[0]

    @staticmethod
    def _apply(shifts: List[PlannedShift], option: TrimOption) -> List[PlannedShift]:
        updated = list(shifts)
        updated[option.index] = dataclasses.replace(
            shifts[option.index],
            start=minutes_to_time(option.start),
            end=minutes_to_time(option.end),
        )
        return updated
