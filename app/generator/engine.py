from __future__ import annotations

import dataclasses
import datetime
import logging
import random
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from rules import adapt_break_duration, generator_settings, minutes_to_time, rules_from_payload, time_to_minutes
from validation import validate_schedule
from .coverage import CoverageTracker
from .models import (
    DAY_ORDER,
    FREE_DAY,
    WORKDAYS,
    GeneratorSettings,
    PharmacyRules,
    PlannedShift,
    ShiftPattern,
    WeekBuildContext,
    WeekPlan,
    Worker,
)
from .part_time import PartTimeAllocator
from .patterns import PatternAssigner, pattern_assignments
from .repair import HourBalancer, WarningResolver
from .synthesis import ShiftSynthesizer

logger = logging.getLogger(__name__)

WINDOW_PATTERN = re.compile(r"(\d{2}:\d{2})-(\d{2}:\d{2})")
MAX_PATTERN_USES_PER_WEEK = 2

DateLike = Union[datetime.date, datetime.datetime, str]


def week_monday(value: Optional[DateLike] = None) -> datetime.date:
    """Return the Monday of the week containing ``value`` (today when omitted)."""
    if value is None:
        value = datetime.date.today()
    elif isinstance(value, str):
        value = datetime.date.fromisoformat(value)
    if isinstance(value, datetime.datetime):
        value = value.date()
    if not isinstance(value, datetime.date):
        raise TypeError("start_date must be a date or an ISO date string.")
    return value - datetime.timedelta(days=value.weekday())


def _day_distance(free_day: str, day_name: str) -> int:
    free_index = DAY_ORDER.index(free_day) if free_day in DAY_ORDER else -1
    return abs(free_index - DAY_ORDER.index(day_name))


class ScheduleGenerator:
    """Builds Monday to Saturday plans for a fixed roster and rule set.

    Everything here is in memory: the caller supplies workers and rules and
    receives ``WeekPlan`` objects. Per-week accumulators live in a
    ``WeekBuildContext`` created fresh for every ``build_week`` call, so plans
    built by the same generator never share state. The only randomness comes
    from ``self.random``.
    """

    def __init__(
        self,
        workers: Iterable[Worker],
        rules: PharmacyRules,
        *,
        settings: Optional[GeneratorSettings] = None,
        rng: Optional[random.Random] = None,
        seed: Optional[int] = None,
    ) -> None:
        self.workers: List[Worker] = [worker for worker in workers if worker.is_active]
        self.rules = adapt_break_duration(rules)
        self.settings = settings or GeneratorSettings()
        self.random = rng if rng is not None else random.Random(seed)
        self.synthesizer = ShiftSynthesizer(self.rules, self.settings)
        self.last_context: Optional[WeekBuildContext] = None

    @property
    def patterns(self) -> List[ShiftPattern]:
        return list(self.rules.fixed_shift_patterns)

    def is_part_time(self, worker: Worker) -> bool:
        return worker.weekly_hours < self.settings.full_time_threshold

    def new_context(
        self,
        cursor_start: Optional[Dict[str, int]] = None,
        week_number: Optional[int] = None,
    ) -> WeekBuildContext:
        context = WeekBuildContext.fresh(
            self.workers,
            self.patterns,
            full_time_threshold=self.settings.full_time_threshold,
            cursor_start=cursor_start,
        )
        if week_number is not None:
            # The rotating Saturday off takes one working day out of this week.
            for worker in self.workers:
                if worker.id not in context.remaining_days or worker.free_saturday_week != week_number:
                    continue
                if not worker.is_free_on("Saturday"):
                    context.remaining_days[worker.id] -= 1
        self.last_context = context
        return context

    def available_workers(self, day_name: str, week_number: int) -> List[Worker]:
        """Workers who can be planned on ``day_name``, furthest free day first."""
        available = []
        for worker in self.workers:
            if worker.is_free_on(day_name):
                logger.debug("%s is off on %s (free day)", worker.name, day_name)
                continue
            if day_name == "Saturday" and worker.free_saturday_week == week_number:
                logger.debug("%s has Saturday off in week %d", worker.name, week_number)
                continue
            available.append(worker)
        available.sort(key=lambda worker: _day_distance(worker.free_day_label or "Monday", day_name), reverse=True)
        return available

    def build_day(
        self,
        date_str: str,
        day_name: str,
        available: List[Worker],
        context: WeekBuildContext,
    ) -> Tuple[List[PlannedShift], List[str]]:
        """Plan one day and return its shifts plus the ids of available workers left without one."""
        if len(available) < self.settings.min_available:
            logger.info(
                "Only %d workers available on %s %s; day left unplanned",
                len(available),
                day_name,
                date_str,
            )
            return [], [worker.id for worker in available]

        full_time = [worker for worker in available if not self.is_part_time(worker)]
        part_time = [worker for worker in available if self.is_part_time(worker)]
        coverage = CoverageTracker(self.rules.staffing_requirements)

        assignments = PatternAssigner(self.rules, context).assign_day(day_name, full_time, coverage)
        assigned_ids = {assignment.worker.id for assignment in assignments}
        allocator = PartTimeAllocator(self.rules, context, self.settings)
        assignments.extend(allocator.allocate_day(day_name, part_time, coverage, assigned_ids))

        shifts: List[PlannedShift] = []
        for assignment in assignments:
            shifts.extend(
                self.synthesizer.synthesize(
                    date_str,
                    assignment,
                    context.remaining_hours,
                    part_time=self.is_part_time(assignment.worker),
                )
            )
        planned = {shift.worker_id for shift in shifts}
        unassigned = [worker.id for worker in available if worker.id not in planned]
        return shifts, unassigned

    def build_week(
        self,
        week_start: datetime.date,
        week_number: int,
        cursor_start: Optional[Dict[str, int]] = None,
    ) -> WeekPlan:
        """Rotation-based first pass over the six workdays, not yet validated."""
        context = self.new_context(cursor_start, week_number)
        shifts: List[PlannedShift] = []
        unassigned: Dict[str, List[str]] = {}
        for offset, day_name in enumerate(WORKDAYS):
            date_str = (week_start + datetime.timedelta(days=offset)).isoformat()
            day_shifts, missing = self.build_day(date_str, day_name, self.available_workers(day_name, week_number), context)
            shifts.extend(day_shifts)
            if missing:
                unassigned[date_str] = missing
        return self._plan(week_start, shifts, unassigned)

    def build_shuffled_week(self, week_start: datetime.date, week_number: int) -> WeekPlan:
        """Random-retry first pass: per day, keep the shuffle with the fewest warnings."""
        if not self.patterns:
            logger.info("No shift patterns defined; using the rotation first pass")
            return self.build_week(week_start, week_number)
        context = self.new_context(week_number=week_number)
        shifts: List[PlannedShift] = []
        unassigned: Dict[str, List[str]] = {}
        for offset, day_name in enumerate(WORKDAYS):
            date_str = (week_start + datetime.timedelta(days=offset)).isoformat()
            available = self.available_workers(day_name, week_number)
            if len(available) < self.settings.min_available:
                logger.info("Only %d workers available on %s %s; day left unplanned", len(available), day_name, date_str)
                if available:
                    unassigned[date_str] = [worker.id for worker in available]
                continue
            day_shifts = self._shuffle_day(week_start, date_str, day_name, available, context)
            shifts.extend(day_shifts)
            planned = {shift.worker_id for shift in day_shifts}
            missing = [worker.id for worker in available if worker.id not in planned]
            if missing:
                unassigned[date_str] = missing
        return self._plan(week_start, shifts, unassigned)

    def _shuffle_day(
        self,
        week_start: datetime.date,
        date_str: str,
        day_name: str,
        available: List[Worker],
        context: WeekBuildContext,
    ) -> List[PlannedShift]:
        fixed: List[Tuple[Worker, ShiftPattern]] = []
        remaining: List[Worker] = []
        for worker in available:
            pattern = self.rules.pattern_by_id(worker.fixed_pattern_for(day_name))
            if pattern is not None and pattern.id != FREE_DAY:
                fixed.append((worker, pattern))
            else:
                remaining.append(worker)

        best: Optional[Tuple[List[PlannedShift], Dict[str, float], List[Tuple[Worker, ShiftPattern]], List[str]]] = None
        for attempt in range(max(1, self.settings.day_retry_limit)):
            order = list(remaining)
            self.random.shuffle(order)
            patterns = self.patterns
            self.random.shuffle(patterns)
            chosen = list(fixed)
            for worker in order:
                usage = context.pattern_usage.setdefault(worker.id, {})
                pattern = next(
                    (item for item in patterns if usage.get(item.id, 0) < MAX_PATTERN_USES_PER_WEEK),
                    None,
                )
                if pattern is None:
                    pattern = min(patterns, key=lambda item: usage.get(item.id, 0))
                chosen.append((worker, pattern))

            ledger = dict(context.remaining_hours)
            day_shifts: List[PlannedShift] = []
            for worker, pattern in chosen:
                for assignment in pattern_assignments(worker, pattern):
                    day_shifts.extend(
                        self.synthesizer.synthesize(date_str, assignment, ledger, part_time=self.is_part_time(worker))
                    )
            warnings = self.validate_day(week_start, date_str, day_shifts)
            if best is None or len(warnings) < len(best[3]):
                best = (day_shifts, ledger, chosen, warnings)
            if not warnings:
                logger.debug("Shuffle attempt %d for %s has no warnings", attempt + 1, date_str)
                break

        day_shifts, ledger, chosen, warnings = best
        if warnings:
            day_shifts = self.nudge_part_time(day_shifts, warnings)
        context.remaining_hours.update(ledger)
        for worker, pattern in chosen:
            usage = context.pattern_usage.setdefault(worker.id, {})
            usage[pattern.id] = usage.get(pattern.id, 0) + 1
        return day_shifts

    def nudge_part_time(self, day_shifts: List[PlannedShift], warnings: List[str]) -> List[PlannedShift]:
        """Stretch part-time afternoons toward windows reported as under-staffed."""
        shifts = [dataclasses.replace(shift) for shift in day_shifts]
        part_time_ids = {worker.id for worker in self.workers if self.is_part_time(worker)}
        closing = time_to_minutes(self.rules.closing_time)
        break_end = time_to_minutes(self.rules.break_end)
        for warning in warnings:
            match = WINDOW_PATTERN.search(warning)
            if not match:
                continue
            window_start = time_to_minutes(match.group(1))
            window_end = time_to_minutes(match.group(2))
            for shift in shifts:
                if shift.worker_id not in part_time_ids:
                    continue
                start, end = time_to_minutes(shift.start), time_to_minutes(shift.end)
                if shift.type == "afternoon" and window_start <= end < window_end:
                    new_end = min(window_end, closing)
                    if new_end > end:
                        shift.end = minutes_to_time(new_end)
                        logger.debug("Extended afternoon of %s to %s", shift.worker_id, shift.end)
                elif shift.type == "morning" and end <= window_start:
                    afternoon = next(
                        (item for item in shifts if item.worker_id == shift.worker_id and item.type == "afternoon"),
                        None,
                    )
                    if afternoon is None:
                        continue
                    new_start = max(window_start, break_end)
                    if new_start < time_to_minutes(afternoon.start):
                        afternoon.start = minutes_to_time(new_start)
                        logger.debug("Moved afternoon of %s to start at %s", shift.worker_id, afternoon.start)
        return shifts

    def first_pass(self, week_start: datetime.date, week_number: int) -> WeekPlan:
        if self.settings.first_pass == "shuffle":
            return self.build_shuffled_week(week_start, week_number)
        return self.build_week(week_start, week_number)

    def validate(self, plan: WeekPlan) -> Dict[str, List[str]]:
        return validate_schedule(plan, self.rules, self.workers, min_shift_hours=self.settings.min_shift_hours)

    def validate_day(self, week_start: datetime.date, date_str: str, day_shifts: List[PlannedShift]) -> List[str]:
        plan = self._plan(week_start, day_shifts, {})
        return self.validate(plan).get(date_str, [])

    def assemble_week(self, week_start: datetime.date, week_number: int) -> WeekPlan:
        plan = self.first_pass(week_start, week_number)
        plan.warnings = self.validate(plan)
        logger.info("First pass for %s: %d warnings", plan.week_start, plan.warning_count)
        if plan.warning_count:
            plan = WarningResolver(self).resolve(plan, week_start, week_number)
        plan = HourBalancer(self.rules, self.workers, self.settings).balance(plan)
        plan.warnings = self.validate(plan)
        logger.info("Week %s ready with %d shifts, %d warnings", plan.week_start, len(plan.shifts), plan.warning_count)
        return plan

    def generate(self, weeks: int = 1, start_date: Optional[DateLike] = None) -> List[WeekPlan]:
        if weeks < 1:
            raise ValueError("weeks must be at least 1.")
        monday = week_monday(start_date)
        plans = []
        for week_number in range(weeks):
            week_start = monday + datetime.timedelta(weeks=week_number)
            plans.append(self.assemble_week(week_start, week_number))
        return plans

    @staticmethod
    def _plan(week_start: datetime.date, shifts: List[PlannedShift], unassigned: Dict[str, List[str]]) -> WeekPlan:
        start = week_start.isoformat()
        return WeekPlan(
            id=f"schedule_{start}",
            week_start=start,
            week_end=(week_start + datetime.timedelta(days=5)).isoformat(),
            shifts=shifts,
            unassigned=unassigned,
        )


def generate_schedules(
    workers: Iterable[Union[Worker, Dict[str, Any]]],
    rules: Union[PharmacyRules, Dict[str, Any]],
    *,
    weeks: int = 1,
    start_date: Optional[DateLike] = None,
    settings: Optional[GeneratorSettings] = None,
    seed: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[WeekPlan]:
    """Generate ``weeks`` plans from plain values or their camelCase payloads."""
    roster = [item if isinstance(item, Worker) else Worker.from_dict(item) for item in workers]
    if isinstance(rules, dict):
        if settings is None:
            settings = generator_settings(rules)
        rules = rules_from_payload(rules)
    generator = ScheduleGenerator(roster, rules, settings=settings, rng=rng, seed=seed)
    return generator.generate(weeks=weeks, start_date=start_date)
