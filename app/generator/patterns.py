from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from .coverage import CoverageTracker, pattern_coverage_percent, pattern_helps
from .models import (
    FREE_DAY,
    PharmacyRules,
    RotationCursor,
    ShiftAssignment,
    ShiftPattern,
    WeekBuildContext,
    Worker,
)

logger = logging.getLogger(__name__)

DAY_BALANCE_WEIGHT = 10


def pattern_assignments(worker: Worker, pattern: ShiftPattern) -> List[ShiftAssignment]:
    """Split a pattern into the day's slots: two halves around a break, else one full slot."""
    if pattern.has_break:
        return [
            ShiftAssignment(worker, "morning", pattern.morning[0], pattern.morning[1], pattern.id),
            ShiftAssignment(worker, "afternoon", pattern.afternoon[0], pattern.afternoon[1], pattern.id),
        ]
    return [ShiftAssignment(worker, "full", pattern.morning[0], pattern.afternoon[1], pattern.id)]


class PatternAssigner:
    """Chooses the fixed shift pattern each full-time worker follows on one day."""

    def __init__(self, rules: PharmacyRules, context: WeekBuildContext):
        self.rules = rules
        self.context = context
        self.patterns: List[ShiftPattern] = list(rules.fixed_shift_patterns)

    def assign_day(
        self,
        day_name: str,
        full_time: List[Worker],
        coverage: CoverageTracker,
    ) -> List[ShiftAssignment]:
        if not full_time:
            return []
        if not self.patterns:
            return self._opening_to_closing(full_time, coverage)

        day_usage = [0] * len(self.patterns)
        fixed: List[Tuple[Worker, int]] = []
        rotating: List[Worker] = []
        for worker in full_time:
            pattern_id = worker.fixed_pattern_for(day_name)
            if pattern_id is None or pattern_id == FREE_DAY:
                rotating.append(worker)
                continue
            index = self._index_of(pattern_id)
            if index is None:
                logger.warning(
                    "Fixed pattern %s not found for %s on %s, using rotation",
                    pattern_id,
                    worker.name,
                    day_name,
                )
                rotating.append(worker)
                continue
            fixed.append((worker, index))

        chosen: List[Tuple[Worker, ShiftPattern]] = []
        for worker, index in fixed:
            pattern = self.patterns[index]
            self._record(worker, index, day_usage, coverage)
            self._cursor(worker).daily_patterns.append(pattern.name)
            chosen.append((worker, pattern))

        for worker in rotating:
            cursor = self._cursor(worker)
            unmet = coverage.unmet()
            if unmet:
                index = self._score_for_requirements(cursor, unmet, coverage, day_usage)
            else:
                index = self._pick_balanced(worker, cursor, full_time, day_usage)
            pattern = self.patterns[index]
            logger.debug("Assigning %s to %s on %s", worker.name, pattern.name, day_name)
            self._record(worker, index, day_usage, coverage)
            cursor.pattern_index = (cursor.pattern_index + 1) % len(self.patterns)
            cursor.daily_patterns.append(pattern.name)
            chosen.append((worker, pattern))

        assignments: List[ShiftAssignment] = []
        for worker, pattern in chosen:
            assignments.extend(pattern_assignments(worker, pattern))
        return assignments

    def _opening_to_closing(self, full_time: List[Worker], coverage: CoverageTracker) -> List[ShiftAssignment]:
        logger.info("No fixed shift patterns defined; full-time workers get a full day")
        assignments = []
        for worker in full_time:
            assignment = ShiftAssignment(worker, "full", self.rules.opening_time, self.rules.closing_time)
            coverage.add_assignment(assignment, self.rules)
            assignments.append(assignment)
        return assignments

    def _index_of(self, pattern_id: str) -> Optional[int]:
        for index, pattern in enumerate(self.patterns):
            if pattern.id == pattern_id:
                return index
        return None

    def _cursor(self, worker: Worker) -> RotationCursor:
        cursor = self.context.cursors.get(worker.id)
        if cursor is None:
            cursor = RotationCursor()
            self.context.cursors[worker.id] = cursor
        return cursor

    def _usage(self, worker: Worker) -> Dict[str, int]:
        return self.context.pattern_usage.setdefault(worker.id, {})

    def _record(self, worker: Worker, index: int, day_usage: List[int], coverage: CoverageTracker) -> None:
        pattern = self.patterns[index]
        day_usage[index] += 1
        usage = self._usage(worker)
        usage[pattern.id] = usage.get(pattern.id, 0) + 1
        coverage.add_pattern(pattern)

    def _rotation_order(self, cursor: RotationCursor) -> List[int]:
        count = len(self.patterns)
        start = cursor.pattern_index % count
        return [(start + offset) % count for offset in range(count)]

    def _score_for_requirements(
        self,
        cursor: RotationCursor,
        unmet,
        coverage: CoverageTracker,
        day_usage: List[int],
    ) -> int:
        order = self._rotation_order(cursor)
        best_index = order[0]
        best_score = 0.0
        busiest = max(day_usage)
        for index in order:
            pattern = self.patterns[index]
            score = 0.0
            for req in unmet:
                if pattern_helps(pattern, req):
                    score += pattern_coverage_percent(pattern, req)
            score += (busiest - day_usage[index]) * DAY_BALANCE_WEIGHT
            if score > best_score:
                best_index = index
                best_score = score
        logger.debug("Requirement scoring picked %s (score %.1f)", self.patterns[best_index].name, best_score)
        return best_index

    def _pick_balanced(
        self,
        worker: Worker,
        cursor: RotationCursor,
        full_time: List[Worker],
        day_usage: List[int],
    ) -> int:
        usage = self._usage(worker)
        counts = [usage.get(pattern.id, 0) for pattern in self.patterns]
        count = len(self.patterns)
        start = cursor.pattern_index % count

        def keeps_balance(index: int) -> bool:
            after = list(counts)
            after[index] += 1
            return max(after) - min(after) <= 1

        def global_spread(index: int) -> int:
            pattern_id = self.patterns[index].id
            values = []
            for other in full_time:
                value = self.context.pattern_usage.get(other.id, {}).get(pattern_id, 0)
                if other.id == worker.id:
                    value += 1
                values.append(value)
            return max(values) - min(values)

        balanced = [index for index in range(count) if keeps_balance(index)]
        candidates = balanced or list(range(count))

        def rank(index: int):
            spread = global_spread(index)
            return (
                spread > 1,
                spread,
                counts[index],
                day_usage[index],
                (index - start) % count,
            )

        return min(candidates, key=rank)
