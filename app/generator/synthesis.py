from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from rules import minutes_to_time, time_to_minutes
from .models import GeneratorSettings, PharmacyRules, PlannedShift, ShiftAssignment

logger = logging.getLogger(__name__)


class ShiftSynthesizer:
    """Turns day assignments into concrete shift records.

    Every slot is first clipped to opening hours. Morning and afternoon shifts
    are then held to the minimum length by extending or relocating their
    boundaries inside opening hours. ``full`` slots are cut
    at the pharmacy break; a part under the minimum survives only for
    part-time workers. The hours ledger is charged with what was actually
    produced, never with what was requested.
    """

    def __init__(self, rules: PharmacyRules, settings: Optional[GeneratorSettings] = None):
        self.rules = rules
        self.settings = settings or GeneratorSettings()
        self.opening = time_to_minutes(rules.opening_time)
        self.closing = time_to_minutes(rules.closing_time)
        self.break_start = time_to_minutes(rules.break_start)
        self.break_end = time_to_minutes(rules.break_end)
        self.min_minutes = int(round(self.settings.min_shift_hours * 60))

    def synthesize(
        self,
        date_str: str,
        assignment: ShiftAssignment,
        ledger: Dict[str, float],
        *,
        part_time: bool,
    ) -> List[PlannedShift]:
        worker = assignment.worker
        start, end = self._clip(time_to_minutes(assignment.start), time_to_minutes(assignment.end))
        parts: List[Tuple[str, int, int]] = []

        if assignment.shift_type in ("morning", "afternoon"):
            window = self._enforce_minimum(assignment.shift_type, start, end) if end > start else None
            if window is None:
                logger.warning(
                    "Cannot create %s shift for %s on %s: pharmacy hours too short",
                    assignment.shift_type,
                    worker.name,
                    date_str,
                )
            else:
                parts.append((assignment.shift_type, *window))
        else:
            parts.extend(self._split_full(date_str, worker.name, start, end, part_time))
            if not parts and part_time:
                fallback_end = self.opening + self.min_minutes
                if fallback_end <= self.closing:
                    logger.info("Created minimum shift for part-time %s on %s", worker.name, date_str)
                    parts.append(("morning", self.opening, fallback_end))

        shifts = [
            PlannedShift(
                id=f"shift_{date_str}_{worker.id}_{shift_type}",
                worker_id=worker.id,
                date=date_str,
                start=minutes_to_time(part_start),
                end=minutes_to_time(part_end),
                type=shift_type,
                is_break_time=False,
                pattern_id=assignment.pattern_id,
            )
            for shift_type, part_start, part_end in parts
        ]
        worked = sum(time_to_minutes(shift.end) - time_to_minutes(shift.start) for shift in shifts)
        if worked > 0:
            ledger[worker.id] = ledger.get(worker.id, float(worker.weekly_hours)) - worked / 60
        else:
            logger.warning("No shifts created for %s on %s; hours not deducted", worker.name, date_str)
        return shifts

    def _clip(self, start: int, end: int) -> Tuple[int, int]:
        return max(start, self.opening), min(end, self.closing)

    def _enforce_minimum(self, shift_type: str, start: int, end: int) -> Optional[Tuple[int, int]]:
        if end - start >= self.min_minutes:
            return start, end
        extended_end = start + self.min_minutes
        if extended_end <= self.closing:
            return start, extended_end
        if shift_type == "morning":
            anchored_end = self.opening + self.min_minutes
            if anchored_end <= self.closing:
                return self.opening, anchored_end
            return None
        anchored_start = self.closing - self.min_minutes
        if anchored_start >= self.break_end:
            return anchored_start, self.closing
        return None

    def _split_full(
        self,
        date_str: str,
        name: str,
        start: int,
        end: int,
        part_time: bool,
    ) -> List[Tuple[str, int, int]]:
        parts: List[Tuple[str, int, int]] = []
        pieces = (
            ("morning", start, min(end, self.break_start)),
            ("afternoon", max(start, self.break_end), end),
        )
        for shift_type, part_start, part_end in pieces:
            if part_end <= part_start:
                continue
            if part_end - part_start >= self.min_minutes:
                parts.append((shift_type, part_start, part_end))
                continue
            if not part_time:
                logger.warning(
                    "Skipping %s part of full shift for %s on %s: %.1fh is below the minimum",
                    shift_type,
                    name,
                    date_str,
                    (part_end - part_start) / 60,
                )
                continue
            window = self._enforce_minimum(shift_type, part_start, part_end)
            if window is None:
                logger.warning("Dropping short %s part for %s on %s", shift_type, name, date_str)
                continue
            parts.append((shift_type, *window))
        return parts
