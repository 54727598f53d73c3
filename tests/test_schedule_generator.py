from __future__ import annotations

import datetime
import sys
from pathlib import Path
import unittest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from generator.engine import ScheduleGenerator, generate_schedules, week_monday  # noqa: E402
from generator.models import GeneratorSettings, PlannedShift, WeekPlan, Worker  # noqa: E402
from rules import build_default_rules, rules_from_payload, time_to_minutes  # noqa: E402
from validation import week_dates  # noqa: E402

MONDAY = datetime.date(2024, 4, 1)


def _full_timers(count: int):
    return [Worker(f"p{idx}", f"Pharmacist {idx}", 40) for idx in range(1, count + 1)]


def _heads_per_slice(plan: WeekPlan, date_str: str, start: str, end: str):
    """Independent head count per 30-minute slice, used to cross-check the validator."""
    counts = []
    for check in range(time_to_minutes(start), time_to_minutes(end), 30):
        working = {
            shift.worker_id
            for shift in plan.shifts_on(date_str)
            if time_to_minutes(shift.start) <= check < time_to_minutes(shift.end)
        }
        counts.append(len(working))
    return counts


def _worker_hours(plan: WeekPlan, worker_id: str) -> float:
    return sum(shift.hours for shift in plan.shifts if shift.worker_id == worker_id)


class ScheduleGeneratorTests(unittest.TestCase):
    """Regression tests for the week build, repair and balancing heuristics."""

    def setUp(self) -> None:
        self.rules = rules_from_payload(build_default_rules())

    def test_two_pattern_week_is_fully_covered(self) -> None:
        generator = ScheduleGenerator(_full_timers(5), self.rules, seed=1)
        [plan] = generator.generate(start_date=MONDAY)
        self.assertEqual(plan.warnings, {})
        for date_str in week_dates(plan.week_start):
            heads = _heads_per_slice(plan, date_str, "09:00", "19:30")
            self.assertTrue(all(count >= 2 for count in heads), (date_str, heads))
        for shift in plan.shifts:
            if shift.type in ("morning", "afternoon"):
                self.assertGreaterEqual(shift.hours, 2.0)

    def test_three_workers_surface_warnings_without_failing(self) -> None:
        generator = ScheduleGenerator(_full_timers(3), self.rules, seed=1)
        [plan] = generator.generate(start_date=MONDAY)
        self.assertGreater(plan.warning_count, 0)
        short_days = [
            date_str
            for date_str in week_dates(plan.week_start)
            if any(count < 2 for count in _heads_per_slice(plan, date_str, "09:00", "19:30"))
        ]
        flagged_days = {
            date_str
            for date_str, items in plan.warnings.items()
            if any(warning.startswith("Insufficient coverage") for warning in items)
        }
        self.assertTrue(short_days)
        self.assertEqual(set(short_days), flagged_days)

    def test_part_time_hours_land_on_target(self) -> None:
        part_timer = Worker("pt", "Paula", 20, free_day="Sunday")
        generator = ScheduleGenerator(_full_timers(4) + [part_timer], self.rules, seed=1)
        context = generator.new_context()
        self.assertEqual(context.remaining_days["pt"], 6)

        [plan] = generator.generate(start_date=MONDAY)
        self.assertAlmostEqual(_worker_hours(plan, "pt"), 20.0, delta=0.1)
        part_shifts = [shift for shift in plan.shifts if shift.worker_id == "pt"]
        self.assertEqual(len({shift.date for shift in part_shifts}), 6)
        self.assertEqual(generator.last_context.remaining_days["pt"], 0)

    def test_rotating_saturday_off_reserves_one_day_less(self) -> None:
        part_timer = Worker("pt", "Paula", 20, free_saturday_week=0)
        generator = ScheduleGenerator(_full_timers(4) + [part_timer], self.rules, seed=1)
        self.assertEqual(generator.new_context(week_number=0).remaining_days["pt"], 5)
        self.assertEqual(generator.new_context(week_number=1).remaining_days["pt"], 6)

        [plan] = generator.generate(start_date=MONDAY)
        part_shifts = [shift for shift in plan.shifts if shift.worker_id == "pt"]
        self.assertEqual(len({shift.date for shift in part_shifts}), 5)
        self.assertNotIn("2024-04-06", {shift.date for shift in part_shifts})
        self.assertAlmostEqual(_worker_hours(plan, "pt"), 20.0, delta=0.1)

    def test_short_opening_hours_leave_everyone_unassigned(self) -> None:
        payload = build_default_rules()
        payload.update({"openingTime": "09:00", "closingTime": "10:30"})
        payload["staffingRequirements"] = [{"startTime": "09:00", "endTime": "10:30", "requiredPharmacists": 2}]
        workers = _full_timers(3) + [Worker("pt", "Paula", 20)]
        generator = ScheduleGenerator(workers, rules_from_payload(payload), seed=1)
        self.assertEqual([pattern.id for pattern in generator.patterns], ["early", "late"])

        [plan] = generator.generate(start_date=MONDAY)
        self.assertEqual(plan.shifts, [])
        for date_str in week_dates(plan.week_start):
            self.assertEqual(plan.unassigned[date_str], ["p1", "p2", "p3", "pt"])
            self.assertEqual(
                plan.warnings[date_str],
                ["Insufficient coverage 09:00-10:30: 0/2 (requirement: 09:00-10:30)"],
            )

    def test_days_with_too_few_workers_stay_empty(self) -> None:
        generator = ScheduleGenerator(_full_timers(2), self.rules, seed=1)
        [plan] = generator.generate(start_date=MONDAY)
        self.assertEqual(plan.shifts, [])
        self.assertEqual(plan.unassigned["2024-04-01"], ["p1", "p2"])
        self.assertEqual(len(plan.warnings), 6)

    def test_inactive_workers_are_ignored(self) -> None:
        workers = _full_timers(3)
        workers[0].is_active = False
        generator = ScheduleGenerator(workers, self.rules, seed=1)
        self.assertEqual([worker.id for worker in generator.workers], ["p2", "p3"])

    def test_available_workers_respect_free_days_and_saturday_rotation(self) -> None:
        workers = [
            Worker("none", "No Free Day", 40),
            Worker("tue", "Tuesday Off", 40, free_day="Tuesday"),
            Worker("sat", "Saturday Off", 40, free_day="Saturday"),
            Worker("rot", "Rotating Saturday", 40, free_saturday_week=0),
            Worker("wed", "Wednesday Off", 40, fixed_day_patterns=[("Wednesday", "FREE_DAY")]),
        ]
        generator = ScheduleGenerator(workers, self.rules)
        self.assertEqual(
            [worker.id for worker in generator.available_workers("Monday", 0)],
            ["sat", "wed", "tue", "none", "rot"],
        )
        self.assertNotIn("tue", [worker.id for worker in generator.available_workers("Tuesday", 0)])
        self.assertNotIn("wed", [worker.id for worker in generator.available_workers("Wednesday", 0)])
        self.assertNotIn("rot", [worker.id for worker in generator.available_workers("Saturday", 0)])
        self.assertIn("rot", [worker.id for worker in generator.available_workers("Saturday", 1)])

    def test_fixed_day_pattern_is_kept_in_the_week(self) -> None:
        workers = _full_timers(5)
        workers[0].fixed_day_patterns = [("Monday", "late"), ("Tuesday", "late")]
        generator = ScheduleGenerator(workers, self.rules, seed=1)
        [plan] = generator.generate(start_date=MONDAY)
        for date_str in ("2024-04-01", "2024-04-02"):
            patterns = {shift.pattern_id for shift in plan.shifts_on(date_str) if shift.worker_id == "p1"}
            self.assertEqual(patterns, {"late"})

    def test_unknown_fixed_pattern_degrades_to_rotation(self) -> None:
        workers = _full_timers(5)
        workers[0].fixed_day_patterns = [("Monday", "ghost")]
        generator = ScheduleGenerator(workers, self.rules, seed=1)
        with self.assertLogs("generator.patterns", level="WARNING"):
            [plan] = generator.generate(start_date=MONDAY)
        self.assertTrue(plan.shifts_on("2024-04-01"))

    def test_multi_week_generation_starts_on_monday(self) -> None:
        workers = _full_timers(5)
        workers[4].free_saturday_week = 1
        generator = ScheduleGenerator(workers, self.rules, seed=3)
        plans = generator.generate(weeks=2, start_date="2024-04-03")
        self.assertEqual([plan.week_start for plan in plans], ["2024-04-01", "2024-04-08"])
        self.assertEqual([plan.week_end for plan in plans], ["2024-04-06", "2024-04-13"])
        self.assertEqual(plans[0].id, "schedule_2024-04-01")
        saturday_ids = {shift.worker_id for shift in plans[1].shifts_on("2024-04-13")}
        self.assertNotIn("p5", saturday_ids)
        self.assertEqual(plans[1].unassigned, {})

    def test_invalid_week_count(self) -> None:
        generator = ScheduleGenerator(_full_timers(3), self.rules)
        with self.assertRaises(ValueError):
            generator.generate(weeks=0)

    def test_week_monday(self) -> None:
        self.assertEqual(week_monday(datetime.date(2024, 4, 7)), MONDAY)
        self.assertEqual(week_monday(datetime.datetime(2024, 4, 2, 15, 0)), MONDAY)
        self.assertEqual(week_monday().weekday(), 0)
        with self.assertRaises(TypeError):
            week_monday(20240401)

    def test_validation_uses_configured_minimum(self) -> None:
        generator = ScheduleGenerator(_full_timers(3), self.rules, settings=GeneratorSettings(min_shift_hours=1.5))
        plan = generator._plan(MONDAY, [PlannedShift("s1", "p1", "2024-04-01", "09:00", "10:45", "morning")], {})
        warnings = generator.validate(plan)["2024-04-01"]
        self.assertFalse(any(warning.startswith("Shift too short") for warning in warnings))

    def test_full_time_threshold_is_a_setting(self) -> None:
        part_timer = Worker("pt", "Paula", 20)
        default = ScheduleGenerator([part_timer], self.rules)
        self.assertTrue(default.is_part_time(part_timer))
        self.assertIn("pt", default.new_context().remaining_days)

        lowered = ScheduleGenerator([part_timer], self.rules, settings=GeneratorSettings(full_time_threshold=20))
        self.assertFalse(lowered.is_part_time(part_timer))
        self.assertNotIn("pt", lowered.new_context().remaining_days)

    def test_break_is_adapted_before_generation(self) -> None:
        generator = ScheduleGenerator(_full_timers(3), self.rules.replace(break_end="12:40"))
        self.assertEqual(generator.rules.break_end, "13:00")


class ShuffleFirstPassTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rules = rules_from_payload(build_default_rules())
        self.settings = GeneratorSettings(first_pass="shuffle")
        self.workers = _full_timers(5) + [Worker("pt", "Paula", 20, free_day="Sunday")]

    def test_same_seed_same_schedule(self) -> None:
        first = ScheduleGenerator(self.workers, self.rules, settings=self.settings, seed=42).generate(start_date=MONDAY)
        second = ScheduleGenerator(self.workers, self.rules, settings=self.settings, seed=42).generate(start_date=MONDAY)
        self.assertEqual([plan.to_dict() for plan in first], [plan.to_dict() for plan in second])

    def test_pattern_reuse_is_limited_per_week(self) -> None:
        generator = ScheduleGenerator(self.workers, self.rules, settings=self.settings, seed=5)
        generator.build_shuffled_week(MONDAY, 0)
        usage = generator.last_context.pattern_usage
        for worker in self.workers:
            self.assertEqual(sum(usage[worker.id].values()), 6)
            self.assertTrue(all(count <= 3 for count in usage[worker.id].values()))

    def test_nudge_extends_part_time_afternoon(self) -> None:
        generator = ScheduleGenerator(self.workers, self.rules, settings=self.settings, seed=5)
        plan = generator.build_shuffled_week(MONDAY, 0)
        afternoon = next(shift for shift in plan.shifts if shift.worker_id == "pt" and shift.type == "afternoon")
        afternoon.end = "17:30"
        nudged = generator.nudge_part_time(
            [afternoon],
            ["Insufficient coverage 17:30-19:30: 1/2 (requirement: 09:00-19:30)"],
        )
        self.assertEqual(nudged[0].end, "19:30")
        self.assertEqual(afternoon.end, "17:30")


class GenerateSchedulesTests(unittest.TestCase):
    def test_payload_entry_point(self) -> None:
        roster = [
            {"id": f"p{idx}", "name": f"Pharmacist {idx}", "weeklyHours": 40, "freeDay": "", "isActive": True}
            for idx in range(1, 6)
        ]
        plans = generate_schedules(roster, build_default_rules(), start_date="2024-04-01", seed=9)
        payload = plans[0].to_dict()
        self.assertEqual(payload["weekStart"], "2024-04-01")
        self.assertEqual(payload["warnings"], {})
        self.assertTrue(all("pharmacistId" in shift for shift in payload["shifts"]))


if __name__ == "__main__":
    unittest.main()
