from __future__ import annotations

import sys
from pathlib import Path

import pytest

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from generator.models import ShiftAssignment, Worker  # noqa: E402
from generator.synthesis import ShiftSynthesizer  # noqa: E402
from rules import build_default_rules, rules_from_payload  # noqa: E402

DATE = "2024-04-01"


@pytest.fixture
def synthesizer():
    return ShiftSynthesizer(rules_from_payload(build_default_rules()))


def _windows(shifts):
    return [(shift.type, shift.start, shift.end) for shift in shifts]


def test_short_morning_is_extended(synthesizer) -> None:
    worker = Worker("w1", "Alice", 40)
    ledger = {}
    shifts = synthesizer.synthesize(DATE, ShiftAssignment(worker, "morning", "09:00", "10:00"), ledger, part_time=False)
    assert _windows(shifts) == [("morning", "09:00", "11:00")]
    assert shifts[0].id == "shift_2024-04-01_w1_morning"
    assert ledger["w1"] == pytest.approx(38.0)


def test_short_shifts_relocate_when_they_cannot_grow(synthesizer) -> None:
    worker = Worker("w1", "Alice", 40)
    late_afternoon = ShiftAssignment(worker, "afternoon", "18:30", "19:30")
    assert _windows(synthesizer.synthesize(DATE, late_afternoon, {}, part_time=False)) == [
        ("afternoon", "17:30", "19:30")
    ]
    late_morning = ShiftAssignment(worker, "morning", "18:00", "19:00")
    assert _windows(synthesizer.synthesize(DATE, late_morning, {}, part_time=False)) == [("morning", "09:00", "11:00")]


def test_full_slot_is_split_at_break(synthesizer) -> None:
    worker = Worker("w1", "Alice", 40)
    ledger = {"w1": 40.0}
    shifts = synthesizer.synthesize(DATE, ShiftAssignment(worker, "full", "09:00", "17:30", "early"), ledger, part_time=False)
    assert _windows(shifts) == [("morning", "09:00", "12:30"), ("afternoon", "14:00", "17:30")]
    assert {shift.pattern_id for shift in shifts} == {"early"}
    assert ledger["w1"] == pytest.approx(33.0)


def test_full_slot_ending_before_break_keeps_one_part(synthesizer) -> None:
    worker = Worker("pt", "Paula", 20)
    shifts = synthesizer.synthesize(DATE, ShiftAssignment(worker, "full", "09:00", "12:20"), {}, part_time=True)
    assert _windows(shifts) == [("morning", "09:00", "12:20")]


def test_short_parts_depend_on_contract(synthesizer) -> None:
    assignment_ft = ShiftAssignment(Worker("ft", "Frank", 40), "full", "12:00", "15:00")
    ledger = {"ft": 40.0}
    assert synthesizer.synthesize(DATE, assignment_ft, ledger, part_time=False) == []
    assert ledger["ft"] == 40.0

    assignment_pt = ShiftAssignment(Worker("pt", "Paula", 20), "full", "12:00", "15:00")
    shifts = synthesizer.synthesize(DATE, assignment_pt, {}, part_time=True)
    assert _windows(shifts) == [("morning", "12:00", "14:00"), ("afternoon", "14:00", "16:00")]


def test_nothing_fits_in_a_short_day() -> None:
    payload = build_default_rules()
    payload.update({"openingTime": "09:00", "closingTime": "10:30"})
    synthesizer = ShiftSynthesizer(rules_from_payload(payload))
    worker = Worker("pt", "Paula", 20)
    ledger = {"pt": 20.0}
    assert synthesizer.synthesize(DATE, ShiftAssignment(worker, "morning", "09:00", "10:00"), ledger, part_time=True) == []
    assert synthesizer.synthesize(DATE, ShiftAssignment(worker, "full", "09:00", "10:30"), ledger, part_time=True) == []
    assert ledger["pt"] == 20.0


def test_pattern_slots_are_clipped_to_opening_hours() -> None:
    payload = build_default_rules()
    payload.update({"openingTime": "09:00", "closingTime": "11:30"})
    synthesizer = ShiftSynthesizer(rules_from_payload(payload))
    worker = Worker("ft", "Frank", 40)
    ledger = {"ft": 40.0}

    morning = synthesizer.synthesize(DATE, ShiftAssignment(worker, "morning", "09:00", "12:30", "early"), ledger, part_time=False)
    assert _windows(morning) == [("morning", "09:00", "11:30")]
    assert synthesizer.synthesize(DATE, ShiftAssignment(worker, "afternoon", "13:00", "17:30", "early"), ledger, part_time=False) == []
    assert ledger["ft"] == pytest.approx(37.5)

    payload["closingTime"] = "10:30"
    short_day = ShiftSynthesizer(rules_from_payload(payload))
    assert short_day.synthesize(DATE, ShiftAssignment(worker, "morning", "09:00", "12:30", "early"), {}, part_time=False) == []
    assert short_day.synthesize(DATE, ShiftAssignment(worker, "full", "09:00", "17:30", "early"), {}, part_time=False) == []
