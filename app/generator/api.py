from __future__ import annotations

import datetime
import logging
from typing import Callable, Dict, Optional

from .engine import ScheduleGenerator, week_monday
from rules import generator_settings, load_active_rules, rules_from_payload
from database import (
    PharmacistSessionLocal,
    list_pharmacists,
    pharmacist_to_worker,
    record_audit_log,
    replace_week_shifts,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


def generate_schedule_for_week(
    session_factory: Callable,
    week_start_date: datetime.date,
    actor: str,
    *,
    weeks: int = 1,
    seed: Optional[int] = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    pharmacist_session_factory: Callable = PharmacistSessionLocal,
) -> Dict:
    """Generate, store and audit ``weeks`` consecutive schedules starting at ``week_start_date``."""
    if week_start_date is None:
        raise ValueError("week_start_date is required.")
    monday = week_monday(week_start_date)
    attempts = max(1, int(max_attempts or 1))
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            with session_factory() as session, pharmacist_session_factory() as pharmacist_session:
                payload = load_active_rules(session)
                rules = rules_from_payload(payload)
                workers = [
                    pharmacist_to_worker(item)
                    for item in list_pharmacists(pharmacist_session, only_active=True)
                ]
                generator = ScheduleGenerator(
                    workers,
                    rules,
                    settings=generator_settings(payload),
                    seed=seed,
                )
                plans = generator.generate(weeks=weeks, start_date=monday)
                stored = []
                for plan in plans:
                    week = replace_week_shifts(session, plan)
                    stored.append(
                        {
                            "week_id": week.id,
                            "week_start": plan.week_start,
                            "week_end": plan.week_end,
                            "shifts_created": len(plan.shifts),
                            "warnings": plan.warnings,
                            "warning_count": plan.warning_count,
                            "unassigned": plan.unassigned,
                        }
                    )
                record_audit_log(
                    session,
                    actor or "system",
                    "schedule_generate",
                    target_type="WeekSchedule",
                    target_id=stored[0]["week_id"] if stored else None,
                    payload={
                        "weeks": [entry["week_start"] for entry in stored],
                        "shifts_created": sum(entry["shifts_created"] for entry in stored),
                        "seed": seed,
                    },
                )
        except ValueError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Generation attempt %d/%d failed: %s", attempt, attempts, exc)
            last_error = exc
            continue
        return {
            "week_start": monday.isoformat(),
            "weeks": stored,
            "shifts_created": sum(entry["shifts_created"] for entry in stored),
            "warning_count": sum(entry["warning_count"] for entry in stored),
            "attempts": attempt,
        }
    raise RuntimeError(f"Schedule generation failed after {attempts} attempts.") from last_error
