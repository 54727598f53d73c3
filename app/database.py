from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, selectinload, sessionmaker

from generator.models import DAY_ORDER, PlannedShift, WeekPlan, Worker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
PHARMACIST_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'pharmacists.db').as_posix()}"
SCHEDULE_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'schedule.db').as_posix()}"
WEEK_STATUS_CHOICES = {"draft", "generated", "edited"}
SHIFT_TYPE_CHOICES = {"morning", "afternoon", "full"}


def _normalize_week_start(date_value: datetime.date) -> datetime.date:
    """Return the Monday for the provided date."""
    if isinstance(date_value, datetime.datetime):
        date_value = date_value.date()
    return date_value - datetime.timedelta(days=date_value.weekday())


def _format_week_label(week_start: datetime.date) -> str:
    iso_year, iso_week, _ = week_start.isocalendar()
    end = week_start + datetime.timedelta(days=5)
    return f"{iso_year} W{iso_week:02d} ({week_start.strftime('%b %d')} - {end.strftime('%b %d')})"


def _parse_clock(label: Any) -> datetime.time:
    if not isinstance(label, str):
        raise TypeError("Shift times must be 'HH:MM' strings.")
    try:
        return datetime.datetime.strptime(label.strip(), "%H:%M").time()
    except ValueError as exc:
        raise ValueError(f"Invalid time label: {label!r}") from exc


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class PharmacistBase(DeclarativeBase):
    """Standalone metadata for roster tables living in pharmacists.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for rules/schedule tables living in schedule.db."""

    pass


class Pharmacist(PharmacistBase):
    __tablename__ = "pharmacists"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    weekly_hours: Mapped[float] = mapped_column(Float, nullable=False, default=40.0)
    free_day: Mapped[str] = mapped_column(String(12), nullable=False, default="")
    free_saturday_week: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)

    day_patterns: Mapped[List["PharmacistDayPattern"]] = relationship(
        back_populates="pharmacist", cascade="all, delete-orphan"
    )


class PharmacistDayPattern(PharmacistBase):
    __tablename__ = "pharmacist_day_patterns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pharmacist_id: Mapped[str] = mapped_column(ForeignKey("pharmacists.id", ondelete="CASCADE"))
    day_of_week: Mapped[str] = mapped_column(String(12), nullable=False)
    pattern_id: Mapped[str] = mapped_column(String(40), nullable=False)

    pharmacist: Mapped[Pharmacist] = relationship(back_populates="day_patterns")

    __table_args__ = (
        UniqueConstraint("pharmacist_id", "day_of_week", name="uq_pharmacist_day"),
    )


class RulesProfile(Base):
    __tablename__ = "rules_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)

    __table_args__ = (
        UniqueConstraint("name", name="uq_rules_profiles_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class WeekSchedule(Base):
    __tablename__ = "week_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_start_date: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    iso_year: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_week: Mapped[int] = mapped_column(Integer, nullable=False)
    label: Mapped[str] = mapped_column(String(48), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    warningsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)

    shifts: Mapped[List["Shift"]] = relationship(
        back_populates="week",
        cascade="all, delete-orphan",
    )

    def warnings_dict(self) -> Dict[str, List[str]]:
        try:
            value = json.loads(self.warningsJSON or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}


class Shift(Base):
    __tablename__ = "shifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    week_id: Mapped[int] = mapped_column(ForeignKey("week_schedule.id", ondelete="CASCADE"), nullable=False)
    shift_key: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    pharmacist_id: Mapped[str] = mapped_column(String(40), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    shift_type: Mapped[str] = mapped_column(String(12), nullable=False, default="full")
    is_break_time: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    pattern_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now)

    week: Mapped[WeekSchedule] = relationship(back_populates="shifts")


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Shift")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_now)


pharmacist_engine = create_engine(
    PHARMACIST_DATABASE_URL,
    echo=False,
    future=True,
)
schedule_engine = create_engine(
    SCHEDULE_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=schedule_engine, expire_on_commit=False, future=True)
PharmacistSessionLocal = sessionmaker(bind=pharmacist_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    PharmacistBase.metadata.create_all(pharmacist_engine)
    Base.metadata.create_all(schedule_engine)
    with schedule_engine.begin() as conn:
        columns = {row[1]: True for row in conn.execute(text("PRAGMA table_info(week_schedule)"))}
        if "warningsJSON" not in columns:
            conn.execute(text("ALTER TABLE week_schedule ADD COLUMN warningsJSON VARCHAR(8000) NOT NULL DEFAULT '{}'"))


def _coerce_pharmacist_session(session):
    """Return (pharmacist_session, should_close) ensuring we talk to the roster database."""
    if session is None:
        return PharmacistSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is schedule_engine:
        return PharmacistSessionLocal(), True
    return session, False


def list_pharmacists(pharmacist_session=None, *, only_active: bool = False) -> List[Pharmacist]:
    pharmacist_session, close_session = _coerce_pharmacist_session(pharmacist_session)
    try:
        stmt = select(Pharmacist).options(selectinload(Pharmacist.day_patterns))
        if only_active:
            stmt = stmt.where(Pharmacist.is_active.is_(True))
        stmt = stmt.order_by(Pharmacist.name.asc(), Pharmacist.id.asc())
        return list(pharmacist_session.scalars(stmt))
    finally:
        if close_session:
            pharmacist_session.close()


def pharmacist_to_worker(pharmacist: Pharmacist) -> Worker:
    return Worker(
        id=pharmacist.id,
        name=pharmacist.name,
        weekly_hours=float(pharmacist.weekly_hours or 0.0),
        free_day=pharmacist.free_day or "",
        free_saturday_week=pharmacist.free_saturday_week,
        is_active=bool(pharmacist.is_active),
        fixed_day_patterns=[(entry.day_of_week, entry.pattern_id) for entry in pharmacist.day_patterns],
    )


def _clean_day(value: Any, *, allow_blank: bool) -> str:
    day = (value or "").strip() if isinstance(value, str) else ""
    if not day and allow_blank:
        return ""
    if day not in DAY_ORDER:
        raise ValueError(f"Unknown day of week '{value}'.")
    return day


def upsert_pharmacist(session, payload: Dict[str, Any]) -> Pharmacist:
    """Create or update a pharmacist from the roster's camelCase payload."""
    pharmacist_id = str(payload.get("id") or "").strip()
    if not pharmacist_id:
        raise ValueError("Pharmacist id is required.")
    name = str(payload.get("name") or "").strip()
    if not name:
        raise ValueError("Pharmacist name is required.")
    try:
        weekly_hours = float(payload.get("weeklyHours", 40))
    except (TypeError, ValueError) as exc:
        raise ValueError("weeklyHours must be a number.") from exc
    if weekly_hours < 0:
        raise ValueError("weeklyHours cannot be negative.")
    free_day = _clean_day(payload.get("freeDay"), allow_blank=True)
    saturday = payload.get("freeSaturdayWeek")
    patterns = []
    for entry in payload.get("fixedDayPatterns") or []:
        if not isinstance(entry, dict):
            raise TypeError("fixedDayPatterns entries must be objects.")
        day = _clean_day(entry.get("dayOfWeek"), allow_blank=False)
        pattern_id = str(entry.get("patternId") or "").strip()
        if not pattern_id:
            raise ValueError(f"Missing patternId for {day}.")
        if any(existing_day == day for existing_day, _ in patterns):
            raise ValueError(f"Duplicate fixed pattern for {day}.")
        patterns.append((day, pattern_id))

    pharmacist_session, close_session = _coerce_pharmacist_session(session)
    try:
        pharmacist = pharmacist_session.get(Pharmacist, pharmacist_id)
        if pharmacist is None:
            pharmacist = Pharmacist(id=pharmacist_id)
            pharmacist_session.add(pharmacist)
        pharmacist.name = name
        pharmacist.weekly_hours = weekly_hours
        pharmacist.free_day = free_day
        pharmacist.free_saturday_week = int(saturday) if saturday is not None else None
        pharmacist.is_active = bool(payload.get("isActive", True))
        pharmacist.day_patterns.clear()
        pharmacist_session.flush()
        for day, pattern_id in patterns:
            pharmacist.day_patterns.append(PharmacistDayPattern(day_of_week=day, pattern_id=pattern_id))
        pharmacist_session.commit()
        pharmacist_session.refresh(pharmacist)
        return pharmacist
    finally:
        if close_session:
            pharmacist_session.close()


def get_rules_profiles(session) -> List[RulesProfile]:
    stmt = select(RulesProfile).order_by(RulesProfile.name.asc(), RulesProfile.id.asc())
    return list(session.scalars(stmt))


def upsert_rules(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> RulesProfile:
    existing: Optional[RulesProfile] = session.execute(
        select(RulesProfile).where(RulesProfile.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _now()
        session.commit()
        session.refresh(existing)
        return existing
    profile = RulesProfile(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_now(),
    )
    session.add(profile)
    session.commit()
    session.refresh(profile)
    return profile


def get_active_rules(session) -> Optional[RulesProfile]:
    stmt = select(RulesProfile).order_by(RulesProfile.lastEditedAt.desc(), RulesProfile.id.desc())
    return session.scalars(stmt).first()


def get_week(session, week_start_date: datetime.date) -> Optional[WeekSchedule]:
    normalized = _normalize_week_start(week_start_date)
    stmt = select(WeekSchedule).where(WeekSchedule.week_start_date == normalized)
    return session.scalars(stmt).first()


def get_or_create_week(session, week_start_date: datetime.date) -> WeekSchedule:
    if not isinstance(week_start_date, (datetime.date, datetime.datetime)):
        raise TypeError("week_start_date must be a date or datetime instance.")
    week = get_week(session, week_start_date)
    if week:
        return week
    normalized = _normalize_week_start(week_start_date)
    iso_year, iso_week, _ = normalized.isocalendar()
    week = WeekSchedule(
        week_start_date=normalized,
        iso_year=iso_year,
        iso_week=iso_week,
        label=_format_week_label(normalized),
        status="draft",
    )
    session.add(week)
    session.commit()
    session.refresh(week)
    return week


def _shift_to_dict(shift: Shift, names: Dict[str, str]) -> Dict[str, Any]:
    return {
        "id": shift.id,
        "shiftKey": shift.shift_key,
        "pharmacistId": shift.pharmacist_id,
        "pharmacistName": names.get(shift.pharmacist_id),
        "date": shift.date.isoformat(),
        "startTime": shift.start_time,
        "endTime": shift.end_time,
        "type": shift.shift_type,
        "isBreakTime": shift.is_break_time,
        "patternId": shift.pattern_id,
    }


def replace_week_shifts(session, plan: WeekPlan) -> WeekSchedule:
    """Store a generated plan, dropping whatever the week held before."""
    week_start = datetime.date.fromisoformat(plan.week_start)
    week = get_or_create_week(session, week_start)
    session.execute(delete(Shift).where(Shift.week_id == week.id))
    session.expire(week, ["shifts"])
    for planned in plan.shifts:
        session.add(
            Shift(
                week_id=week.id,
                shift_key=planned.id,
                pharmacist_id=planned.worker_id,
                date=datetime.date.fromisoformat(planned.date),
                start_time=planned.start,
                end_time=planned.end,
                shift_type=planned.type,
                is_break_time=planned.is_break_time,
                pattern_id=planned.pattern_id,
            )
        )
    week.warningsJSON = json.dumps(plan.warnings)
    week.status = "generated"
    session.commit()
    session.refresh(week)
    return week


def get_shifts_for_week(
    session,
    week_start_date: datetime.date,
    *,
    pharmacist_id: Optional[str] = None,
    pharmacist_session=None,
) -> List[Dict[str, Any]]:
    week = get_week(session, week_start_date)
    if week is None:
        return []
    stmt = (
        select(Shift)
        .where(Shift.week_id == week.id)
        .order_by(Shift.date, Shift.start_time, Shift.pharmacist_id)
    )
    if pharmacist_id:
        stmt = stmt.where(Shift.pharmacist_id == pharmacist_id)
    names = {pharmacist.id: pharmacist.name for pharmacist in list_pharmacists(pharmacist_session)}
    return [_shift_to_dict(shift, names) for shift in session.scalars(stmt)]


def week_plan_from_db(session, week_start_date: datetime.date) -> Optional[WeekPlan]:
    week = get_week(session, week_start_date)
    if week is None:
        return None
    stmt = select(Shift).where(Shift.week_id == week.id).order_by(Shift.date, Shift.start_time, Shift.id)
    shifts = [
        PlannedShift(
            id=shift.shift_key or f"shift_{shift.id}",
            worker_id=shift.pharmacist_id,
            date=shift.date.isoformat(),
            start=shift.start_time,
            end=shift.end_time,
            type=shift.shift_type,
            is_break_time=shift.is_break_time,
            pattern_id=shift.pattern_id,
        )
        for shift in session.scalars(stmt)
    ]
    start = week.week_start_date
    return WeekPlan(
        id=f"schedule_{start.isoformat()}",
        week_start=start.isoformat(),
        week_end=(start + datetime.timedelta(days=5)).isoformat(),
        shifts=shifts,
        warnings=week.warnings_dict(),
    )


def update_shift(session, shift_id: int, changes: Dict[str, Any]) -> Shift:
    """Apply a manual edit to a stored shift."""
    db_shift = session.get(Shift, shift_id)
    if not db_shift:
        raise ValueError(f"Shift with id {shift_id} was not found.")
    start = changes.get("startTime", db_shift.start_time)
    end = changes.get("endTime", db_shift.end_time)
    if _parse_clock(end) <= _parse_clock(start):
        raise ValueError("Shift end time must be after start time.")
    shift_type = changes.get("type", db_shift.shift_type)
    if shift_type not in SHIFT_TYPE_CHOICES:
        raise ValueError(f"Unsupported shift type '{shift_type}'.")
    if "pharmacistId" in changes:
        pharmacist_id = str(changes["pharmacistId"] or "").strip()
        if not pharmacist_id:
            raise ValueError("Shift pharmacistId is required.")
        db_shift.pharmacist_id = pharmacist_id
    db_shift.start_time = start.strip()
    db_shift.end_time = end.strip()
    db_shift.shift_type = shift_type
    if "isBreakTime" in changes:
        db_shift.is_break_time = bool(changes["isBreakTime"])
    if db_shift.week:
        db_shift.week.status = "edited"
    session.commit()
    session.refresh(db_shift)
    return db_shift


def save_week_warnings(session, week_start_date: datetime.date, warnings: Dict[str, List[str]]) -> WeekSchedule:
    week = get_or_create_week(session, week_start_date)
    week.warningsJSON = json.dumps(warnings or {})
    session.commit()
    session.refresh(week)
    return week


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Shift",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}),
    )
    session.add(log)
    session.commit()
    return log


def iter_audit_log(session, *, action: Optional[str] = None) -> Iterable[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.id.asc())
    if action:
        stmt = stmt.where(AuditLog.action == action)
    return session.scalars(stmt)
