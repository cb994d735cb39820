from __future__ import annotations

import datetime
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker

from generator.calendar_days import business_days, iso, month_start
from roster import Person, PersonRule
from sites import Site, parse_site


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
ROSTER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'roster.db').as_posix()}"
PLANNER_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'planner.db').as_posix()}"
MONTH_STATUS_CHOICES = {"draft", "generated", "edited", "imported"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _format_month_label(first: datetime.date) -> str:
    return first.strftime("%B %Y")


class RosterBase(DeclarativeBase):
    """Standalone metadata for roster tables living in roster.db."""

    pass


class Base(DeclarativeBase):
    """Metadata for plan/policy tables living in planner.db."""

    pass


class Member(RosterBase):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String(40), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Integer, nullable=False, default=1)
    primary_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    secondary_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remote_share: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    rules: Mapped[List["MemberRule"]] = relationship(
        back_populates="member", cascade="all, delete-orphan", order_by="MemberRule.id"
    )

    def to_person(self) -> Person:
        return Person(
            id=self.id,
            name=self.name,
            primary_share=self.primary_share,
            secondary_share=self.secondary_share,
            remote_share=self.remote_share,
            active=bool(self.active),
            rules=tuple(rule.to_rule() for rule in self.rules),
        )


class MemberRule(RosterBase):
    __tablename__ = "person_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[str] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"))
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    site: Mapped[str] = mapped_column(String(12), nullable=False)
    weekday: Mapped[int | None] = mapped_column(Integer, nullable=True)  # 0 = Monday
    count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    member: Mapped[Member] = relationship(back_populates="rules")

    def to_rule(self) -> PersonRule:
        return PersonRule(kind=self.kind, site=self.site, weekday=self.weekday, count=self.count)


class MonthPlan(Base):
    __tablename__ = "month_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    month_start: Mapped[datetime.date] = mapped_column(Date, nullable=False, unique=True)
    label: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    all_hands: Mapped[List["AllHandsDay"]] = relationship(
        back_populates="month", cascade="all, delete-orphan", order_by="AllHandsDay.day"
    )
    assignments: Mapped[List["Assignment"]] = relationship(
        back_populates="month", cascade="all, delete-orphan"
    )


class AllHandsDay(Base):
    __tablename__ = "all_hands_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    month_id: Mapped[int] = mapped_column(ForeignKey("month_plans.id", ondelete="CASCADE"), nullable=False)
    day: Mapped[datetime.date] = mapped_column(Date, nullable=False)

    month: Mapped[MonthPlan] = relationship(back_populates="all_hands")

    __table_args__ = (UniqueConstraint("month_id", "day", name="uq_all_hands_month_day"),)


class AbsenceDay(Base):
    __tablename__ = "absence_days"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[str] = mapped_column(String(40), nullable=False)
    day: Mapped[datetime.date] = mapped_column(Date, nullable=False)

    __table_args__ = (UniqueConstraint("person_id", "day", name="uq_absence_person_day"),)


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    month_id: Mapped[int] = mapped_column(ForeignKey("month_plans.id", ondelete="CASCADE"), nullable=False)
    day: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    person_id: Mapped[str] = mapped_column(String(40), nullable=False)
    site: Mapped[str] = mapped_column(String(12), nullable=False)
    source: Mapped[str] = mapped_column(String(12), nullable=False, default="generated")

    month: Mapped[MonthPlan] = relationship(back_populates="assignments")

    __table_args__ = (UniqueConstraint("month_id", "day", "person_id", name="uq_assignment_cell"),)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("name", name="uq_policies_name"),)

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="MonthPlan")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


roster_engine = create_engine(
    ROSTER_DATABASE_URL,
    echo=False,
    future=True,
)
planner_engine = create_engine(
    PLANNER_DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=planner_engine, expire_on_commit=False, future=True)
RosterSessionLocal = sessionmaker(bind=roster_engine, expire_on_commit=False, future=True)


def init_database() -> None:
    RosterBase.metadata.create_all(roster_engine)
    Base.metadata.create_all(planner_engine)


def _coerce_roster_session(session):
    """Return (roster_session, should_close) ensuring we talk to the roster database."""
    if session is None:
        return RosterSessionLocal(), True
    bind = getattr(session, "bind", None)
    if bind is planner_engine:
        return RosterSessionLocal(), True
    return session, False


# ---------------------------------------------------------------------------
# Roster


def list_people(roster_session=None, only_active: bool = False) -> List[Dict[str, Any]]:
    return [person.to_dict() for person in load_roster(roster_session, only_active=only_active)]


def load_roster(roster_session=None, *, only_active: bool = False) -> List[Person]:
    """Return roster dataclasses in their configured order."""
    roster_session, close_session = _coerce_roster_session(roster_session)
    try:
        stmt = select(Member).order_by(Member.position.asc(), Member.id.asc())
        if only_active:
            stmt = stmt.where(Member.active == 1)
        return [member.to_person() for member in roster_session.scalars(stmt)]
    finally:
        if close_session:
            roster_session.close()


def upsert_person(roster_session, person: Person, *, position: Optional[int] = None) -> Member:
    if not person.id:
        raise ValueError("Person id is required.")
    member = roster_session.get(Member, person.id)
    if member is None:
        if position is None:
            existing = roster_session.scalars(select(Member.position)).all()
            position = (max(existing) + 1) if existing else 0
        member = Member(id=person.id)
        roster_session.add(member)
    if position is not None:
        member.position = position
    member.name = person.name
    member.active = 1 if person.active else 0
    member.primary_share = int(person.primary_share)
    member.secondary_share = int(person.secondary_share)
    member.remote_share = int(person.remote_share)
    member.rules = [
        MemberRule(kind=rule.kind, site=rule.site.value, weekday=rule.weekday, count=rule.count)
        for rule in person.rules
    ]
    roster_session.commit()
    roster_session.refresh(member)
    return member


def seed_roster(roster_session, people: Iterable[Person]) -> int:
    """Insert people missing from the roster; returns how many were created."""
    created = 0
    for index, person in enumerate(people):
        if roster_session.get(Member, person.id) is not None:
            continue
        upsert_person(roster_session, person, position=index)
        created += 1
    return created


def set_person_shares(roster_session, person_id: str, primary: int, secondary: int, remote: int) -> Member:
    member = roster_session.get(Member, person_id)
    if member is None:
        raise ValueError(f"Person '{person_id}' was not found.")
    values = [int(primary), int(secondary), int(remote)]
    if any(value < 0 or value > 100 for value in values):
        raise ValueError("Shares must be between 0 and 100.")
    member.primary_share, member.secondary_share, member.remote_share = values
    roster_session.commit()
    roster_session.refresh(member)
    return member


def replace_person_rules(roster_session, person_id: str, rules: Iterable[PersonRule]) -> int:
    member = roster_session.get(Member, person_id)
    if member is None:
        raise ValueError(f"Person '{person_id}' was not found.")
    member.rules = [
        MemberRule(kind=rule.kind, site=rule.site.value, weekday=rule.weekday, count=rule.count)
        for rule in rules
    ]
    roster_session.commit()
    return len(member.rules)


# ---------------------------------------------------------------------------
# Months, overrides and plans


def get_or_create_month(session, month) -> MonthPlan:
    first = month_start(month)
    month_plan = session.scalars(select(MonthPlan).where(MonthPlan.month_start == first)).first()
    if month_plan:
        return month_plan
    month_plan = MonthPlan(month_start=first, label=_format_month_label(first), status="draft")
    session.add(month_plan)
    session.commit()
    session.refresh(month_plan)
    return month_plan


def _apply_month_status(month_plan: MonthPlan, status: str) -> str:
    normalized = (status or "").strip().lower()
    if normalized not in MONTH_STATUS_CHOICES:
        raise ValueError(f"Unsupported month status '{status}'.")
    month_plan.status = normalized
    return normalized


def _business_day_or_raise(month_plan: MonthPlan, day) -> datetime.date:
    value = day if isinstance(day, datetime.date) else datetime.date.fromisoformat(str(day)[:10])
    if value not in business_days(month_plan.month_start):
        raise ValueError(f"{value.isoformat()} is not a business day of {month_plan.label}.")
    return value


def get_all_hands_dates(session, month) -> List[datetime.date]:
    month_plan = get_or_create_month(session, month)
    return [entry.day for entry in month_plan.all_hands]


def toggle_all_hands_day(session, day, *, limit: Optional[int] = None) -> List[datetime.date]:
    """Add or remove an all-hands date; returns the month's dates afterwards.

    Without an explicit ``limit`` the active policy's ``all_hands.max_days``
    applies.
    """
    if limit is None:
        from policy import all_hands_limit, load_active_policy

        limit = all_hands_limit(load_active_policy(session))
    value = day if isinstance(day, datetime.date) else datetime.date.fromisoformat(str(day)[:10])
    month_plan = get_or_create_month(session, value)
    value = _business_day_or_raise(month_plan, value)
    existing = next((entry for entry in month_plan.all_hands if entry.day == value), None)
    if existing is not None:
        month_plan.all_hands.remove(existing)
    else:
        if len(month_plan.all_hands) >= limit:
            raise ValueError(f"At most {limit} all-hands days per month.")
        month_plan.all_hands.append(AllHandsDay(day=value))
    session.commit()
    session.refresh(month_plan)
    return [entry.day for entry in month_plan.all_hands]


def toggle_absence(session, person_id: str, day) -> bool:
    """Flip an absence date for a person; returns True when the person is now absent."""
    value = day if isinstance(day, datetime.date) else datetime.date.fromisoformat(str(day)[:10])
    stmt = select(AbsenceDay).where(AbsenceDay.person_id == person_id, AbsenceDay.day == value)
    existing = session.scalars(stmt).first()
    if existing is not None:
        session.delete(existing)
        session.commit()
        return False
    session.add(AbsenceDay(person_id=person_id, day=value))
    session.commit()
    return True


def get_absence_map(session, month=None) -> Dict[str, List[datetime.date]]:
    stmt = select(AbsenceDay).order_by(AbsenceDay.person_id.asc(), AbsenceDay.day.asc())
    if month is not None:
        days = business_days(month)
        first = month_start(month)
        last = days[-1] if days else first
        stmt = stmt.where(AbsenceDay.day >= first, AbsenceDay.day <= last)
    mapping: Dict[str, List[datetime.date]] = {}
    for row in session.scalars(stmt):
        mapping.setdefault(row.person_id, []).append(row.day)
    return mapping


def save_month_plan(
    session,
    month,
    plan: Dict[str, Dict[str, Any]],
    *,
    source: str = "generated",
    status: str = "generated",
) -> int:
    """Replace every stored cell of the month with ``plan``; returns the cell count."""
    month_plan = get_or_create_month(session, month)
    cells = stage_assignments(session, month_plan, plan, source=source)
    _apply_month_status(month_plan, status)
    session.commit()
    return cells


def stage_assignments(session, month_plan: MonthPlan, plan: Dict[str, Dict[str, Any]], *, source: str) -> int:
    """Swap the month's stored cells for ``plan`` without committing."""
    allowed = {iso(day) for day in business_days(month_plan.month_start)}
    rows: List[Assignment] = []
    for day_iso, row in plan.items():
        if day_iso not in allowed:
            raise ValueError(f"{day_iso} is not a business day of {month_plan.label}.")
        day_value = datetime.date.fromisoformat(day_iso)
        for person_id, site in row.items():
            rows.append(
                Assignment(
                    month_id=month_plan.id,
                    day=day_value,
                    person_id=person_id,
                    site=parse_site(site).value,
                    source=source,
                )
            )
    session.execute(delete(Assignment).where(Assignment.month_id == month_plan.id))
    session.add_all(rows)
    return len(rows)


def get_month_plan(session, month) -> Dict[str, Dict[str, str]]:
    month_plan = get_or_create_month(session, month)
    stmt = (
        select(Assignment)
        .where(Assignment.month_id == month_plan.id)
        .order_by(Assignment.day.asc(), Assignment.id.asc())
    )
    plan: Dict[str, Dict[str, str]] = {}
    for row in session.scalars(stmt):
        plan.setdefault(iso(row.day), {})[row.person_id] = row.site
    return plan


def set_cell(session, month, day, person_id: str, site: Site | str) -> Assignment:
    """Manual last-write-wins edit of one cell; no rule is re-checked."""
    month_plan = get_or_create_month(session, month)
    day_value = _business_day_or_raise(month_plan, day)
    resolved = parse_site(site)
    stmt = select(Assignment).where(
        Assignment.month_id == month_plan.id,
        Assignment.day == day_value,
        Assignment.person_id == person_id,
    )
    cell = session.scalars(stmt).first()
    if cell is None:
        cell = Assignment(month_id=month_plan.id, day=day_value, person_id=person_id)
        session.add(cell)
    cell.site = resolved.value
    cell.source = "manual"
    _apply_month_status(month_plan, "edited")
    session.commit()
    session.refresh(cell)
    return cell


def reset_month(session, month) -> None:
    """Drop the month's table, all-hands dates and absences."""
    month_plan = get_or_create_month(session, month)
    days = business_days(month_plan.month_start)
    session.execute(delete(Assignment).where(Assignment.month_id == month_plan.id))
    session.execute(delete(AllHandsDay).where(AllHandsDay.month_id == month_plan.id))
    if days:
        session.execute(
            delete(AbsenceDay).where(AbsenceDay.day >= days[0], AbsenceDay.day <= days[-1])
        )
    _apply_month_status(month_plan, "draft")
    session.commit()


def get_month_state(session, month) -> Dict[str, Any]:
    """Return the persisted shape: month anchor, all-hands, plan, absences and days."""
    month_plan = get_or_create_month(session, month)
    return {
        "month": iso(month_plan.month_start),
        "label": month_plan.label,
        "status": month_plan.status,
        "all_hands": [iso(day) for day in get_all_hands_dates(session, month_plan.month_start)],
        "plan": get_month_plan(session, month_plan.month_start),
        "absences": {
            person_id: [iso(day) for day in days]
            for person_id, days in get_absence_map(session, month_plan.month_start).items()
        },
        "days": [iso(day) for day in business_days(month_plan.month_start)],
    }


# ---------------------------------------------------------------------------
# Policy and audit


def get_policies(session) -> List[Policy]:
    stmt = select(Policy).order_by(Policy.name.asc(), Policy.id.asc())
    return list(session.scalars(stmt))


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(select(Policy).where(Policy.name == name)).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "MonthPlan",
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
