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
    Index,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    or_,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.types import Time


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = f"sqlite:///{(DATA_DIR / 'backoffice.db').as_posix()}"
USER_STATUS_CHOICES = {"pending", "approved", "rejected"}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class Branch(Base):
    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    address: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class User(Base):
    """Staff account and directory entry."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False)
    phone: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    branch: Mapped[str | None] = mapped_column(String(80), nullable=True)
    user_type: Mapped[str] = mapped_column(String(24), nullable=False)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="pending")
    referral_code: Mapped[str | None] = mapped_column(String(12), nullable=True, unique=True)
    password_salt: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    failed_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    locked_until: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    approved_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    must_change_password: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class Duty(Base):
    """Planned working interval (one row per user and work date)."""

    __tablename__ = "duties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    work_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    work_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    branch_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    # Not unique: saves are select-then-insert and two sessions may race.
    __table_args__ = (Index("ix_duties_user_date", "user_id", "work_date"),)


class WorkDiary(Base):
    __tablename__ = "work_diaries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    user_name: Mapped[str] = mapped_column(String(80), nullable=False, default="")
    branch_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    work_date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    start_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    end_time: Mapped[datetime.time] = mapped_column(Time, nullable=False)
    work_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    daily_check_clean: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    daily_check_training: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    daily_check_list: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    out_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    exemplary_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    memorable_customer: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggestions: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (Index("ix_work_diaries_user_date", "user_id", "work_date"),)


class Sale(Base):
    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    user_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    branch_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(120), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False, default="card")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    depositor: Mapped[str | None] = mapped_column(String(80), nullable=True)
    deposit_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    order_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    needs_shipping: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    privacy_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    marketing_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Event(Base):
    """Marketing event with a poster template; the QR box is stored in percent of the template."""

    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    landing_url: Mapped[str] = mapped_column(String(255), nullable=False)
    template_path: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    qr_x: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    qr_y: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    qr_width: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    qr_height: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    status: Mapped[str] = mapped_column(String(12), nullable=False, default="active")
    start_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[datetime.date | None] = mapped_column(Date, nullable=True)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class EventParticipant(Base):
    __tablename__ = "event_participants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    event_name: Mapped[str] = mapped_column(String(120), nullable=False, default="")
    parent_name: Mapped[str] = mapped_column(String(80), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    child_gender: Mapped[str] = mapped_column(String(4), nullable=False)
    child_age: Mapped[int] = mapped_column(Integer, nullable=False)
    inquiry: Mapped[str | None] = mapped_column(Text, nullable=True)
    referrer_code: Mapped[str | None] = mapped_column(String(12), nullable=True)
    referrer_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    referrer_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    privacy_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    marketing_agreed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Notice(Base):
    __tablename__ = "notices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    notice_type: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    branch: Mapped[str | None] = mapped_column(String(80), nullable=True)
    author_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    author_name: Mapped[str | None] = mapped_column(String(80), nullable=True)
    author_role: Mapped[str | None] = mapped_column(String(24), nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Duty")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)


# Branches


def list_active_branches(session) -> List[Branch]:
    stmt = select(Branch).where(Branch.is_active.is_(True)).order_by(Branch.name)
    return list(session.scalars(stmt))


def list_branch_names(session) -> List[str]:
    """Distinct branch names that have at least one staff member."""
    stmt = select(User.branch).where(User.branch.is_not(None)).distinct().order_by(User.branch)
    return [name for name in session.scalars(stmt) if name]


def get_branch_id(session, branch_name: Optional[str]) -> Optional[int]:
    if not branch_name:
        return None
    return session.scalars(select(Branch.id).where(Branch.name == branch_name)).first()


def create_branch(session, name: str, *, address: str = "", phone: str = "") -> Branch:
    name = (name or "").strip()
    if not name:
        raise ValueError("Branch name is required.")
    existing = session.scalars(select(Branch).where(Branch.name == name)).first()
    if existing:
        if existing.is_active:
            raise ValueError(f"Branch '{name}' already exists.")
        existing.is_active = True
        existing.address = address or existing.address
        existing.phone = phone or existing.phone
        session.commit()
        session.refresh(existing)
        return existing
    branch = Branch(name=name, address=address or "", phone=phone or "")
    session.add(branch)
    session.commit()
    session.refresh(branch)
    return branch


def update_branch(session, branch_id: int, **values: Any) -> Branch:
    branch = session.get(Branch, branch_id)
    if not branch:
        raise ValueError(f"Branch with id {branch_id} was not found.")
    for field_name in ("name", "address", "phone"):
        if field_name in values and values[field_name] is not None:
            setattr(branch, field_name, values[field_name].strip())
    if not branch.name:
        raise ValueError("Branch name is required.")
    session.commit()
    session.refresh(branch)
    return branch


def deactivate_branch(session, branch_id: int) -> None:
    branch = session.get(Branch, branch_id)
    if not branch:
        return
    branch.is_active = False
    session.commit()


# Directory


def _employee_to_dict(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "branch": user.branch,
        "user_type": user.user_type,
    }


def list_branch_employees(session, branch: Optional[str]) -> List[Dict[str, Any]]:
    stmt = select(User).where(User.branch == branch, User.status == "approved").order_by(User.name)
    return [_employee_to_dict(user) for user in session.scalars(stmt)]


def list_all_employees(session) -> List[Dict[str, Any]]:
    stmt = select(User).where(User.status == "approved").order_by(User.branch, User.name)
    return [_employee_to_dict(user) for user in session.scalars(stmt)]


def find_user_by_email(session, email: str) -> Optional[User]:
    return session.scalars(select(User).where(User.email == email.strip().lower())).first()


def list_users(session, *, branch: Optional[str] = None, status: Optional[str] = None) -> List[User]:
    stmt = select(User).order_by(User.created_at.desc())
    if branch:
        stmt = stmt.where(User.branch == branch)
    if status:
        if status not in USER_STATUS_CHOICES:
            raise ValueError(f"Unknown user status '{status}'.")
        stmt = stmt.where(User.status == status)
    return list(session.scalars(stmt))


def list_referral_codes(session) -> List[str]:
    return [code for code in session.scalars(select(User.referral_code)) if code]


# Duties


def get_duties_between(session, start: datetime.date, end: datetime.date) -> List[Duty]:
    stmt = (
        select(Duty)
        .where(Duty.work_date >= start, Duty.work_date <= end)
        .order_by(Duty.work_date, Duty.user_id)
    )
    return list(session.scalars(stmt))


def find_duty(session, user_id: int, work_date: datetime.date) -> Optional[Duty]:
    stmt = select(Duty).where(Duty.user_id == user_id, Duty.work_date == work_date).order_by(Duty.id)
    return session.scalars(stmt).first()


def insert_duty(session, values: Dict[str, Any]) -> int:
    duty = Duty(**values)
    session.add(duty)
    session.commit()
    session.refresh(duty)
    return duty.id


def update_duty(session, duty_id: int, values: Dict[str, Any]) -> None:
    duty = session.get(Duty, duty_id)
    if not duty:
        raise ValueError(f"Duty with id {duty_id} was not found.")
    for field_name, value in values.items():
        setattr(duty, field_name, value)
    session.commit()


def delete_duty(session, user_id: int, work_date: datetime.date) -> int:
    result = session.execute(delete(Duty).where(Duty.user_id == user_id, Duty.work_date == work_date))
    session.commit()
    return result.rowcount or 0


# Work diaries


def get_diaries_between(session, start: datetime.date, end: datetime.date) -> List[WorkDiary]:
    stmt = (
        select(WorkDiary)
        .where(WorkDiary.work_date >= start, WorkDiary.work_date <= end)
        .order_by(WorkDiary.work_date, WorkDiary.user_id)
    )
    return list(session.scalars(stmt))


def find_work_diary(session, user_id: int, work_date: datetime.date) -> Optional[WorkDiary]:
    stmt = select(WorkDiary).where(WorkDiary.user_id == user_id, WorkDiary.work_date == work_date)
    return session.scalars(stmt).first()


def query_work_diaries(
    session,
    *,
    branch: Optional[str] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
    search: Optional[str] = None,
) -> List[WorkDiary]:
    stmt = select(WorkDiary).order_by(WorkDiary.created_at.desc(), WorkDiary.id.desc())
    if branch:
        stmt = stmt.where(WorkDiary.branch_name == branch)
    if start:
        stmt = stmt.where(WorkDiary.work_date >= start)
    if end:
        stmt = stmt.where(WorkDiary.work_date <= end)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(WorkDiary.user_name.ilike(pattern), WorkDiary.branch_name.ilike(pattern)))
    return list(session.scalars(stmt))


# Sales

SALE_SEARCH_FIELDS = ("customer_name", "phone", "address", "order_details")


def query_sales(
    session,
    *,
    branch: Optional[str] = None,
    search: Optional[str] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
    shipping_only: bool = False,
) -> List[Sale]:
    stmt = select(Sale).order_by(Sale.created_at.desc(), Sale.id.desc())
    if branch:
        stmt = stmt.where(Sale.branch_name == branch)
    if shipping_only:
        stmt = stmt.where(Sale.needs_shipping.is_(True))
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(*(getattr(Sale, name).ilike(pattern) for name in SALE_SEARCH_FIELDS)))
    if start:
        stmt = stmt.where(
            Sale.created_at >= datetime.datetime.combine(start, datetime.time.min, tzinfo=datetime.timezone.utc)
        )
    if end:
        next_day = end + datetime.timedelta(days=1)
        stmt = stmt.where(
            Sale.created_at < datetime.datetime.combine(next_day, datetime.time.min, tzinfo=datetime.timezone.utc)
        )
    return list(session.scalars(stmt))


def delete_sale(session, sale_id: int) -> None:
    sale = session.get(Sale, sale_id)
    if not sale:
        return
    session.delete(sale)
    session.commit()


# Events


def list_events(session, *, status: Optional[str] = None) -> List[Event]:
    stmt = select(Event).order_by(Event.created_at.desc(), Event.id.desc())
    if status:
        stmt = stmt.where(Event.status == status)
    return list(session.scalars(stmt))


def find_user_by_referral_code(session, code: str) -> Optional[User]:
    return session.scalars(select(User).where(User.referral_code == code.strip().upper())).first()


def query_event_participants(
    session,
    *,
    event_name: Optional[str] = None,
    referrer_code: Optional[str] = None,
) -> List[EventParticipant]:
    stmt = select(EventParticipant).order_by(EventParticipant.created_at.desc(), EventParticipant.id.desc())
    if event_name:
        stmt = stmt.where(EventParticipant.event_name == event_name)
    if referrer_code:
        stmt = stmt.where(EventParticipant.referrer_code == referrer_code)
    return list(session.scalars(stmt))


# Notices


def list_notices(session, *, limit: Optional[int] = None) -> List[Notice]:
    stmt = select(Notice).order_by(Notice.created_at.desc(), Notice.id.desc())
    if limit:
        stmt = stmt.limit(limit)
    return list(session.scalars(stmt))


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Duty",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=str(user_id),
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log


def list_audit_log(session, *, actions: Optional[Iterable[str]] = None) -> List[AuditLog]:
    stmt = select(AuditLog).order_by(AuditLog.id)
    if actions:
        stmt = stmt.where(AuditLog.action.in_(list(actions)))
    return list(session.scalars(stmt))
