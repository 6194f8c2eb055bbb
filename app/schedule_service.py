from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from database import (
    delete_duty,
    find_duty,
    get_branch_id,
    get_diaries_between,
    get_duties_between,
    insert_duty,
    list_all_employees,
    list_branch_employees,
    record_audit_log,
    update_duty,
)
from schedule_model import (
    DiaryEntry,
    Employee,
    EphemeralEmployee,
    PersistedEmployee,
    ScheduleEntry,
    ScheduleStatus,
    TimeValue,
    WeekWindow,
    daily_total,
    employee_status,
    format_time,
    week_grand_total,
    weekly_total,
)
from schedule_store import ScheduleStore, SessionContext

logger = logging.getLogger(__name__)


@dataclass
class SaveFailure:
    employee_id: object
    work_date: datetime.date
    action: str
    message: str


@dataclass
class SaveReport:
    saved: int = 0
    deleted: int = 0
    failures: List[SaveFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def summary(self) -> str:
        if self.ok:
            return "Saved."
        return f"Saved {self.saved}, deleted {self.deleted}, {len(self.failures)} failed."


def duty_to_entry(duty) -> ScheduleEntry:
    return ScheduleEntry(
        employee_id=duty.user_id,
        date=duty.work_date,
        start_time=duty.start_time,
        end_time=duty.end_time,
    )


def diary_to_entry(diary) -> DiaryEntry:
    return DiaryEntry(
        employee_id=diary.user_id,
        date=diary.work_date,
        start_time=diary.start_time,
        end_time=diary.end_time,
        check_clean=bool(diary.daily_check_clean),
        check_training=bool(diary.daily_check_training),
        check_list=bool(diary.daily_check_list),
        out_content=diary.out_content,
        exemplary_content=diary.exemplary_content,
        memorable_customer=diary.memorable_customer,
        suggestions=diary.suggestions,
    )


def _to_employee(payload: Dict) -> PersistedEmployee:
    return PersistedEmployee(
        id=payload["id"],
        name=payload["name"],
        branch=payload.get("branch"),
        user_type=payload.get("user_type"),
    )


class WeeklyScheduleService:
    """Week of planned and actual hours for one branch, backed by the database.

    ``on_error`` receives a user-facing message for every failed write; the UI
    shows it in a blocking dialog.
    """

    def __init__(
        self,
        session_factory,
        *,
        store: Optional[ScheduleStore] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.session_factory = session_factory
        self.store = store or ScheduleStore()
        self.on_error = on_error
        self.week: Optional[WeekWindow] = None
        self.employees: List[Employee] = []
        self.directory: List[PersistedEmployee] = []
        self.diaries: Dict[Tuple[object, datetime.date], DiaryEntry] = {}

    def load_week(self, context: SessionContext, week: WeekWindow) -> None:
        self.week = week
        first, last = week.fetch_range()
        temporary = [employee for employee in self.employees if employee.is_temporary]
        self.employees = self._fetch_employees(context) + temporary
        self.directory = self._fetch_directory()

        duties: List[ScheduleEntry] = []
        try:
            with self.session_factory() as session:
                duties = [duty_to_entry(duty) for duty in get_duties_between(session, first, last)]
        except SQLAlchemyError:
            logger.warning("Failed to load duties for %s", week.label, exc_info=True)
        self.store.load_week(week, duties)

        self.diaries = {}
        try:
            with self.session_factory() as session:
                for diary in get_diaries_between(session, first, last):
                    entry = diary_to_entry(diary)
                    self.diaries[entry.key] = entry
        except SQLAlchemyError:
            logger.warning("Failed to load work diaries for %s", week.label, exc_info=True)

    def _fetch_employees(self, context: SessionContext) -> List[Employee]:
        try:
            with self.session_factory() as session:
                return [_to_employee(row) for row in list_branch_employees(session, context.current_branch)]
        except SQLAlchemyError:
            logger.warning("Failed to load employees for branch %s", context.current_branch, exc_info=True)
            return []

    def _fetch_directory(self) -> List[PersistedEmployee]:
        try:
            with self.session_factory() as session:
                return [_to_employee(row) for row in list_all_employees(session)]
        except SQLAlchemyError:
            logger.warning("Failed to load employee directory", exc_info=True)
            return []

    # Roster edits only affect this screen; nothing is written.

    def add_employee(self, employee_id: object) -> Optional[PersistedEmployee]:
        if any(employee.key == employee_id for employee in self.employees):
            return None
        for candidate in self.directory:
            if candidate.id == employee_id:
                self.employees.append(candidate)
                return candidate
        return None

    def add_temporary_employee(self, name: str, branch: Optional[str]) -> EphemeralEmployee:
        name = (name or "").strip()
        if not name:
            raise ValueError("Enter a name for the part-time staff member.")
        employee = EphemeralEmployee(name=name, branch=branch)
        self.store.mark_temporary(employee.key)
        self.employees.append(employee)
        return employee

    def remove_employee(self, employee_key: object) -> None:
        self.employees = [employee for employee in self.employees if employee.key != employee_key]

    def edit_interval(
        self,
        employee_id: object,
        date: datetime.date,
        start: TimeValue,
        end: TimeValue,
    ) -> Optional[ScheduleEntry]:
        """Set or clear a planned interval for a persisted employee shown in this week."""
        shown = [employee for employee in self.employees if employee.key == employee_id]
        if not shown or shown[0].is_temporary:
            raise ValueError(f"Employee {employee_id} is not on this schedule.")
        if self.week and date not in self.week:
            raise ValueError(f"{date.isoformat()} is outside {self.week.label}.")
        return self.store.set_interval(employee_id, date, start, end)

    def search_directory(self, term: str, exclude_branch: Optional[str]) -> List[PersistedEmployee]:
        term = (term or "").strip().lower()
        matches = []
        for employee in self.directory:
            if employee.branch == exclude_branch:
                continue
            if term and term not in employee.name.lower() and term not in (employee.branch or "").lower():
                continue
            matches.append(employee)
        return matches

    def save(self, context: SessionContext) -> SaveReport:
        """Write pending deletes and edited entries one at a time; failures do not stop the loop.

        Rows that already exist keep their own branch and creator, only the
        interval and hours change. New rows take the viewed branch and the
        signed-in user.
        """
        report = SaveReport()
        actor = context.user_id
        with self.session_factory() as session:
            try:
                branch_id = get_branch_id(session, context.current_branch)
            except SQLAlchemyError:
                logger.warning("Branch lookup failed for %s", context.current_branch, exc_info=True)
                branch_id = None

            for employee_id, work_date in self.store.pending_deletes():
                try:
                    delete_duty(session, employee_id, work_date)
                    record_audit_log(
                        session,
                        actor,
                        "duty_delete",
                        payload={"user_id": employee_id, "work_date": work_date.isoformat()},
                    )
                    self.store.acknowledge_delete(employee_id, work_date)
                    report.deleted += 1
                except SQLAlchemyError as exc:
                    session.rollback()
                    self._report_failure(report, employee_id, work_date, "delete", exc)

            for (employee_id, work_date), entry in self.store.flush():
                interval = {
                    "start_time": entry.start_time,
                    "end_time": entry.end_time,
                    "work_hours": entry.hours,
                }
                action = "insert"
                try:
                    existing = find_duty(session, employee_id, work_date)
                    if existing:
                        action = "update"
                        update_duty(session, existing.id, interval)
                        target_id = existing.id
                    else:
                        values = dict(interval, user_id=employee_id, work_date=work_date)
                        values.update(branch_id=branch_id, created_by=actor)
                        target_id = insert_duty(session, values)
                    record_audit_log(
                        session,
                        actor,
                        f"duty_{action}",
                        target_id=target_id,
                        payload={
                            "user_id": employee_id,
                            "work_date": work_date.isoformat(),
                            "start": format_time(entry.start_time),
                            "end": format_time(entry.end_time),
                        },
                    )
                    self.store.mark_clean(employee_id, work_date)
                    report.saved += 1
                except (SQLAlchemyError, ValueError) as exc:
                    session.rollback()
                    self._report_failure(report, employee_id, work_date, action, exc)
        logger.info(
            "Saved schedule for %s: %d written, %d deleted, %d failed",
            self.week.label if self.week else "-",
            report.saved,
            report.deleted,
            len(report.failures),
        )
        return report

    def _report_failure(
        self,
        report: SaveReport,
        employee_id: object,
        work_date: datetime.date,
        action: str,
        exc: Exception,
    ) -> None:
        labels = {"insert": "Insert failed", "update": "Update failed", "delete": "Delete failed"}
        message = f"{labels.get(action, 'Save failed')}: {exc}"
        report.failures.append(SaveFailure(employee_id, work_date, action, message))
        logger.error("Duty %s failed for %s on %s: %s", action, employee_id, work_date, exc)
        if self.on_error:
            self.on_error(message)

    # Aggregates for the grid

    def diary(self, employee_id: object, date: datetime.date) -> Optional[DiaryEntry]:
        return self.diaries.get((employee_id, date))

    def planned_weekly_total(self, employee_id: object) -> float:
        return weekly_total(self.store.entries(), employee_id, self.week) if self.week else 0.0

    def actual_weekly_total(self, employee_id: object) -> float:
        return weekly_total(self.diaries.values(), employee_id, self.week) if self.week else 0.0

    def shown_keys(self) -> Set[object]:
        return {employee.key for employee in self.employees}

    def planned_daily_total(self, date: datetime.date) -> float:
        return daily_total(self.store.entries(), date, self.shown_keys())

    def actual_daily_total(self, date: datetime.date) -> float:
        return daily_total(self.diaries.values(), date, self.shown_keys())

    def planned_grand_total(self) -> float:
        if not self.week:
            return 0.0
        return week_grand_total(self.store.entries(), self.week, self.shown_keys())

    def actual_grand_total(self) -> float:
        if not self.week:
            return 0.0
        return week_grand_total(self.diaries.values(), self.week, self.shown_keys())

    def status_for(self, employee_id: object, today: Optional[datetime.date] = None) -> ScheduleStatus:
        if not self.week:
            return ScheduleStatus.NO_PLAN
        return employee_status(
            employee_id,
            self.week,
            self.store.entries(),
            self.diaries.values(),
            today or datetime.date.today(),
        )
