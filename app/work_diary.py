from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from database import WorkDiary, find_work_diary, query_work_diaries, record_audit_log
from roles import can_access_all_branches, can_manage_work_diaries, can_write_work_diary
from schedule_model import TimeValue, parse_time

logger = logging.getLogger(__name__)


class DiaryValidationError(ValueError):
    pass


def diary_time_options() -> List[str]:
    """Half-hour choices offered on the diary form, 08:30 through 22:30."""
    options = []
    minutes = 8 * 60 + 30
    while minutes <= 22 * 60 + 30:
        options.append(f"{minutes // 60:02d}:{minutes % 60:02d}")
        minutes += 30
    return options


def diary_hours(work_date: Optional[datetime.date], start: TimeValue, end: TimeValue) -> float:
    if not work_date:
        return 0.0
    start_time = parse_time(start)
    end_time = parse_time(end)
    if start_time is None or end_time is None:
        return 0.0
    delta = datetime.datetime.combine(work_date, end_time) - datetime.datetime.combine(work_date, start_time)
    hours = delta.total_seconds() / 3600
    return round(hours, 1) if hours > 0 else 0.0


def _clean(text: Optional[str]) -> Optional[str]:
    text = (text or "").strip()
    return text or None


@dataclass
class WorkDiaryForm:
    work_date: Optional[datetime.date] = None
    start_time: TimeValue = None
    end_time: TimeValue = None
    check_clean: bool = False
    check_training: bool = False
    check_list: bool = False
    out_content: str = ""
    exemplary_content: str = ""
    memorable_customer: str = ""
    suggestions: str = ""

    @property
    def work_hours(self) -> float:
        return diary_hours(self.work_date, self.start_time, self.end_time)

    def has_content(self) -> bool:
        return any(
            [
                self.work_date,
                self.start_time,
                self.end_time,
                self.out_content,
                self.exemplary_content,
                self.memorable_customer,
                self.suggestions,
                self.check_clean,
                self.check_training,
                self.check_list,
            ]
        )

    def validate(self) -> None:
        if not self.work_date:
            raise DiaryValidationError("Select the work date.")
        if not parse_time(self.start_time):
            raise DiaryValidationError("Select the start time.")
        if not parse_time(self.end_time):
            raise DiaryValidationError("Select the end time.")
        if self.work_hours <= 0:
            raise DiaryValidationError("End time must be later than start time.")


def submit_work_diary(session, user: Dict[str, Any], form: WorkDiaryForm) -> WorkDiary:
    """Validate and store a diary; a second submission for the same date replaces the first."""
    if not can_write_work_diary(user):
        raise PermissionError("Your account cannot write work diaries.")
    form.validate()
    values = {
        "user_id": user["id"],
        "user_name": user.get("name") or "",
        "branch_name": user.get("branch"),
        "work_date": form.work_date,
        "start_time": parse_time(form.start_time),
        "end_time": parse_time(form.end_time),
        "work_hours": form.work_hours,
        "daily_check_clean": bool(form.check_clean),
        "daily_check_training": bool(form.check_training),
        "daily_check_list": bool(form.check_list),
        "out_content": _clean(form.out_content),
        "exemplary_content": _clean(form.exemplary_content),
        "memorable_customer": _clean(form.memorable_customer),
        "suggestions": _clean(form.suggestions),
    }
    diary = find_work_diary(session, user["id"], form.work_date)
    action = "diary_update" if diary else "diary_submit"
    if diary is None:
        diary = WorkDiary(**values)
        session.add(diary)
    else:
        for field_name, value in values.items():
            setattr(diary, field_name, value)
    session.commit()
    session.refresh(diary)
    record_audit_log(
        session,
        user["id"],
        action,
        target_type="WorkDiary",
        target_id=diary.id,
        payload={"work_date": form.work_date.isoformat(), "hours": diary.work_hours},
    )
    logger.info("Work diary %s for user %s on %s", action, user["id"], form.work_date)
    return diary


def list_work_diaries(
    session,
    user: Dict[str, Any],
    *,
    branch: Optional[str] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
    search: Optional[str] = None,
) -> List[WorkDiary]:
    if not can_manage_work_diaries(user):
        raise PermissionError("Only managers can review work diaries.")
    if not can_access_all_branches(user):
        branch = user.get("branch")
    return query_work_diaries(session, branch=branch, start=start, end=end, search=search)
