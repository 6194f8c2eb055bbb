from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, list_audit_log  # noqa: E402
from work_diary import (  # noqa: E402
    DiaryValidationError,
    WorkDiaryForm,
    diary_hours,
    diary_time_options,
    list_work_diaries,
    submit_work_diary,
)

WORK_DATE = datetime.date(2024, 3, 5)
OWNER = {"id": 2, "name": "Kim", "branch": "Gangnam", "user_type": "owner"}
OTHER_OWNER = {"id": 3, "name": "Park", "branch": "Hongdae", "user_type": "owner"}
MANAGER = {"id": 1, "name": "Boss", "branch": "Gangnam", "user_type": "store_manager"}
ADMIN = {"id": 9, "name": "Admin", "branch": None, "user_type": "system_admin"}


@pytest.fixture()
def session():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    with Session() as db_session:
        yield db_session
    engine.dispose()


def test_time_options_cover_half_hours_from_0830_to_2230() -> None:
    options = diary_time_options()
    assert options[0] == "08:30"
    assert options[-1] == "22:30"
    assert len(options) == 29


def test_diary_hours_rounding_and_floor_at_zero() -> None:
    assert diary_hours(WORK_DATE, "09:00", "13:30") == 4.5
    assert diary_hours(WORK_DATE, "09:00", "09:50") == 0.8
    assert diary_hours(WORK_DATE, "18:00", "09:00") == 0.0
    assert diary_hours(None, "09:00", "18:00") == 0.0
    assert diary_hours(WORK_DATE, "09:00", "") == 0.0


def test_form_validation_messages() -> None:
    with pytest.raises(DiaryValidationError, match="work date"):
        WorkDiaryForm().validate()
    with pytest.raises(DiaryValidationError, match="start time"):
        WorkDiaryForm(work_date=WORK_DATE).validate()
    with pytest.raises(DiaryValidationError, match="later than start"):
        WorkDiaryForm(work_date=WORK_DATE, start_time="12:00", end_time="11:00").validate()
    assert not WorkDiaryForm().has_content()
    assert WorkDiaryForm(check_clean=True).has_content()


def test_submit_then_resubmit_replaces_same_day(session) -> None:
    form = WorkDiaryForm(
        work_date=WORK_DATE,
        start_time="09:00",
        end_time="18:00",
        check_clean=True,
        out_content="  Restocked the window display  ",
    )
    first = submit_work_diary(session, OWNER, form)
    assert first.work_hours == 9.0
    assert first.out_content == "Restocked the window display"

    form.end_time = "17:30"
    second = submit_work_diary(session, OWNER, form)
    assert second.id == first.id
    assert second.work_hours == 8.5
    assert [log.action for log in list_audit_log(session)] == ["diary_submit", "diary_update"]


def test_monitoring_agent_cannot_submit(session) -> None:
    agent = {"id": 5, "name": "Agent", "branch": "Gangnam", "user_type": "monitoring_agent"}
    form = WorkDiaryForm(work_date=WORK_DATE, start_time="09:00", end_time="18:00")
    with pytest.raises(PermissionError):
        submit_work_diary(session, agent, form)


def test_manager_listing_is_branch_scoped(session) -> None:
    form = WorkDiaryForm(work_date=WORK_DATE, start_time="09:00", end_time="18:00")
    submit_work_diary(session, OWNER, form)
    submit_work_diary(session, OTHER_OWNER, form)

    names = [diary.user_name for diary in list_work_diaries(session, MANAGER, branch="Hongdae")]
    assert names == ["Kim"]
    assert len(list_work_diaries(session, ADMIN)) == 2
    assert [d.user_name for d in list_work_diaries(session, ADMIN, search="park")] == ["Park"]
    assert list_work_diaries(session, ADMIN, start=WORK_DATE + datetime.timedelta(days=1)) == []
    with pytest.raises(PermissionError):
        list_work_diaries(session, OWNER)
