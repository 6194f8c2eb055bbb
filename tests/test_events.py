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

from database import Base, EventParticipant, User  # noqa: E402
from events import (  # noqa: E402
    EVENT_INACTIVE,
    EventForm,
    EventValidationError,
    ParticipantForm,
    ParticipantValidationError,
    QrBox,
    active_events,
    create_event,
    delete_participant,
    participant_stats,
    referral_link,
    register_participant,
    toggle_event_status,
)

UTC = datetime.timezone.utc
MANAGER = {"id": 1, "name": "Boss", "branch": "Gangnam", "user_type": "store_manager"}
OWNER = {"id": 2, "name": "Kim", "branch": "Gangnam", "user_type": "owner"}


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
        db_session.add_all(
            [
                User(email="kim@example.com", name="Kim", branch="Gangnam", user_type="owner", referral_code="LAS1001"),
                User(email="yoon@example.com", name="Yoon", branch="Hongdae", user_type="contract_worker", referral_code="LAS5000"),
            ]
        )
        db_session.commit()
        yield db_session
    engine.dispose()


def _event_form(**overrides) -> EventForm:
    values = {
        "name": "Math letter",
        "landing_url": "https://example.com/letter",
        "qr_box": QrBox(60, 70, 30, 20),
    }
    values.update(overrides)
    return EventForm(**values)


def _signup(**overrides) -> ParticipantForm:
    values = {
        "parent_name": "Lee",
        "phone": "01011112222",
        "child_gender": "남",
        "child_age": 5,
        "privacy_agreed": True,
    }
    values.update(overrides)
    return ParticipantForm(**values)


def test_referral_link_keeps_existing_query() -> None:
    assert referral_link("https://example.com/e", "LAS1001") == "https://example.com/e?ref=LAS1001"
    assert (
        referral_link("https://example.com/e?utm=qr&ref=OLD", "LAS1001")
        == "https://example.com/e?utm=qr&ref=LAS1001"
    )


def test_qr_box_must_fit_the_template() -> None:
    QrBox(0, 0, 100, 100).validate()
    assert QrBox(10, 50, 40, 25).pixel_box((200, 300)) == (20, 150, 80, 75)
    with pytest.raises(EventValidationError):
        QrBox(0, 0, 0, 10).validate()
    with pytest.raises(EventValidationError):
        QrBox(80, 0, 30, 10).validate()


def test_event_form_validation() -> None:
    with pytest.raises(EventValidationError, match="landing URL"):
        _event_form(landing_url="example.com").validate()
    with pytest.raises(EventValidationError, match="QR"):
        _event_form(qr_box=None).validate()
    with pytest.raises(EventValidationError, match="end"):
        _event_form(start_date=datetime.date(2024, 3, 5), end_date=datetime.date(2024, 3, 1)).validate()


def test_only_managers_create_events(session) -> None:
    with pytest.raises(PermissionError):
        create_event(session, OWNER, _event_form())
    event = create_event(session, MANAGER, _event_form(name="  Math letter "))
    assert event.name == "Math letter"
    assert [item.id for item in active_events(session)] == [event.id]
    assert toggle_event_status(session, MANAGER, event.id) == EVENT_INACTIVE
    assert active_events(session) == []


def test_participant_validation() -> None:
    with pytest.raises(ParticipantValidationError, match="11-digit"):
        _signup(phone="010-111").validate()
    with pytest.raises(ParticipantValidationError, match="between"):
        _signup(child_age=21).validate()
    with pytest.raises(ParticipantValidationError, match="gender"):
        _signup(child_gender="").validate()
    with pytest.raises(ParticipantValidationError, match="personal"):
        _signup(privacy_agreed=False).validate()
    with pytest.raises(ParticipantValidationError):
        _signup(referrer_code="ABC").validate()


def test_register_participant_credits_referrer(session) -> None:
    event = create_event(session, MANAGER, _event_form())
    participant = register_participant(session, event.id, _signup(phone="010-1111-2222", referrer_code="las1001"))
    assert participant.phone == "01011112222"
    assert (participant.referrer_code, participant.referrer_name) == ("LAS1001", "Kim")
    assert participant.event_name == "Math letter"

    anonymous = register_participant(session, event.id, _signup())
    assert anonymous.referrer_id is None
    with pytest.raises(ParticipantValidationError, match="does not exist"):
        register_participant(session, event.id, _signup(referrer_code="LAS1002"))
    with pytest.raises(ParticipantValidationError):
        register_participant(session, 999, _signup())


def test_participant_stats(session) -> None:
    event = create_event(session, MANAGER, _event_form())
    other = create_event(session, MANAGER, _event_form(name="Open day"))
    today = datetime.date(2024, 3, 6)
    signups = [
        (event, _signup(child_gender="남", child_age=3, referrer_code="LAS5000"), datetime.date(2024, 3, 4)),
        (event, _signup(child_gender="여", child_age=3, referrer_code="LAS1001"), datetime.date(2024, 3, 1)),
        (event, _signup(child_gender="여", child_age=9, referrer_code="LAS5000"), datetime.date(2024, 3, 6)),
        (other, _signup(child_gender="남", child_age=4), datetime.date(2024, 3, 5)),
    ]
    for target, form, day in signups:
        participant = register_participant(session, target.id, form)
        participant.created_at = datetime.datetime.combine(day, datetime.time(12, 0), tzinfo=UTC)
    session.commit()

    stats = participant_stats(session, event_name="Math letter", today=today)
    assert (stats.total, stats.this_week, stats.male, stats.female) == (3, 2, 1, 2)
    assert stats.ages == [{"age": 3, "male": 1, "female": 1, "total": 2}]
    assert stats.top_referrers[0] == {"code": "LAS5000", "name": "Yoon", "branch": "Hongdae", "count": 2}
    assert participant_stats(session, today=today).total == 4


def test_delete_participant_requires_manager(session) -> None:
    event = create_event(session, MANAGER, _event_form())
    participant = register_participant(session, event.id, _signup())
    with pytest.raises(PermissionError):
        delete_participant(session, OWNER, participant.id)
    delete_participant(session, MANAGER, participant.id)
    assert session.get(EventParticipant, participant.id) is None
