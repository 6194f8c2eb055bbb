from __future__ import annotations

import datetime
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from database import (
    Event,
    EventParticipant,
    find_user_by_referral_code,
    list_events,
    query_event_participants,
    record_audit_log,
)
from roles import can_access_management, validate_referral_code

logger = logging.getLogger(__name__)

EVENT_ACTIVE = "active"
EVENT_INACTIVE = "inactive"
EVENT_STATUSES = [EVENT_ACTIVE, EVENT_INACTIVE]
GENDER_MALE = "남"
GENDER_FEMALE = "여"
CHILD_AGE_RANGE = (1, 20)
AGE_CHART_RANGE = (3, 7)
TOP_REFERRER_LIMIT = 12


class EventValidationError(ValueError):
    pass


class ParticipantValidationError(ValueError):
    pass


@dataclass(frozen=True)
class QrBox:
    """Where the QR code sits on a poster, in percent of the template's width and height."""

    x: float
    y: float
    width: float
    height: float

    def validate(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise EventValidationError("Mark where the QR code goes on the template.")
        if self.x < 0 or self.y < 0 or self.x + self.width > 100 or self.y + self.height > 100:
            raise EventValidationError("The QR area must lie inside the template.")

    def pixel_box(self, size) -> tuple:
        width, height = size
        return (
            int(self.x / 100 * width),
            int(self.y / 100 * height),
            max(1, int(self.width / 100 * width)),
            max(1, int(self.height / 100 * height)),
        )


def event_qr_box(event: Event) -> QrBox:
    return QrBox(event.qr_x, event.qr_y, event.qr_width, event.qr_height)


def referral_link(landing_url: str, referral_code: str) -> str:
    """``landing_url`` with ``ref=<code>`` set, keeping any query it already has."""
    parts = urlsplit(landing_url)
    query = [(key, value) for key, value in parse_qsl(parts.query) if key != "ref"]
    query.append(("ref", referral_code))
    return urlunsplit(parts._replace(query=urlencode(query)))


@dataclass
class EventForm:
    name: str = ""
    landing_url: str = ""
    description: str = ""
    template_path: str = ""
    qr_box: Optional[QrBox] = None
    start_date: Optional[datetime.date] = None
    end_date: Optional[datetime.date] = None
    status: str = EVENT_ACTIVE

    def validate(self) -> None:
        if not self.name.strip():
            raise EventValidationError("Enter the event name.")
        if not re.match(r"^https?://", self.landing_url.strip()):
            raise EventValidationError("The landing URL must start with http:// or https://.")
        if self.qr_box is None:
            raise EventValidationError("Mark where the QR code goes on the template.")
        self.qr_box.validate()
        if self.status not in EVENT_STATUSES:
            raise EventValidationError(f"Unknown event status '{self.status}'.")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise EventValidationError("The event cannot end before it starts.")


def _require_manager(user: Dict[str, Any]) -> None:
    if not can_access_management(user):
        raise PermissionError("Only managers can manage events.")


def _apply(event: Event, form: EventForm) -> None:
    event.name = form.name.strip()
    event.landing_url = form.landing_url.strip()
    event.description = form.description.strip()
    event.template_path = form.template_path.strip()
    event.qr_x = form.qr_box.x
    event.qr_y = form.qr_box.y
    event.qr_width = form.qr_box.width
    event.qr_height = form.qr_box.height
    event.start_date = form.start_date
    event.end_date = form.end_date
    event.status = form.status


def create_event(session, user: Dict[str, Any], form: EventForm) -> Event:
    _require_manager(user)
    form.validate()
    event = Event(created_by=user.get("id"))
    _apply(event, form)
    session.add(event)
    session.commit()
    session.refresh(event)
    record_audit_log(session, user.get("id"), "event_create", target_type="Event", target_id=event.id)
    logger.info("Event %s created by user %s", event.id, user.get("id"))
    return event


def update_event(session, user: Dict[str, Any], event_id: int, form: EventForm) -> Event:
    _require_manager(user)
    form.validate()
    event = session.get(Event, event_id)
    if not event:
        raise ValueError(f"Event with id {event_id} was not found.")
    _apply(event, form)
    session.commit()
    return event


def toggle_event_status(session, user: Dict[str, Any], event_id: int) -> str:
    _require_manager(user)
    event = session.get(Event, event_id)
    if not event:
        raise ValueError(f"Event with id {event_id} was not found.")
    event.status = EVENT_INACTIVE if event.status == EVENT_ACTIVE else EVENT_ACTIVE
    session.commit()
    return event.status


def delete_event(session, user: Dict[str, Any], event_id: int) -> None:
    _require_manager(user)
    event = session.get(Event, event_id)
    if not event:
        return
    session.delete(event)
    session.commit()
    record_audit_log(session, user.get("id"), "event_delete", target_type="Event", target_id=event_id)


def active_events(session) -> List[Event]:
    return list_events(session, status=EVENT_ACTIVE)


@dataclass
class ParticipantForm:
    parent_name: str = ""
    phone: str = ""
    child_gender: str = ""
    child_age: Optional[int] = None
    inquiry: str = ""
    referrer_code: str = ""
    privacy_agreed: bool = False
    marketing_agreed: bool = False

    def validate(self) -> None:
        if not self.parent_name.strip():
            raise ParticipantValidationError("Enter the parent's name.")
        if len(re.sub(r"\D", "", self.phone or "")) != 11:
            raise ParticipantValidationError("Enter an 11-digit mobile number.")
        if self.child_gender not in (GENDER_MALE, GENDER_FEMALE):
            raise ParticipantValidationError("Choose the child's gender.")
        low, high = CHILD_AGE_RANGE
        try:
            age = int(self.child_age)
        except (TypeError, ValueError):
            raise ParticipantValidationError("Enter the child's age.")
        if not low <= age <= high:
            raise ParticipantValidationError(f"The child's age must be between {low} and {high}.")
        if not self.privacy_agreed:
            raise ParticipantValidationError("Agree to the collection of personal information.")
        if self.referrer_code.strip():
            valid, message = validate_referral_code(self.referrer_code)
            if not valid:
                raise ParticipantValidationError(message)


def register_participant(session, event_id: int, form: ParticipantForm) -> EventParticipant:
    """Sign a visitor up for an active event, crediting the staff member whose code they used."""
    form.validate()
    event = session.get(Event, event_id)
    if not event or event.status != EVENT_ACTIVE:
        raise ParticipantValidationError("This event is not accepting applications.")

    referrer = None
    code = form.referrer_code.strip().upper() or None
    if code:
        referrer = find_user_by_referral_code(session, code)
        if not referrer:
            raise ParticipantValidationError("That referral code does not exist.")

    participant = EventParticipant(
        event_id=event.id,
        event_name=event.name,
        parent_name=form.parent_name.strip(),
        phone=re.sub(r"\D", "", form.phone),
        child_gender=form.child_gender,
        child_age=int(form.child_age),
        inquiry=form.inquiry.strip() or None,
        referrer_code=code,
        referrer_id=referrer.id if referrer else None,
        referrer_name=referrer.name if referrer else None,
        privacy_agreed=True,
        marketing_agreed=bool(form.marketing_agreed),
    )
    session.add(participant)
    session.commit()
    session.refresh(participant)
    logger.info("Participant %s registered for event %s (ref %s)", participant.id, event.id, code or "-")
    return participant


def delete_participant(session, user: Dict[str, Any], participant_id: int) -> None:
    _require_manager(user)
    participant = session.get(EventParticipant, participant_id)
    if not participant:
        return
    session.delete(participant)
    session.commit()
    record_audit_log(
        session,
        user.get("id"),
        "participant_delete",
        target_type="EventParticipant",
        target_id=participant_id,
    )


@dataclass
class ParticipantStats:
    total: int = 0
    this_week: int = 0
    male: int = 0
    female: int = 0
    ages: List[Dict[str, int]] = field(default_factory=list)
    top_referrers: List[Dict[str, Any]] = field(default_factory=list)


def _created_on(participant: EventParticipant) -> datetime.date:
    created = participant.created_at
    if created.tzinfo is None:
        created = created.replace(tzinfo=datetime.timezone.utc)
    return created.astimezone(datetime.timezone.utc).date()


def participant_stats(
    session,
    *,
    event_name: Optional[str] = None,
    today: Optional[datetime.date] = None,
) -> ParticipantStats:
    """Dashboard figures: totals, sign-ups since Monday, ages 3-7 by gender, top referrers."""
    participants = query_event_participants(session, event_name=event_name)
    today = today or datetime.date.today()
    monday = today - datetime.timedelta(days=today.weekday())

    stats = ParticipantStats(total=len(participants))
    ages: Dict[int, Dict[str, int]] = {}
    referrers: Counter = Counter()
    names: Dict[str, Optional[str]] = {}
    low, high = AGE_CHART_RANGE
    for participant in participants:
        if _created_on(participant) >= monday:
            stats.this_week += 1
        if participant.child_gender == GENDER_MALE:
            stats.male += 1
        elif participant.child_gender == GENDER_FEMALE:
            stats.female += 1
        if low <= participant.child_age <= high:
            bucket = ages.setdefault(participant.child_age, {"age": participant.child_age, "male": 0, "female": 0, "total": 0})
            bucket["total"] += 1
            if participant.child_gender == GENDER_MALE:
                bucket["male"] += 1
            elif participant.child_gender == GENDER_FEMALE:
                bucket["female"] += 1
        if participant.referrer_code:
            referrers[participant.referrer_code] += 1
            names.setdefault(participant.referrer_code, participant.referrer_name)

    stats.ages = [ages[age] for age in sorted(ages)]
    for code, count in referrers.most_common(TOP_REFERRER_LIMIT):
        referrer = find_user_by_referral_code(session, code)
        stats.top_referrers.append(
            {
                "code": code,
                "name": names.get(code) or (referrer.name if referrer else "-"),
                "branch": referrer.branch if referrer and referrer.branch else "-",
                "count": count,
            }
        )
    return stats
