"""HTTP wrapper over the back-office database.

Exposes the weekly schedule (planned and actual hours with status), work
diary submission, the sales list, branch and account administration, events
with referral posters, and notices for clients other than the desktop app.
Sessions are bearer tokens kept in memory for the lifetime of the process.
Everyone below system admin is kept to their own branch.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import secrets
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from accounts import AUDIT_FILE, AccountLockedError, AccountStatusError, AccountStore, AuditLogger, public_user  # noqa: E402
from database import (  # noqa: E402
    DATA_DIR,
    Event,
    SessionLocal,
    create_branch,
    deactivate_branch,
    init_database,
    list_active_branches,
    list_users,
    update_branch,
)
from events import (  # noqa: E402
    EventForm,
    EventValidationError,
    ParticipantForm,
    ParticipantValidationError,
    QrBox,
    active_events,
    create_event,
    participant_stats,
    referral_link,
    register_participant,
    toggle_event_status,
)
from notices import post_notice, recent_notices  # noqa: E402
from referral_qr import poster_filename, render_referral_poster  # noqa: E402
from roles import can_access_management, can_edit_schedule, can_manage_users, visible_branch  # noqa: E402
from sales import search_sales  # noqa: E402
from schedule_model import STATUS_LABELS, WeekWindow, format_time  # noqa: E402
from schedule_service import WeeklyScheduleService  # noqa: E402
from schedule_store import SessionContext  # noqa: E402
from work_diary import DiaryValidationError, WorkDiaryForm, submit_work_diary  # noqa: E402

EVENT_TEMPLATE_DIR = DATA_DIR / "event_templates"


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_database()
    yield


app = FastAPI(title="Branch Office API", version="0.1", lifespan=lifespan)

_tokens: Dict[str, Dict[str, Any]] = {}


def get_session_factory():
    return SessionLocal


def get_db(session_factory=Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_account_store(session_factory=Depends(get_session_factory)) -> AccountStore:
    return AccountStore(session_factory, AuditLogger(AUDIT_FILE))


def signed_in_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    scheme, _, token = (authorization or "").partition(" ")
    user = _tokens.get(token.strip()) if scheme.lower() == "bearer" else None
    if not user:
        raise HTTPException(status_code=401, detail="Sign in first")
    return user


def current_user(user: Dict[str, Any] = Depends(signed_in_user)) -> Dict[str, Any]:
    if user.get("must_change_password"):
        raise HTTPException(status_code=403, detail="Change your password first")
    return user


def require_manager(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if not can_access_management(user):
        raise HTTPException(status_code=403, detail="Managers only")
    return user


def _parse_week_start(value: str) -> WeekWindow:
    try:
        return WeekWindow(datetime.date.fromisoformat(value))
    except ValueError:
        raise HTTPException(status_code=400, detail="weekStart must be a Monday in YYYY-MM-DD form")


def _parse_date(value: Optional[str], name: str) -> Optional[datetime.date]:
    if not value:
        return None
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")


def _week_payload(service: WeeklyScheduleService, week: WeekWindow, today: datetime.date) -> Dict[str, Any]:
    rows = []
    for employee in service.employees:
        days = []
        for work_date in week.dates:
            planned = service.store.get(employee.key, work_date)
            actual = service.diary(employee.key, work_date)
            days.append(
                {
                    "date": work_date.isoformat(),
                    "start": format_time(planned.start_time) if planned else "",
                    "end": format_time(planned.end_time) if planned else "",
                    "hours": (planned.hours or 0.0) if planned else 0.0,
                    "actual_hours": (actual.hours or 0.0) if actual else 0.0,
                }
            )
        status = service.status_for(employee.key, today)
        rows.append(
            {
                "employee_id": employee.key,
                "name": employee.name,
                "branch": employee.branch,
                "temporary": employee.is_temporary,
                "days": days,
                "planned_total": service.planned_weekly_total(employee.key),
                "actual_total": service.actual_weekly_total(employee.key),
                "status": status.value,
                "status_label": STATUS_LABELS[status],
            }
        )
    return {
        "week_start": week.monday.isoformat(),
        "label": week.label,
        "employees": rows,
        "daily_totals": [
            {
                "date": work_date.isoformat(),
                "planned": service.planned_daily_total(work_date),
                "actual": service.actual_daily_total(work_date),
            }
            for work_date in week.dates
        ],
        "planned_total": service.planned_grand_total(),
        "actual_total": service.actual_grand_total(),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/auth/login")
def login(payload: Dict[str, Any], store: AccountStore = Depends(get_account_store)) -> JSONResponse:
    email = (payload.get("email") or "").strip()
    password = payload.get("password") or ""
    try:
        user = store.verify_credentials(email, password)
    except AccountLockedError as exc:
        raise HTTPException(status_code=423, detail=f"Account locked until {exc.until.isoformat()}")
    except AccountStatusError as exc:
        raise HTTPException(status_code=403, detail=str(exc))
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = secrets.token_urlsafe(24)
    _tokens[token] = user
    return JSONResponse(content=jsonable_encoder({"token": token, "user": user}))


@app.post("/api/v1/auth/logout")
def logout(authorization: Optional[str] = Header(None)) -> Dict[str, str]:
    _, _, token = (authorization or "").partition(" ")
    _tokens.pop(token.strip(), None)
    return {"status": "ok"}


@app.post("/api/v1/auth/password")
def change_password(
    payload: Dict[str, Any],
    authorization: Optional[str] = Header(None),
    user: Dict[str, Any] = Depends(signed_in_user),
    store: AccountStore = Depends(get_account_store),
) -> Dict[str, str]:
    try:
        store.change_password(user["id"], payload.get("current_password") or "", payload.get("new_password") or "")
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _, _, token = (authorization or "").partition(" ")
    _tokens[token.strip()] = dict(user, must_change_password=False)
    return {"status": "ok"}


@app.get("/api/v1/weeks/{week_start}/schedule")
def week_schedule(
    week_start: str,
    branch: Optional[str] = Query(None),
    today: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(current_user),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    week = _parse_week_start(week_start)
    context = SessionContext(current_user=user, current_branch=visible_branch(user, branch))
    service = WeeklyScheduleService(session_factory)
    service.load_week(context, week)
    reference = _parse_date(today, "today") or datetime.date.today()
    return JSONResponse(content=jsonable_encoder(_week_payload(service, week, reference)))


@app.put("/api/v1/weeks/{week_start}/schedule")
def save_week_schedule(
    week_start: str,
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(current_user),
    session_factory=Depends(get_session_factory),
) -> JSONResponse:
    if not can_edit_schedule(user):
        raise HTTPException(status_code=403, detail="Only managers can edit the schedule")
    week = _parse_week_start(week_start)
    context = SessionContext(current_user=user, current_branch=visible_branch(user, payload.get("branch")))
    service = WeeklyScheduleService(session_factory)
    service.load_week(context, week)
    for employee_id in payload.get("extra_employees") or []:
        if service.add_employee(employee_id) is None and employee_id not in service.shown_keys():
            raise HTTPException(status_code=400, detail=f"Unknown employee {employee_id}")

    for item in payload.get("entries") or []:
        work_date = _parse_date(item.get("date"), "date")
        if work_date is None or work_date not in week:
            raise HTTPException(status_code=400, detail="Each entry needs a date inside the week")
        try:
            service.edit_interval(item.get("employee_id"), work_date, item.get("start"), item.get("end"))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    report = service.save(context)
    status_code = 200 if report.ok else 207
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(
            {
                "saved": report.saved,
                "deleted": report.deleted,
                "failures": [
                    {
                        "employee_id": failure.employee_id,
                        "date": failure.work_date.isoformat(),
                        "action": failure.action,
                        "message": failure.message,
                    }
                    for failure in report.failures
                ],
            }
        ),
    )


@app.post("/api/v1/work-diaries")
def create_work_diary(
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(current_user),
    db=Depends(get_db),
) -> JSONResponse:
    form = WorkDiaryForm(
        work_date=_parse_date(payload.get("work_date"), "work_date"),
        start_time=payload.get("start_time"),
        end_time=payload.get("end_time"),
        check_clean=bool(payload.get("check_clean")),
        check_training=bool(payload.get("check_training")),
        check_list=bool(payload.get("check_list")),
        out_content=payload.get("out_content") or "",
        exemplary_content=payload.get("exemplary_content") or "",
        memorable_customer=payload.get("memorable_customer") or "",
        suggestions=payload.get("suggestions") or "",
    )
    try:
        diary = submit_work_diary(db, user, form)
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except (DiaryValidationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder(
            {
                "id": diary.id,
                "work_date": diary.work_date.isoformat(),
                "start_time": format_time(diary.start_time),
                "end_time": format_time(diary.end_time),
                "work_hours": diary.work_hours,
            }
        ),
    )


@app.get("/api/v1/sales")
def list_sales(
    search: Optional[str] = Query(None),
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    shipping_only: bool = Query(False),
    user: Dict[str, Any] = Depends(current_user),
    db=Depends(get_db),
) -> JSONResponse:
    sales = search_sales(
        db,
        user,
        branch=branch,
        search=search,
        start=_parse_date(start, "start"),
        end=_parse_date(end, "end"),
        shipping_only=shipping_only,
    )
    rows = [
        {
            "id": sale.id,
            "created_at": sale.created_at,
            "branch": sale.branch_name,
            "seller": sale.user_name,
            "customer_name": sale.customer_name,
            "phone": sale.phone,
            "address": sale.address,
            "quantity": sale.quantity,
            "payment_method": sale.payment_method,
            "needs_shipping": sale.needs_shipping,
        }
        for sale in sales
    ]
    return JSONResponse(content=jsonable_encoder({"sales": rows}))


def _branch_payload(branch) -> Dict[str, Any]:
    return {"id": branch.id, "name": branch.name, "address": branch.address, "phone": branch.phone}


@app.get("/api/v1/branches")
def branches(user: Dict[str, Any] = Depends(current_user), db=Depends(get_db)) -> JSONResponse:
    rows = [_branch_payload(branch) for branch in list_active_branches(db)]
    return JSONResponse(content=jsonable_encoder({"branches": rows}))


@app.post("/api/v1/branches")
def add_branch(
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> JSONResponse:
    try:
        branch = create_branch(
            db,
            payload.get("name") or "",
            address=payload.get("address") or "",
            phone=payload.get("phone") or "",
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder(_branch_payload(branch)))


@app.patch("/api/v1/branches/{branch_id}")
def edit_branch(
    branch_id: int,
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> JSONResponse:
    values = {key: payload[key] for key in ("name", "address", "phone") if key in payload}
    try:
        branch = update_branch(db, branch_id, **values)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder(_branch_payload(branch)))


@app.delete("/api/v1/branches/{branch_id}")
def remove_branch(
    branch_id: int,
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> Dict[str, str]:
    deactivate_branch(db, branch_id)
    return {"status": "ok"}


@app.get("/api/v1/users")
def users(
    status: Optional[str] = Query(None),
    branch: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(current_user),
    db=Depends(get_db),
) -> JSONResponse:
    if not can_manage_users(user):
        raise HTTPException(status_code=403, detail="Managers only")
    try:
        rows = list_users(db, branch=visible_branch(user, branch), status=status)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder({"users": [public_user(row) for row in rows]}))


@app.post("/api/v1/users/{user_id}/approve")
def approve_user(
    user_id: int,
    user: Dict[str, Any] = Depends(current_user),
    store: AccountStore = Depends(get_account_store),
) -> JSONResponse:
    try:
        approved = store.approve_user(user, user_id)
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JSONResponse(content=jsonable_encoder(approved))


def _event_payload(event: Event, user: Dict[str, Any]) -> Dict[str, Any]:
    code = user.get("referral_code")
    return {
        "id": event.id,
        "name": event.name,
        "description": event.description,
        "landing_url": event.landing_url,
        "status": event.status,
        "start_date": event.start_date,
        "end_date": event.end_date,
        "referral_link": referral_link(event.landing_url, code) if code else None,
    }


@app.get("/api/v1/events")
def events(user: Dict[str, Any] = Depends(current_user), db=Depends(get_db)) -> JSONResponse:
    rows = [_event_payload(event, user) for event in active_events(db)]
    return JSONResponse(content=jsonable_encoder({"events": rows}))


@app.post("/api/v1/events")
def add_event(
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> JSONResponse:
    box = payload.get("qr_position") or {}
    try:
        form = EventForm(
            name=payload.get("name") or "",
            landing_url=payload.get("landing_url") or "",
            description=payload.get("description") or "",
            template_path=payload.get("template_path") or "",
            qr_box=QrBox(
                float(box.get("x", 0)),
                float(box.get("y", 0)),
                float(box.get("width", 0)),
                float(box.get("height", 0)),
            ),
            start_date=_parse_date(payload.get("start_date"), "start_date"),
            end_date=_parse_date(payload.get("end_date"), "end_date"),
        )
        event = create_event(db, user, form)
    except (EventValidationError, ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder(_event_payload(event, user)))


@app.post("/api/v1/events/{event_id}/toggle")
def toggle_event(
    event_id: int,
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> Dict[str, str]:
    try:
        return {"status": toggle_event_status(db, user, event_id)}
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/api/v1/events/{event_id}/participants")
def join_event(event_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    """Public sign-up from an event landing page; no session needed."""
    form = ParticipantForm(
        parent_name=payload.get("parent_name") or "",
        phone=payload.get("phone") or "",
        child_gender=payload.get("child_gender") or "",
        child_age=payload.get("child_age"),
        inquiry=payload.get("inquiry") or "",
        referrer_code=payload.get("ref") or "",
        privacy_agreed=bool(payload.get("privacy_agreed")),
        marketing_agreed=bool(payload.get("marketing_agreed")),
    )
    try:
        participant = register_participant(db, event_id, form)
    except ParticipantValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder({"id": participant.id, "referrer_name": participant.referrer_name}),
    )


@app.get("/api/v1/events/stats")
def event_stats(
    event_name: Optional[str] = Query(None),
    user: Dict[str, Any] = Depends(require_manager),
    db=Depends(get_db),
) -> JSONResponse:
    stats = participant_stats(db, event_name=event_name)
    return JSONResponse(content=jsonable_encoder(stats))


@app.get("/api/v1/events/{event_id}/poster")
def referral_poster(
    event_id: int,
    user: Dict[str, Any] = Depends(current_user),
    db=Depends(get_db),
) -> Response:
    event = db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    try:
        image = render_referral_poster(event, user, template_dir=EVENT_TEMPLATE_DIR)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    filename = poster_filename(user["referral_code"])
    return Response(
        content=image,
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/v1/notices")
def notices(user: Dict[str, Any] = Depends(current_user), db=Depends(get_db)) -> JSONResponse:
    rows = [
        {
            "id": notice.id,
            "title": notice.title,
            "content": notice.content,
            "author": notice.author_name,
            "created_at": notice.created_at,
        }
        for notice in recent_notices(db)
    ]
    return JSONResponse(content=jsonable_encoder({"notices": rows}))


@app.post("/api/v1/notices")
def add_notice(
    payload: Dict[str, Any],
    user: Dict[str, Any] = Depends(current_user),
    db=Depends(get_db),
) -> JSONResponse:
    try:
        notice = post_notice(db, user, payload.get("title") or "", payload.get("content") or "")
    except PermissionError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse(status_code=201, content=jsonable_encoder({"id": notice.id, "title": notice.title}))
