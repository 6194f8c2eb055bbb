from __future__ import annotations

import datetime
import io
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import accounts  # noqa: E402
import api  # noqa: E402
from accounts import AccountStore, AuditLogger  # noqa: E402
from database import Base, Duty, User  # noqa: E402


@pytest.fixture()
def client(monkeypatch, tmp_path):
    monkeypatch.setattr(accounts, "PBKDF2_ITERATIONS", 1_000)
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False, future=True)

    store = AccountStore(Session, AuditLogger(tmp_path / "audit.log"))
    store.ensure_admin("admin@example.com", "letmein")
    for email, name, branch, user_type in [
        ("boss@example.com", "Boss", "Gangnam", "store_manager"),
        ("kim@example.com", "Kim", "Gangnam", "owner"),
        ("agent@example.com", "Agent", "Gangnam", "monitoring_agent"),
        ("park@example.com", "Park", "Hongdae", "owner"),
    ]:
        user = store.sign_up(
            email=email, password="password123", name=name, branch=branch, user_type=user_type
        )
        with Session() as session:
            session.get(User, user["id"]).status = "approved"
            session.commit()

    api.app.dependency_overrides[api.get_session_factory] = lambda: Session
    api.app.dependency_overrides[api.get_account_store] = lambda: store
    monkeypatch.setattr(api, "_tokens", {})
    test_client = TestClient(api.app)
    test_client.Session = Session
    test_client.store = store
    yield test_client
    api.app.dependency_overrides.clear()
    engine.dispose()


def _login(client, email, password="password123"):
    response = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def _admin(client):
    headers = _login(client, "admin@example.com", "letmein")
    response = client.post(
        "/api/v1/auth/password",
        json={"current_password": "letmein", "new_password": "admin-password-1"},
        headers=headers,
    )
    assert response.status_code == 200, response.text
    return headers


def _user_id(client, email):
    with client.Session() as session:
        return session.scalars(select(User.id).where(User.email == email)).one()


def test_health(client) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_login_errors(client) -> None:
    response = client.post("/api/v1/auth/login", json={"email": "kim@example.com", "password": "nope"})
    assert response.status_code == 401
    assert client.get("/api/v1/weeks/2024-03-04/schedule").status_code == 401


def test_schedule_round_trip(client) -> None:
    headers = _login(client, "boss@example.com")
    kim = _user_id(client, "kim@example.com")
    payload = {
        "branch": "Gangnam",
        "entries": [
            {"employee_id": kim, "date": "2024-03-04", "start": "09:00", "end": "13:30"},
            {"employee_id": kim, "date": "2024-03-06", "start": "12:00", "end": "20:00"},
        ],
    }
    response = client.put("/api/v1/weeks/2024-03-04/schedule", json=payload, headers=headers)
    assert response.status_code == 200
    assert response.json()["saved"] == 2

    response = client.get(
        "/api/v1/weeks/2024-03-04/schedule",
        params={"branch": "Gangnam", "today": "2024-03-05"},
        headers=headers,
    )
    body = response.json()
    row = next(item for item in body["employees"] if item["employee_id"] == kim)
    assert row["planned_total"] == 12.5
    assert row["days"][0] == {
        "date": "2024-03-04",
        "start": "09:00",
        "end": "13:30",
        "hours": 4.5,
        "actual_hours": 0.0,
    }
    assert row["status"] == "behind"
    assert body["planned_total"] == 12.5

    clear = {"entries": [{"employee_id": kim, "date": "2024-03-04", "start": "", "end": ""}]}
    response = client.put("/api/v1/weeks/2024-03-04/schedule", json=clear, headers=headers)
    assert response.json()["deleted"] == 1
    with client.Session() as session:
        dates = list(session.scalars(select(Duty.work_date)))
    assert dates == [datetime.date(2024, 3, 6)]


def test_schedule_rejects_non_monday_and_non_managers(client) -> None:
    headers = _login(client, "kim@example.com")
    assert client.get("/api/v1/weeks/2024-03-05/schedule", headers=headers).status_code == 400
    response = client.put("/api/v1/weeks/2024-03-04/schedule", json={"entries": []}, headers=headers)
    assert response.status_code == 403


def test_work_diary_submission_feeds_actual_hours(client) -> None:
    headers = _login(client, "kim@example.com")
    response = client.post(
        "/api/v1/work-diaries",
        json={"work_date": "2024-03-04", "start_time": "09:00", "end_time": "18:00", "check_clean": True},
        headers=headers,
    )
    assert response.status_code == 201
    assert response.json()["work_hours"] == 9.0

    bad = client.post(
        "/api/v1/work-diaries",
        json={"work_date": "2024-03-04", "start_time": "18:00", "end_time": "09:00"},
        headers=headers,
    )
    assert bad.status_code == 400

    body = client.get("/api/v1/weeks/2024-03-04/schedule", headers=headers).json()
    row = next(item for item in body["employees"] if item["name"] == "Kim")
    assert row["actual_total"] == 9.0


def test_sales_list_is_branch_scoped(client) -> None:
    headers = _login(client, "kim@example.com")
    response = client.get("/api/v1/sales", headers=headers)
    assert response.status_code == 200
    assert response.json() == {"sales": []}
    assert client.get("/api/v1/sales", params={"start": "03/04"}, headers=headers).status_code == 400


def test_seeded_admin_must_change_password_before_using_the_api(client) -> None:
    headers = _login(client, "admin@example.com", "letmein")
    response = client.get("/api/v1/weeks/2024-03-04/schedule", headers=headers)
    assert response.status_code == 403
    weak = client.post(
        "/api/v1/auth/password",
        json={"current_password": "letmein", "new_password": "short"},
        headers=headers,
    )
    assert weak.status_code == 400

    headers = _admin(client)
    assert client.get("/api/v1/weeks/2024-03-04/schedule", headers=headers).status_code == 200
    fresh = client.post(
        "/api/v1/auth/login", json={"email": "admin@example.com", "password": "admin-password-1"}
    )
    assert fresh.json()["user"]["must_change_password"] is False


def test_schedule_save_rejects_temporary_and_foreign_staff(client) -> None:
    headers = _login(client, "boss@example.com")
    park = _user_id(client, "park@example.com")
    for employee_id in ["parttime_1", park]:
        payload = {"entries": [{"employee_id": employee_id, "date": "2024-03-04", "start": "09:00", "end": "17:00"}]}
        response = client.put("/api/v1/weeks/2024-03-04/schedule", json=payload, headers=headers)
        assert response.status_code == 400
    with client.Session() as session:
        assert list(session.scalars(select(Duty))) == []

    payload = {
        "extra_employees": [park],
        "entries": [{"employee_id": park, "date": "2024-03-05", "start": "09:00", "end": "17:00"}],
    }
    response = client.put("/api/v1/weeks/2024-03-04/schedule", json=payload, headers=headers)
    assert response.status_code == 200
    assert response.json()["saved"] == 1


def test_branch_query_is_ignored_below_system_admin(client) -> None:
    park = _user_id(client, "park@example.com")
    with client.Session() as session:
        session.add(
            Duty(
                user_id=park,
                work_date=datetime.date(2024, 3, 4),
                start_time=datetime.time(9, 0),
                end_time=datetime.time(17, 0),
                work_hours=8.0,
            )
        )
        session.commit()

    agent = _login(client, "agent@example.com")
    body = client.get(
        "/api/v1/weeks/2024-03-04/schedule", params={"branch": "Hongdae"}, headers=agent
    ).json()
    assert [row["name"] for row in body["employees"]] == ["Agent", "Boss", "Kim"]
    assert body["planned_total"] == 0.0

    boss = _login(client, "boss@example.com")
    payload = {
        "branch": "Hongdae",
        "entries": [{"employee_id": park, "date": "2024-03-04", "start": "10:00", "end": "17:00"}],
    }
    assert client.put("/api/v1/weeks/2024-03-04/schedule", json=payload, headers=boss).status_code == 400

    admin = _admin(client)
    body = client.get(
        "/api/v1/weeks/2024-03-04/schedule", params={"branch": "Hongdae"}, headers=admin
    ).json()
    assert [row["name"] for row in body["employees"]] == ["Park"]
    assert body["planned_total"] == 8.0


def test_branch_administration(client) -> None:
    kim = _login(client, "kim@example.com")
    assert client.post("/api/v1/branches", json={"name": "Busan"}, headers=kim).status_code == 403

    boss = _login(client, "boss@example.com")
    created = client.post("/api/v1/branches", json={"name": "Busan", "address": "Haeundae"}, headers=boss)
    assert created.status_code == 201
    branch_id = created.json()["id"]
    assert client.post("/api/v1/branches", json={"name": "Busan"}, headers=boss).status_code == 400

    renamed = client.patch(f"/api/v1/branches/{branch_id}", json={"phone": "051-000-0000"}, headers=boss)
    assert renamed.json()["phone"] == "051-000-0000"
    listed = client.get("/api/v1/branches", headers=kim).json()["branches"]
    assert [branch["name"] for branch in listed] == ["Busan"]

    assert client.delete(f"/api/v1/branches/{branch_id}", headers=boss).status_code == 200
    assert client.get("/api/v1/branches", headers=kim).json() == {"branches": []}


def test_user_listing_and_approval_are_branch_scoped(client) -> None:
    pending = client.store.sign_up(
        email="new@example.com", password="password123", name="New", branch="Gangnam", user_type="owner"
    )
    kim = _login(client, "kim@example.com")
    assert client.get("/api/v1/users", headers=kim).status_code == 403

    boss = _login(client, "boss@example.com")
    emails = {row["email"] for row in client.get("/api/v1/users", params={"branch": "Hongdae"}, headers=boss).json()["users"]}
    assert "park@example.com" not in emails
    assert "new@example.com" in emails
    waiting = client.get("/api/v1/users", params={"status": "pending"}, headers=boss).json()["users"]
    assert [row["email"] for row in waiting] == ["new@example.com"]
    assert client.get("/api/v1/users", params={"status": "archived"}, headers=boss).status_code == 400

    approved = client.post(f"/api/v1/users/{pending['id']}/approve", headers=boss)
    assert approved.json()["status"] == "approved"
    park = _user_id(client, "park@example.com")
    assert client.post(f"/api/v1/users/{park}/approve", headers=boss).status_code == 403


def test_event_referral_flow(client, tmp_path) -> None:
    template = tmp_path / "poster.png"
    Image.new("RGB", (200, 300), "white").save(template)
    boss = _login(client, "boss@example.com")
    created = client.post(
        "/api/v1/events",
        json={
            "name": "Spring open day",
            "landing_url": "https://example.com/event",
            "template_path": str(template),
            "qr_position": {"x": 10, "y": 50, "width": 40, "height": 25},
        },
        headers=boss,
    )
    assert created.status_code == 201, created.text
    event_id = created.json()["id"]

    kim = _login(client, "kim@example.com")
    listed = client.get("/api/v1/events", headers=kim).json()["events"]
    assert listed[0]["referral_link"] == "https://example.com/event?ref=LAS1001"

    poster = client.get(f"/api/v1/events/{event_id}/poster", headers=kim)
    assert poster.status_code == 200
    assert poster.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(poster.content)).size == (200, 300)

    signup = {
        "parent_name": "Lee",
        "phone": "010-1111-2222",
        "child_gender": "여",
        "child_age": 5,
        "privacy_agreed": True,
        "ref": "las1001",
    }
    joined = client.post(f"/api/v1/events/{event_id}/participants", json=signup)
    assert joined.status_code == 201
    assert joined.json()["referrer_name"] == "Kim"
    unknown = client.post(f"/api/v1/events/{event_id}/participants", json=dict(signup, ref="LAS1999"))
    assert unknown.status_code == 400

    assert client.get("/api/v1/events/stats", headers=kim).status_code == 403
    stats = client.get("/api/v1/events/stats", headers=boss).json()
    assert stats["total"] == 1 and stats["female"] == 1
    assert stats["top_referrers"][0]["code"] == "LAS1001"

    assert client.post(f"/api/v1/events/{event_id}/toggle", headers=boss).json() == {"status": "inactive"}
    assert client.post(f"/api/v1/events/{event_id}/participants", json=signup).status_code == 400


def test_notices(client) -> None:
    kim = _login(client, "kim@example.com")
    assert client.post("/api/v1/notices", json={"title": "Hi", "content": "x"}, headers=kim).status_code == 403
    boss = _login(client, "boss@example.com")
    assert client.post("/api/v1/notices", json={"title": " ", "content": "x"}, headers=boss).status_code == 400
    posted = client.post("/api/v1/notices", json={"title": "Stocktake", "content": "Friday 9pm"}, headers=boss)
    assert posted.status_code == 201
    notices = client.get("/api/v1/notices", headers=kim).json()["notices"]
    assert [(notice["title"], notice["author"]) for notice in notices] == [("Stocktake", "Boss")]
