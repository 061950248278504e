from datetime import datetime

import pytest

from app.schoolerp import create_app
from app.schoolerp.db import session_scope
from app.schoolerp.models import Base, SchoolAuditEvent, SuperAdmin
from app.schoolerp.modules.messages.service import message_age
from app.schoolerp.security import hash_password
from app.schoolerp.tenancy import school_session_scope


@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'central.db'}")
    monkeypatch.setenv("SCHOOL_DATABASE_URL_TEMPLATE", f"sqlite:///{tmp_path}/{{database}}.db")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("STORAGE_BACKEND", "local")
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "100")
    monkeypatch.delenv("JWT_SECRET", raising=False)
    monkeypatch.chdir(tmp_path)

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add(SuperAdmin(email="root@example.com", password_hash=hash_password("root-pass"), is_active=True))
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


def _login(client, identifier, password):
    r = client.post("/api/auth/school-login", json={"identifier": identifier, "password": password, "school_code": "NPS"})
    assert r.status_code == 200, r.json
    return {"Authorization": f"Bearer {r.json['token']}"}


def _new_user(client, admin, role, email, **extra):
    body = {"role": role, "first_name": "Test", "last_name": role.title(), "email": email}
    body.update(extra)
    r = client.post("/api/users", json=body, headers=admin)
    assert r.status_code == 201, r.json


@pytest.fixture()
def school(client):
    """NPS with an admin, two teachers, two 7-A students, a 10-A student and a parent of NPS0001."""
    r = client.post("/api/auth/login", json={"email": "root@example.com", "password": "root-pass"})
    sa = {"Authorization": f"Bearer {r.json['token']}"}
    r = client.post(
        "/api/schools",
        json={
            "name": "Northside Public School",
            "code": "NPS",
            "admin": {"first_name": "Asha", "last_name": "Rao", "email": "admin@nps.test", "password": "admin-pass"},
        },
        headers=sa,
    )
    assert r.status_code == 201, r.json
    admin = _login(client, "NPS_ADM001", "admin-pass")

    _new_user(client, admin, "teacher", "t1@nps.test", password="teach-pass")
    _new_user(client, admin, "teacher", "t2@nps.test", password="teach-pass")
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A", password="student-1")
    _new_user(client, admin, "student", "s2@nps.test", class_name="7", section="A", password="student-2")
    _new_user(client, admin, "student", "s3@nps.test", class_name="10", section="A", password="student-3")
    _new_user(client, admin, "parent", "p1@nps.test", password="parent-1")
    client.post("/api/users/NPS0001/guardians", json={"parent_id": "NPS_PAR001"}, headers=admin)

    return {
        "admin": admin,
        "teacher": _login(client, "NPS_TEA001", "teach-pass"),
        "other_teacher": _login(client, "NPS_TEA002", "teach-pass"),
        "student": _login(client, "NPS0001", "student-1"),
        "parent": _login(client, "NPS_PAR001", "parent-1"),
    }


def _message(class_name, section, title="Field trip"):
    return {"class_name": class_name, "section": section, "title": title, "subject": "Trip", "message": "Bring lunch."}


def test_send_to_a_class(app, client, school):
    r = client.post("/api/messages", json=_message("7", "a"), headers=school["teacher"])
    assert r.status_code == 201, r.json
    data = r.json["data"]
    assert data["sent_count"] == 2
    assert [x["user_id"] for x in data["recipients"]] == ["NPS0001", "NPS0002"]
    assert data["message"]["section"] == "A"
    assert data["message"]["sender_id"] == "NPS_TEA001"
    assert data["message"]["message"] == "Bring lunch."
    assert data["message"]["message_age"] == "Today"

    r = client.post("/api/messages", json=_message("all", "ALL"), headers=school["admin"])
    assert r.json["data"]["sent_count"] == 3
    assert r.json["data"]["message"]["class_name"] == "ALL"

    with school_session_scope(app, "NPS") as s:
        assert s.query(SchoolAuditEvent).filter(SchoolAuditEvent.action == "message.send").count() == 2


def test_send_validation(client, school):
    r = client.post("/api/messages", json={}, headers=school["teacher"])
    assert r.status_code == 400
    assert r.json["errors"] == [
        "Title is required.",
        "Subject is required.",
        "Message is required.",
        "Class is required (or ALL).",
        "Section is required (or ALL).",
    ]

    r = client.post("/api/messages", json=_message("13", "A"), headers=school["teacher"])
    assert r.status_code == 400
    assert r.json["errors"] == ["Unknown class: 13"]


def test_send_without_recipients_is_rejected(app, client, school):
    r = client.post("/api/messages", json=_message("12", "A"), headers=school["teacher"])
    assert r.status_code == 400
    assert r.json["message"] == "No students found matching the selected criteria"
    r = client.get("/api/messages", headers=school["admin"])
    assert r.json["pagination"]["total"] == 0


def test_students_and_parents_cannot_send(client, school):
    for who in ("student", "parent"):
        r = client.post("/api/messages", json=_message("7", "A"), headers=school[who])
        assert r.status_code == 403


def test_preview(client, school):
    r = client.post("/api/messages/preview", json={"class_name": "7", "section": "all"}, headers=school["teacher"])
    assert r.status_code == 200, r.json
    data = r.json["data"]
    assert data["estimated_recipients"] == 2
    assert data["target_class"] == "7"
    assert data["target_section"] == "ALL"
    assert {x["user_id"] for x in data["sample_recipients"]} == {"NPS0001", "NPS0002"}

    r = client.post("/api/messages/preview", json={"class_name": "7"}, headers=school["teacher"])
    assert r.status_code == 400


def test_teachers_see_only_their_own_messages(client, school):
    mine = client.post("/api/messages", json=_message("7", "A", "Mine"), headers=school["teacher"]).json["data"]["message"]
    theirs = client.post("/api/messages", json=_message("10", "A", "Theirs"), headers=school["other_teacher"]).json["data"]["message"]
    client.post("/api/messages", json=_message("ALL", "ALL", "Office"), headers=school["admin"])

    r = client.get("/api/messages", headers=school["teacher"])
    assert [m["title"] for m in r.json["messages"]] == ["Mine"]
    assert r.json["pagination"]["total"] == 1

    r = client.get("/api/messages", headers=school["admin"])
    assert r.json["pagination"]["total"] == 3
    r = client.get("/api/messages", query_string={"class_name": "10"}, headers=school["admin"])
    assert [m["title"] for m in r.json["messages"]] == ["Theirs"]

    assert client.get(f"/api/messages/{mine['id']}", headers=school["teacher"]).status_code == 200
    assert client.get(f"/api/messages/{theirs['id']}", headers=school["teacher"]).status_code == 404
    assert client.get(f"/api/messages/{theirs['id']}", headers=school["admin"]).status_code == 200


def test_stats(client, school):
    client.post("/api/messages", json=_message("7", "A"), headers=school["teacher"])
    client.post("/api/messages", json=_message("7", "A"), headers=school["teacher"])
    client.post("/api/messages", json=_message("10", "A"), headers=school["other_teacher"])

    r = client.get("/api/messages/stats", headers=school["admin"])
    stats = r.json["stats"]
    assert stats["total_messages"] == 3
    assert stats["by_class"] == {"10": 1, "7": 2}
    assert stats["by_section"] == {"A": 3}
    assert stats["recent_messages"] == 3

    r = client.get("/api/messages/stats", headers=school["teacher"])
    assert r.json["stats"]["total_messages"] == 2


def test_inbox_for_students_and_parents(client, school):
    client.post("/api/messages", json=_message("7", "A", "Seven A"), headers=school["teacher"])
    client.post("/api/messages", json=_message("7", "ALL", "All of seven"), headers=school["teacher"])
    client.post("/api/messages", json=_message("10", "A", "Ten A"), headers=school["teacher"])
    client.post("/api/messages", json=_message("ALL", "ALL", "Everyone"), headers=school["admin"])

    for who in ("student", "parent"):
        r = client.get("/api/messages/inbox", headers=school[who])
        assert r.status_code == 200, r.json
        assert sorted(m["title"] for m in r.json["messages"]) == ["All of seven", "Everyone", "Seven A"]

    r = client.get("/api/messages/inbox", headers=school["teacher"])
    assert r.status_code == 403


def test_delete_is_limited_to_the_sender(app, client, school):
    msg = client.post("/api/messages", json=_message("7", "A"), headers=school["teacher"]).json["data"]["message"]

    r = client.delete(f"/api/messages/{msg['id']}", headers=school["other_teacher"])
    assert r.status_code == 403
    assert r.json["message"] == "You can only delete messages that you created"

    r = client.delete(f"/api/messages/{msg['id']}", headers=school["teacher"])
    assert r.status_code == 200
    assert client.delete(f"/api/messages/{msg['id']}", headers=school["admin"]).status_code == 404

    other = client.post("/api/messages", json=_message("7", "A"), headers=school["other_teacher"]).json["data"]["message"]
    assert client.delete(f"/api/messages/{other['id']}", headers=school["admin"]).status_code == 200

    with school_session_scope(app, "NPS") as s:
        assert s.query(SchoolAuditEvent).filter(SchoolAuditEvent.action == "message.delete").count() == 2


def test_message_age():
    now = datetime(2024, 6, 30, 12, 0)
    assert message_age(datetime(2024, 6, 30, 8, 0), now=now) == "Today"
    assert message_age(datetime(2024, 6, 29, 8, 0), now=now) == "Yesterday"
    assert message_age(datetime(2024, 6, 26, 12, 0), now=now) == "4 days ago"
    assert message_age(datetime(2024, 6, 16, 12, 0), now=now) == "2 weeks ago"
    assert message_age(datetime(2024, 4, 1, 12, 0), now=now) == "3 months ago"
