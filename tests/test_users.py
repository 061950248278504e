import pytest

from app.schoolerp import create_app
from app.schoolerp.db import session_scope
from app.schoolerp.models import Base, SchoolAuditEvent, StudentGuardian, SuperAdmin
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


def _superadmin(client):
    r = client.post("/api/auth/login", json={"email": "root@example.com", "password": "root-pass"})
    return {"Authorization": f"Bearer {r.json['token']}"}


def _create_school(client, sa, code="NPS"):
    r = client.post(
        "/api/schools",
        json={
            "name": f"{code} Public School",
            "code": code,
            "admin": {"first_name": "Asha", "last_name": "Rao", "email": f"admin@{code.lower()}.test", "password": "admin-pass"},
        },
        headers=sa,
    )
    assert r.status_code == 201, r.json
    return r.json


def _school_login(client, code, identifier, password):
    r = client.post("/api/auth/school-login", json={"identifier": identifier, "password": password, "school_code": code})
    assert r.status_code == 200, r.json
    return {"Authorization": f"Bearer {r.json['token']}"}


def _new_user(client, admin, role, email, **extra):
    body = {"role": role, "first_name": "Test", "last_name": role.title(), "email": email}
    body.update(extra)
    r = client.post("/api/users", json=body, headers=admin)
    assert r.status_code == 201, r.json
    return r.json


@pytest.fixture()
def admin(client):
    sa = _superadmin(client)
    _create_school(client, sa)
    return _school_login(client, "NPS", "NPS_ADM001", "admin-pass")


def test_create_users_get_sequential_ids(client, admin):
    teacher = _new_user(client, admin, "teacher", "t1@nps.test", subjects=["Maths", "Physics"])
    assert teacher["user"]["user_id"] == "NPS_TEA001"
    assert teacher["user"]["subjects"] == ["Maths", "Physics"]
    assert teacher["user"]["password_change_required"] is True
    assert len(teacher["credentials"]["password"]) == 8

    student = _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="b", date_of_birth="2012-03-09")
    assert student["user"]["user_id"] == "NPS0001"
    assert student["user"]["section"] == "B"
    assert student["credentials"]["password"] == "09032012"

    parent = _new_user(client, admin, "parent", "p1@nps.test")
    assert parent["user"]["user_id"] == "NPS_PAR001"
    second = _new_user(client, admin, "teacher", "t2@nps.test")
    assert second["user"]["user_id"] == "NPS_TEA002"


def test_create_user_validation(client, admin):
    r = client.post("/api/users", json={"role": "janitor", "first_name": "X", "email": "bad"}, headers=admin)
    assert r.status_code == 400
    errors = r.json["errors"]
    assert any(e.startswith("Invalid role") for e in errors)
    assert "First name must be 2-50 characters." in errors
    assert "Last name is required." in errors
    assert "Email is invalid." in errors

    r = client.post(
        "/api/users",
        json={"role": "student", "first_name": "Ravi", "last_name": "Kumar", "email": "ravi@nps.test"},
        headers=admin,
    )
    assert r.status_code == 400
    assert "Class is required for students." in r.json["errors"]


def test_duplicate_email_is_409(client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test")
    r = client.post(
        "/api/users",
        json={"role": "parent", "first_name": "Other", "last_name": "Person", "email": "T1@nps.test"},
        headers=admin,
    )
    assert r.status_code == 409


def test_teacher_cannot_create_users(client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test", password="teach-pass")
    teacher = _school_login(client, "NPS", "NPS_TEA001", "teach-pass")
    r = client.post(
        "/api/users",
        json={"role": "parent", "first_name": "Other", "last_name": "Person", "email": "x@nps.test"},
        headers=teacher,
    )
    assert r.status_code == 403


def test_list_and_filters(client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test")
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A")
    _new_user(client, admin, "student", "s2@nps.test", class_name="8", section="A", first_name="Meera")

    r = client.get("/api/users", headers=admin)
    assert r.json["pagination"]["total"] == 4

    r = client.get("/api/users?role=student", headers=admin)
    assert [u["user_id"] for u in r.json["users"]] == ["NPS0001", "NPS0002"]
    r = client.get("/api/users?role=student&class_name=8", headers=admin)
    assert [u["user_id"] for u in r.json["users"]] == ["NPS0002"]
    r = client.get("/api/users?q=meera", headers=admin)
    assert [u["user_id"] for u in r.json["users"]] == ["NPS0002"]
    r = client.get("/api/users?per_page=2&page=2", headers=admin)
    assert r.json["pagination"]["pages"] == 2
    assert len(r.json["users"]) == 2


def test_superadmin_lists_users_with_school_header(client, admin):
    sa = _superadmin(client)
    r = client.get("/api/users", headers={**sa, "X-School-Code": "NPS"})
    assert r.status_code == 200
    assert r.json["users"][0]["user_id"] == "NPS_ADM001"
    assert client.get("/api/users", headers=sa).status_code == 400


def test_next_id_does_not_consume(client, admin):
    r = client.get("/api/users/next-id/student", headers=admin)
    assert r.json["next_id"] == "NPS0001"
    r = client.get("/api/users/next-id/student", headers=admin)
    assert r.json["next_id"] == "NPS0001"
    assert client.get("/api/users/next-id/janitor", headers=admin).status_code == 400


def test_export_csv(app, client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test")
    r = client.get("/api/users/export?role=teacher", headers=admin)
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    assert "attachment" in r.headers["Content-Disposition"]
    lines = r.data.decode("utf-8").splitlines()
    assert lines[0].startswith("User ID,Role")
    assert len(lines) == 2
    assert lines[1].startswith("NPS_TEA001,teacher")

    with school_session_scope(app, "NPS") as s:
        ev = s.query(SchoolAuditEvent).filter(SchoolAuditEvent.action == "user.export").one()
        assert '"row_count": 1' in ev.metadata_json


def test_detail_scoping_for_students_and_parents(client, admin):
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A", password="student-1")
    _new_user(client, admin, "student", "s2@nps.test", class_name="7", section="A")
    _new_user(client, admin, "parent", "p1@nps.test", password="parent-1")
    r = client.post("/api/users/NPS0001/guardians", json={"parent_id": "NPS_PAR001", "relationship_type": "mother"}, headers=admin)
    assert r.status_code == 201

    student = _school_login(client, "NPS", "NPS0001", "student-1")
    assert client.get("/api/users/NPS0001", headers=student).status_code == 200
    assert client.get("/api/users/NPS0002", headers=student).status_code == 403

    parent = _school_login(client, "NPS", "p1@nps.test", "parent-1")
    r = client.get("/api/users/NPS_PAR001", headers=parent)
    assert [c["user_id"] for c in r.json["user"]["children"]] == ["NPS0001"]
    r = client.get("/api/users/NPS0001", headers=parent)
    assert r.status_code == 200
    assert r.json["user"]["guardians"][0]["user_id"] == "NPS_PAR001"
    assert client.get("/api/users/NPS0002", headers=parent).status_code == 403
    assert client.get("/api/users/NPS9999", headers=admin).status_code == 404


def test_guardian_link_is_idempotent(app, client, admin):
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A")
    _new_user(client, admin, "parent", "p1@nps.test")
    _new_user(client, admin, "teacher", "t1@nps.test")

    r = client.post("/api/users/NPS0001/guardians", json={"parent_id": "NPS_PAR001"}, headers=admin)
    assert r.status_code == 201
    r = client.post("/api/users/NPS0001/guardians", json={"parent_id": "nps_par001"}, headers=admin)
    assert r.status_code == 200
    assert client.post("/api/users/NPS0001/guardians", json={"parent_id": "NPS_TEA001"}, headers=admin).status_code == 404
    assert client.post("/api/users/NPS_TEA001/guardians", json={"parent_id": "NPS_PAR001"}, headers=admin).status_code == 400
    assert client.post("/api/users/NPS0001/guardians", json={}, headers=admin).status_code == 400

    with school_session_scope(app, "NPS") as s:
        assert s.query(StudentGuardian).count() == 1


def test_update_user(client, admin):
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A")
    _new_user(client, admin, "teacher", "t1@nps.test")

    r = client.put("/api/users/NPS0001", json={"phone": "9876543210", "section": "c"}, headers=admin)
    assert r.status_code == 200
    assert r.json["changes"] == ["phone", "section"]
    assert r.json["user"]["section"] == "C"

    r = client.put("/api/users/NPS0001", json={"role": "teacher"}, headers=admin)
    assert r.status_code == 400
    assert r.json["errors"] == ["Role cannot be changed."]
    r = client.put("/api/users/NPS0001", json={"email": "t1@nps.test"}, headers=admin)
    assert r.status_code == 409
    r = client.put("/api/users/NPS0001", json={"phone": "12"}, headers=admin)
    assert r.status_code == 400


def test_status_and_self_guard(client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test", password="teach-pass")

    r = client.patch("/api/users/NPS_TEA001/status", json={"is_active": False}, headers=admin)
    assert r.status_code == 200
    assert r.json["user"]["is_active"] is False
    r = client.post("/api/auth/school-login", json={"identifier": "NPS_TEA001", "password": "teach-pass", "school_code": "NPS"})
    assert r.status_code == 400

    r = client.patch("/api/users/NPS_ADM001/status", json={"is_active": False}, headers=admin)
    assert r.status_code == 400
    assert r.json["message"] == "You cannot deactivate your own account"


def test_reset_password(client, admin):
    _new_user(client, admin, "teacher", "t1@nps.test", password="teach-pass")
    r = client.post("/api/users/NPS_TEA001/reset-password", headers=admin)
    assert r.status_code == 200
    new_password = r.json["credentials"]["password"]
    assert new_password != "teach-pass"

    r = client.post("/api/auth/school-login", json={"identifier": "NPS_TEA001", "password": "teach-pass", "school_code": "NPS"})
    assert r.status_code == 400
    r = client.post("/api/auth/school-login", json={"identifier": "NPS_TEA001", "password": new_password, "school_code": "NPS"})
    assert r.status_code == 200
    assert r.json["password_change_required"] is True


def test_delete_user(app, client, admin):
    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A")
    _new_user(client, admin, "parent", "p1@nps.test")
    client.post("/api/users/NPS0001/guardians", json={"parent_id": "NPS_PAR001"}, headers=admin)

    r = client.delete("/api/users/NPS_PAR001", headers=admin)
    assert r.status_code == 200
    assert client.get("/api/users/NPS_PAR001", headers=admin).status_code == 404
    assert client.delete("/api/users/NPS_ADM001", headers=admin).status_code == 400
    with school_session_scope(app, "NPS") as s:
        assert s.query(StudentGuardian).count() == 0


def test_create_user_rejects_non_string_email(client, admin):
    r = client.post(
        "/api/users",
        json={"role": "parent", "first_name": "Other", "last_name": "Person", "email": ["a@b.co"]},
        headers=admin,
    )
    assert r.status_code == 400
    assert "Email must be a string." in r.json["errors"]


def test_delete_student_removes_their_records(app, client, admin):
    from datetime import date, timedelta

    from app.schoolerp.modules.attendance.models import AttendanceRecord
    from app.schoolerp.modules.results.models import Result, ResultSubject

    _new_user(client, admin, "student", "s1@nps.test", class_name="7", section="A")
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    r = client.post("/api/attendance/mark", json={"student_id": "NPS0001", "date": yesterday, "status": "absent"}, headers=admin)
    assert r.status_code == 201
    r = client.post(
        "/api/results",
        json={
            "student_id": "NPS0001",
            "class_name": "7",
            "section": "A",
            "exam_type": "Unit Test 1",
            "subjects": [{"name": "Maths", "marks_obtained": 40}],
        },
        headers=admin,
    )
    assert r.status_code == 201

    assert client.delete("/api/users/NPS0001", headers=admin).status_code == 200
    _new_user(client, admin, "student", "s2@nps.test", class_name="7", section="A")

    with school_session_scope(app, "NPS") as s:
        assert s.query(AttendanceRecord).count() == 0
        assert s.query(Result).count() == 0
        assert s.query(ResultSubject).count() == 0

    r = client.get("/api/attendance/students/NPS0002/report", headers=admin)
    assert r.status_code == 200
    assert r.json["summary"]["total_days"] == 0
    r = client.get("/api/results/students/NPS0002", headers=admin)
    assert r.json["result_count"] == 0
