import pytest

from app.schoolerp import create_app
from app.schoolerp.db import session_scope
from app.schoolerp.models import AccessRule, AuditEvent, Base, School, SuperAdmin
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


def _create_school(client, sa, code, **extra):
    body = {
        "name": f"{code} Public School",
        "code": code,
        "admin": {"first_name": "Asha", "last_name": "Rao", "email": f"admin@{code.lower()}.test", "password": "admin-pass"},
    }
    body.update(extra)
    r = client.post("/api/schools", json=body, headers=sa)
    assert r.status_code == 201, r.json
    return r.json


def _school_login(client, code, identifier, password):
    r = client.post("/api/auth/school-login", json={"identifier": identifier, "password": password, "school_code": code})
    assert r.status_code == 200, r.json
    return {"Authorization": f"Bearer {r.json['token']}"}


def _admin(client, code="NPS"):
    return _school_login(client, code, f"{code}_ADM001", "admin-pass")


def test_create_school_with_defaults(app, client):
    sa = _superadmin(client)
    body = _create_school(client, sa, "nps", city="Pune", pincode="411001")

    school = body["school"]
    assert school["code"] == "NPS"
    assert school["database_name"] == "school_nps"
    assert school["database_created"] is True
    assert school["school_type"] == "Private"
    assert school["affiliation_board"] == "CBSE"
    assert school["address"]["city"] == "Pune"
    assert school["address"]["country"] == "India"
    assert body["admin"]["credentials"] == {"user_id": "NPS_ADM001", "password": "admin-pass"}

    with session_scope(app) as s:
        assert s.query(AuditEvent).filter(AuditEvent.action == "school.create").count() == 1


def test_create_school_without_admin(client):
    sa = _superadmin(client)
    r = client.post("/api/schools", json={"name": "Hill School", "code": "HILL"}, headers=sa)
    assert r.status_code == 201
    assert r.json["admin"] is None


def test_create_school_validation(client):
    sa = _superadmin(client)
    r = client.post(
        "/api/schools",
        json={"name": "X", "code": "bad code!", "pincode": "12", "school_type": "Charter", "contact_phone": "12ab"},
        headers=sa,
    )
    assert r.status_code == 400
    errors = r.json["errors"]
    assert "School name must be 2-255 characters." in errors
    assert any(e.startswith("School code must be") for e in errors)
    assert "Pincode must be 6 digits." in errors
    assert any(e.startswith("Invalid school type") for e in errors)
    assert "Contact phone must be 7-10 digits." in errors


def test_create_school_rejects_bad_admin(client):
    sa = _superadmin(client)
    r = client.post(
        "/api/schools",
        json={"name": "Hill School", "code": "HILL", "admin": {"first_name": "A", "email": "nope"}},
        headers=sa,
    )
    assert r.status_code == 400
    assert all(e.startswith("admin: ") for e in r.json["errors"])


def test_duplicate_code_is_409(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    r = client.post("/api/schools", json={"name": "Other", "code": "nps"}, headers=sa)
    assert r.status_code == 409


def test_school_routes_require_superadmin(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)
    assert client.post("/api/schools", json={"name": "Other", "code": "OTH"}, headers=admin).status_code == 403
    assert client.get("/api/schools", headers=admin).status_code == 403
    assert client.get("/api/schools").status_code == 401


def test_list_filters_and_stats(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    _create_school(client, sa, "DPS")
    client.patch("/api/schools/DPS/status", json={"is_active": False}, headers=sa)

    r = client.get("/api/schools", headers=sa)
    assert r.json["total"] == 2
    r = client.get("/api/schools?active=false", headers=sa)
    assert [x["code"] for x in r.json["schools"]] == ["DPS"]
    r = client.get("/api/schools?q=nps", headers=sa)
    assert [x["code"] for x in r.json["schools"]] == ["NPS"]

    stats = client.get("/api/schools/stats", headers=sa).json["stats"]
    assert stats["total_schools"] == 2
    assert stats["active_schools"] == 1
    assert stats["users_by_role"]["admin"] == 2
    assert stats["total_users"] == 2


def test_detail_for_superadmin_and_admin(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    _create_school(client, sa, "DPS")

    r = client.get("/api/schools/NPS", headers=sa)
    assert r.status_code == 200
    assert r.json["school"]["user_counts"]["admin"] == 1

    admin = _admin(client)
    assert client.get("/api/schools/NPS", headers=admin).status_code == 200
    assert client.get("/api/schools/DPS", headers=admin).status_code == 403
    assert client.get("/api/schools/XYZ", headers=sa).status_code == 404


def test_url_and_request_school_must_match(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    _create_school(client, sa, "DPS")
    r = client.get("/api/schools/NPS", headers={**sa, "X-School-Code": "DPS"})
    assert r.status_code == 400


def test_update_school(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)

    r = client.put("/api/schools/NPS", json={"city": "Nashik", "principal_name": "R. Iyer"}, headers=admin)
    assert r.status_code == 200
    assert r.json["changes"] == ["city", "principal_name"]
    assert r.json["school"]["address"]["city"] == "Nashik"

    r = client.put("/api/schools/NPS", json={"code": "NEW"}, headers=sa)
    assert r.status_code == 400
    assert r.json["errors"] == ["School code cannot be changed."]

    r = client.put("/api/schools/NPS", json={"pincode": "abc"}, headers=sa)
    assert r.status_code == 400


def test_status_toggle(app, client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")

    r = client.patch("/api/schools/NPS/status", json={"is_active": False, "reason": "fees"}, headers=sa)
    assert r.status_code == 200
    assert r.json["school"]["is_active"] is False
    r = client.patch("/api/schools/NPS/status", json={}, headers=sa)
    assert r.json["school"]["is_active"] is True
    assert client.patch("/api/schools/NOPE/status", json={}, headers=sa).status_code == 404


def test_delete_school(app, client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")

    r = client.delete("/api/schools/NPS", headers=sa)
    assert r.status_code == 200
    assert r.json["code"] == "NPS"
    with session_scope(app) as s:
        assert s.query(School).count() == 0
        assert s.query(AuditEvent).filter(AuditEvent.action == "school.delete").count() == 1
    assert client.delete("/api/schools/NPS", headers=sa).status_code == 404

    # tenant tables were dropped, so the code starts over
    body = _create_school(client, sa, "NPS")
    assert body["admin"]["credentials"]["user_id"] == "NPS_ADM001"


def test_access_matrix_get(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)

    r = client.get("/api/schools/NPS/access-matrix", headers=admin)
    assert r.status_code == 200
    matrix = r.json["matrix"]
    assert set(matrix) == {"admin", "teacher", "student", "parent"}
    assert matrix["admin"]["manage_users"] is True
    assert matrix["teacher"]["view_results"] == "own"
    assert matrix["student"]["mark_attendance"] is False


def test_access_matrix_update(app, client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)

    r = client.put(
        "/api/schools/NPS/access-matrix",
        json={"matrix": {"teacher": {"mark_attendance": False, "add_assignments": True}}},
        headers=admin,
    )
    assert r.status_code == 200
    assert r.json["changes"] == ["teacher.mark_attendance"]
    assert r.json["matrix"]["teacher"]["mark_attendance"] is False

    with school_session_scope(app, "NPS") as s:
        assert s.get(AccessRule, ("teacher", "mark_attendance")).level == "none"

    # raw body form
    r = client.put("/api/schools/NPS/access-matrix", json={"parent": {"message": True}}, headers=admin)
    assert r.status_code == 200
    assert r.json["matrix"]["parent"]["message"] is True


def test_access_matrix_update_errors(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)

    r = client.put(
        "/api/schools/NPS/access-matrix",
        json={"matrix": {"admin": {"manage_school_settings": False}}},
        headers=admin,
    )
    assert r.status_code == 400
    assert "admin.manage_school_settings cannot be restricted by a school admin." in r.json["errors"]

    r = client.put(
        "/api/schools/NPS/access-matrix",
        json={"matrix": {"janitor": {"message": True}, "teacher": {"fly": True, "message": "sometimes"}}},
        headers=admin,
    )
    assert r.status_code == 400
    assert "Unknown role: janitor" in r.json["errors"]
    assert "Unknown feature: fly" in r.json["errors"]

    # superadmin may restrict the locked cell
    r = client.put(
        "/api/schools/NPS/access-matrix",
        json={"matrix": {"admin": {"manage_school_settings": "limited"}}},
        headers=sa,
    )
    assert r.status_code == 200


def test_teacher_cannot_edit_settings(client):
    sa = _superadmin(client)
    _create_school(client, sa, "NPS")
    admin = _admin(client)
    r = client.post(
        "/api/users",
        json={"role": "teacher", "first_name": "Tara", "last_name": "Shah", "email": "tara@nps.test", "password": "teach-pass"},
        headers=admin,
    )
    assert r.status_code == 201
    teacher = _school_login(client, "NPS", "NPS_TEA001", "teach-pass")

    # limited settings access: may read the school, may not change it
    assert client.get("/api/schools/NPS", headers=teacher).status_code == 200
    assert client.put("/api/schools/NPS", json={"city": "X"}, headers=teacher).status_code == 403
    assert client.get("/api/schools/NPS/access-matrix", headers=teacher).status_code == 403
