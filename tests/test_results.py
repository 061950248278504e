import pytest

from app.schoolerp import create_app
from app.schoolerp.db import session_scope
from app.schoolerp.models import Base, SchoolAuditEvent, SuperAdmin
from app.schoolerp.modules.results.service import progress_trend
from app.schoolerp.security import hash_password
from app.schoolerp.tenancy import school_session_scope

YEAR = "2024-25"


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
        "superadmin": {**sa, "X-School-Code": "NPS"},
        "admin": admin,
        "teacher": _login(client, "NPS_TEA001", "teach-pass"),
        "other_teacher": _login(client, "NPS_TEA002", "teach-pass"),
        "student": _login(client, "NPS0001", "student-1"),
        "parent": _login(client, "NPS_PAR001", "parent-1"),
    }


def _result(student_id, maths, science, *, class_name="7", exam_type="Term 1", **extra):
    body = {
        "student_id": student_id,
        "class_name": class_name,
        "section": "a",
        "exam_type": exam_type,
        "academic_year": YEAR,
        "subjects": [
            {"name": "Maths", "marks_obtained": maths, "max_marks": 100},
            {"name": "Science", "marks_obtained": science},
        ],
    }
    body.update(extra)
    return body


def _save(client, headers, body, status=201):
    r = client.post("/api/results", json=body, headers=headers)
    assert r.status_code == status, r.json
    return r.json["result"]


def test_create_computes_totals_and_grades(app, client, school):
    res = _save(client, school["teacher"], _result("NPS0001", 90, 70))
    assert res["total_marks"] == 160
    assert res["max_marks"] == 200
    assert res["percentage"] == 80.0
    assert res["grade"] == "B+"
    assert res["grade_point"] == 8.0
    assert res["status"] == "pass"
    assert res["section"] == "A"
    assert res["rank"] == 1
    assert res["is_published"] is False
    assert res["created_by"] == "NPS_TEA001"
    assert [(x["name"], x["grade"]) for x in res["subjects"]] == [("Maths", "A"), ("Science", "B")]

    with school_session_scope(app, "NPS") as s:
        assert s.query(SchoolAuditEvent).filter(SchoolAuditEvent.action == "result.create").count() == 1


def test_practical_marks_count_towards_subject(client, school):
    body = _result("NPS0003", 0, 0, class_name="10")
    body["subjects"] = [{"name": "Physics", "marks_obtained": 10, "max_marks": 70, "practical_marks": 15, "max_practical_marks": 30}]
    res = _save(client, school["teacher"], body)
    subject = res["subjects"][0]
    assert subject["percentage"] == 25.0
    assert subject["grade"] == "D2"
    assert subject["status"] == "fail"
    assert res["status"] == "fail"


def test_update_replaces_subjects(app, client, school):
    _save(client, school["teacher"], _result("NPS0001", 90, 70))
    res = _save(client, school["teacher"], _result("NPS0001", 40, 30, remarks="Needs practice"), status=200)
    assert res["percentage"] == 35.0
    assert res["grade"] == "D"
    assert res["remarks"] == "Needs practice"
    assert len(res["subjects"]) == 2

    with school_session_scope(app, "NPS") as s:
        assert s.query(SchoolAuditEvent).filter(SchoolAuditEvent.action == "result.update").count() == 1


def test_validation(client, school):
    body = _result("NPS0001", 120, 70)
    body["subjects"].append({"name": "maths", "marks_obtained": 10})
    r = client.post("/api/results", json=body, headers=school["teacher"])
    assert r.status_code == 400
    errors = r.json["errors"]
    assert "Maths: marks_obtained must be between 0 and 100." in errors
    assert "maths: listed more than once." in errors

    r = client.post("/api/results", json={"student_id": "NPS0001", "academic_year": "2024"}, headers=school["teacher"])
    assert r.status_code == 400
    assert "Academic year must look like 2024-25." in r.json["errors"]
    assert "At least one subject is required." in r.json["errors"]

    assert client.post("/api/results", json=_result("NPS9999", 1, 1), headers=school["teacher"]).status_code == 404
    assert client.post("/api/results", json=_result("NPS0001", 1, 1), headers=school["student"]).status_code == 403


def test_inactive_student_is_rejected(client, school):
    client.patch("/api/users/NPS0002/status", json={"is_active": False}, headers=school["admin"])
    r = client.post("/api/results", json=_result("NPS0002", 50, 50), headers=school["teacher"])
    assert r.status_code == 400


def test_admin_may_save_and_matrix_gates_teachers(client, school):
    _save(client, school["admin"], _result("NPS0001", 50, 50))

    r = client.put(
        "/api/schools/NPS/access-matrix",
        json={"matrix": {"teacher": {"update_results": False}}},
        headers=school["admin"],
    )
    assert r.status_code == 200
    r = client.post("/api/results", json=_result("NPS0002", 50, 50), headers=school["teacher"])
    assert r.status_code == 403


def test_ranks_are_recomputed(client, school):
    _save(client, school["teacher"], _result("NPS0001", 90, 70))
    res = _save(client, school["teacher"], _result("NPS0002", 95, 95))
    assert res["rank"] == 1
    assert res["class_size"] == 2

    r = client.get("/api/results/students/NPS0001", headers=school["admin"])
    assert r.json["results"][0]["rank"] == 2
    assert r.json["results"][0]["class_size"] == 2


def test_publish_controls_student_and_parent_visibility(client, school):
    res = _save(client, school["teacher"], _result("NPS0001", 90, 70))

    r = client.get("/api/results/students/NPS0001", headers=school["student"])
    assert r.status_code == 200
    assert r.json["result_count"] == 0

    assert client.patch(f"/api/results/{res['id']}/publish", json={}, headers=school["other_teacher"]).status_code == 403
    r = client.patch(f"/api/results/{res['id']}/publish", json={}, headers=school["teacher"])
    assert r.status_code == 200
    assert r.json["result"]["is_published"] is True
    assert r.json["result"]["published_at"] is not None

    r = client.get("/api/results/students/NPS0001", headers=school["student"])
    assert r.json["result_count"] == 1
    r = client.get("/api/results/students/NPS0001", headers=school["parent"])
    assert r.json["result_count"] == 1

    r = client.patch(f"/api/results/{res['id']}/publish", json={"is_published": False}, headers=school["admin"])
    assert r.json["result"]["is_published"] is False
    assert client.patch("/api/results/9999/publish", json={}, headers=school["admin"]).status_code == 404


def test_history_scoping(client, school):
    _save(client, school["teacher"], _result("NPS0001", 90, 70))
    _save(client, school["teacher"], _result("NPS0002", 60, 60))

    assert client.get("/api/results/students/NPS0002", headers=school["student"]).status_code == 403
    assert client.get("/api/results/students/NPS0002", headers=school["parent"]).status_code == 403
    assert client.get("/api/results/students/NPS9999", headers=school["admin"]).status_code == 404

    # teachers see only the results they recorded
    r = client.get("/api/results/students/NPS0001", headers=school["other_teacher"])
    assert r.json["result_count"] == 0
    r = client.get("/api/results/students/NPS0001", headers=school["teacher"])
    assert r.json["result_count"] == 1


def test_progress_trend(client, school):
    _save(client, school["teacher"], _result("NPS0001", 60, 60, exam_type="Term 1"))
    _save(client, school["teacher"], _result("NPS0001", 80, 80, exam_type="Term 2"))

    r = client.get("/api/results/students/NPS0001", headers=school["admin"])
    assert [x["exam_type"] for x in r.json["results"]] == ["Term 2", "Term 1"]
    trend = r.json["progress_trend"]
    assert trend["trend"] == "improving"
    assert trend["improvement"] == 20.0

    r = client.get("/api/results/students/NPS0001", query_string={"exam_type": "Term 1"}, headers=school["admin"])
    assert r.json["result_count"] == 1
    assert r.json["progress_trend"] == {"trend": "insufficient_data"}


def test_progress_trend_thresholds():
    class _R:
        def __init__(self, percentage):
            self.percentage = percentage

    assert progress_trend([_R(70), _R(66)])["trend"] == "stable"
    assert progress_trend([_R(60), _R(66)])["trend"] == "declining"
    assert progress_trend([_R(72), _R(66)])["trend"] == "improving"


def test_class_report(client, school):
    _save(client, school["teacher"], _result("NPS0001", 90, 70))
    _save(client, school["teacher"], _result("NPS0002", 20, 30))

    r = client.get(f"/api/results/class/7/a/report?academic_year={YEAR}", headers=school["teacher"])
    assert r.status_code == 200
    details = r.json["class_details"]
    assert details["section"] == "A"
    assert details["total_students"] == 2

    stats = r.json["class_statistics"]
    assert stats["average_percentage"] == 52.5
    assert stats["highest_percentage"] == 80.0
    assert stats["lowest_percentage"] == 25.0
    assert stats["pass_count"] == 1
    assert stats["fail_count"] == 1
    assert stats["pass_percentage"] == 50.0

    maths = r.json["subject_analysis"]["Maths"]
    assert maths["highest_percentage"] == 90.0
    assert maths["fail_count"] == 1
    assert r.json["grade_distribution"] == {"B+": 1, "E": 1}
    assert [x["student_id"] for x in r.json["top_performers"]] == ["NPS0001", "NPS0002"]

    r = client.get(f"/api/results/class/8/A/report?academic_year={YEAR}", headers=school["teacher"])
    assert r.status_code == 404
    assert client.get(f"/api/results/class/7/A/report?academic_year={YEAR}", headers=school["student"]).status_code == 403


def test_superadmin_may_publish(client, school):
    res = _save(client, school["teacher"], _result("NPS0001", 90, 70))
    r = client.patch(f"/api/results/{res['id']}/publish", json={}, headers=school["superadmin"])
    assert r.status_code == 200
    assert r.json["result"]["is_published"] is True


def test_non_numeric_practical_marks_are_rejected(client, school):
    body = _result("NPS0001", 60, 70)
    body["subjects"][0].update({"practical_marks": "lots", "max_practical_marks": 20})
    body["subjects"][1].update({"practical_marks": 5, "max_practical_marks": "twenty"})
    r = client.post("/api/results", json=body, headers=school["teacher"])
    assert r.status_code == 400
    assert "Maths: practical_marks must be a number." in r.json["errors"]
    assert "Science: max_practical_marks must be a number." in r.json["errors"]
