from datetime import datetime

from sqlalchemy import create_engine

from app.schoolerp.models import AccessRule, Base, School, SuperAdmin
from app.schoolerp.security import verify_password
from app.schoolerp.tenancy import TenantRegistry
from scripts._db_utils import script_session
from scripts.init_db import seed_only
from scripts.release import provision_schools


def _central(tmp_path):
    url = f"sqlite:///{tmp_path/'central.db'}"
    engine = create_engine(url)
    Base.metadata.create_all(engine)
    engine.dispose()
    return url


def test_seed_only_is_idempotent(tmp_path, monkeypatch):
    url = _central(tmp_path)
    monkeypatch.setenv("SUPERADMIN_EMAIL", "Ops@Example.com")
    monkeypatch.setenv("SUPERADMIN_PASSWORD", "first-pass")
    assert seed_only(database_url=url) is True

    monkeypatch.setenv("SUPERADMIN_PASSWORD", "second-pass")
    assert seed_only(database_url=url) is False

    with script_session(url) as s:
        admin = s.query(SuperAdmin).one()
        assert admin.email == "ops@example.com"
        assert verify_password(admin.password_hash, "first-pass")


def test_provision_schools_repairs_registered_tenants(tmp_path):
    url = _central(tmp_path)
    template = f"sqlite:///{tmp_path}/{{database}}.db"
    now = datetime.utcnow()
    with script_session(url) as s:
        s.add(
            School(
                name="Northside Public School",
                code="NPS",
                school_type="Private",
                affiliation_board="CBSE",
                established_year=2001,
                country="India",
                current_academic_year="2024-25",
                is_active=True,
                database_name="school_nps",
                database_created=False,
                created_at=now,
                updated_at=now,
            )
        )

    done, failed = provision_schools(url, template)
    assert (done, failed) == (1, [])

    with script_session(url) as s:
        assert s.query(School).one().database_created is True

    registry = TenantRegistry(template)
    s = registry.sessionmaker_for("NPS")()
    try:
        assert s.query(AccessRule).count() == 44
    finally:
        s.close()
        registry.dispose_all()
