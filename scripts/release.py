"""
Release-phase helper.

- Fail fast if DATABASE_URL is missing (avoid silently using SQLite in prod).
- Run alembic migrations on the central database.
- Seed the superadmin (idempotent; does NOT overwrite existing passwords).
- Re-provision every registered school database (creates missing tables, seeds access rules).

Usage:
  python scripts/release.py
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _require_env(name: str) -> str:
    v = (os.environ.get(name) or "").strip()
    if not v:
        raise RuntimeError(f"Missing required environment variable {name}.")
    return v


def provision_schools(db_url: str, url_template: str) -> tuple[int, list[str]]:
    """Returns (provisioned count, codes that failed)."""
    from app.schoolerp.models import School
    from app.schoolerp.modules.schools.service import mark_provisioned
    from app.schoolerp.tenancy import TenantError, TenantRegistry
    from scripts._db_utils import script_session

    registry = TenantRegistry(url_template)
    done = 0
    failed: list[str] = []
    try:
        with script_session(db_url) as s:
            for school in s.query(School).order_by(School.code.asc()).all():
                try:
                    registry.provision(school.code)
                except TenantError as e:
                    print(f"  {school.code}: FAILED ({e})", flush=True)
                    failed.append(school.code)
                    continue
                if not school.database_created:
                    mark_provisioned(school)
                done += 1
                print(f"  {school.code}: ok", flush=True)
    finally:
        registry.dispose_all()
    return done, failed


def run_release() -> None:
    db_url = _require_env("DATABASE_URL")
    # Guardrail: prevent accidental prod deploys against SQLite.
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to run release on sqlite DATABASE_URL in production. Set DATABASE_URL to Postgres.")
    url_template = (os.environ.get("SCHOOL_DATABASE_URL_TEMPLATE") or "sqlite:///{database}.db").strip()

    print("=== SchoolERP release start ===", flush=True)
    print(f"ENV={env or '(unset)'}", flush=True)
    print("Running Alembic migrations...", flush=True)

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")
    print("Migrations complete.", flush=True)

    print("Seeding superadmin (idempotent)...", flush=True)
    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seed complete.", flush=True)

    print("Provisioning school databases...", flush=True)
    done, failed = provision_schools(db_url, url_template)
    print(f"Provisioned {done} school(s).", flush=True)
    if failed:
        raise RuntimeError(f"Provisioning failed for: {', '.join(failed)}")
    print("=== SchoolERP release done ===", flush=True)


def main() -> None:
    run_release()


if __name__ == "__main__":
    main()
