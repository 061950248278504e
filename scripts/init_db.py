import os
import sys
from pathlib import Path

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.schoolerp.models import SuperAdmin
from app.schoolerp.security import hash_password
from scripts._db_utils import script_session


def seed_only(*, database_url: str | None = None) -> bool:
    """
    Seed the superadmin account in an idempotent way.
    Does NOT overwrite an existing superadmin's password. Returns True when created.
    """
    email = (os.environ.get("SUPERADMIN_EMAIL") or "superadmin@schoolerp.local").strip().lower()
    password = os.environ.get("SUPERADMIN_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///schoolerp.db").strip()

    # Direct engine/session so this can run in release without importing app.wsgi.
    with script_session(db_url) as s:
        admin = s.query(SuperAdmin).filter(SuperAdmin.email == email).one_or_none()
        created = admin is None
        if created:
            s.add(SuperAdmin(email=email, password_hash=hash_password(password), is_active=True))

    print("Initialized database (seed_only).")
    print(f"Superadmin email: {email}")
    print("Superadmin password: (from SUPERADMIN_PASSWORD)" if created else "Superadmin already existed; password unchanged.")
    return created


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
