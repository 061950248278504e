import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    school_database_url_template: str

    jwt_secret: str
    jwt_algorithm: str
    jwt_expires_hours: int

    login_rate_limit: int
    login_rate_window: int

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    log_level: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).")


def load_settings() -> Settings:
    secret_key = _getenv("SECRET_KEY", "change-me")
    return Settings(
        secret_key=secret_key,
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///schoolerp.db"),
        school_database_url_template=_getenv("SCHOOL_DATABASE_URL_TEMPLATE", "sqlite:///{database}.db"),
        jwt_secret=_getenv("JWT_SECRET", secret_key),
        jwt_algorithm=_getenv("JWT_ALGORITHM", "HS256"),
        jwt_expires_hours=_getenv_int("JWT_EXPIRES_HOURS", 24),
        login_rate_limit=_getenv_int("LOGIN_RATE_LIMIT", 5),
        login_rate_window=_getenv_int("LOGIN_RATE_WINDOW", 300),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
    )


def load_config() -> dict:
    s = load_settings()
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SCHOOL_DATABASE_URL_TEMPLATE": s.school_database_url_template,
        "JWT_SECRET": s.jwt_secret,
        "JWT_ALGORITHM": s.jwt_algorithm,
        "JWT_EXPIRES_HOURS": s.jwt_expires_hours,
        "LOGIN_RATE_LIMIT": s.login_rate_limit,
        "LOGIN_RATE_WINDOW": s.login_rate_window,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "LOG_LEVEL": s.log_level,
        # JSON API: keep key order stable for clients diffing payloads
        "JSON_SORT_KEYS": False,
        # per-file limit is enforced in the upload handlers (10MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
        "MAX_FILE_BYTES": 10 * 1024 * 1024,
    }
