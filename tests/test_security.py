from datetime import date

import jwt
import pytest
from flask import Flask

from app.schoolerp.security import (
    PASSWORD_ALPHABET,
    AuthError,
    bearer_token,
    create_access_token,
    decode_access_token,
    generate_random_password,
    hash_password,
    password_from_date_of_birth,
    verify_password,
)


@pytest.fixture()
def app():
    app = Flask(__name__)
    app.config.update(JWT_SECRET="unit-secret", JWT_ALGORITHM="HS256", JWT_EXPIRES_HOURS=1)
    with app.app_context():
        yield app


def test_school_token_carries_school_code(app):
    token = create_access_token("NPS0001", "student", school_code="NPS")
    payload = decode_access_token(token)
    assert payload["sub"] == "NPS0001"
    assert payload["role"] == "student"
    assert payload["school_code"] == "NPS"
    assert payload["user_type"] == "school_user"


def test_superadmin_token_has_no_school(app):
    payload = decode_access_token(create_access_token("root@example.com", "superadmin"))
    assert "school_code" not in payload
    assert "user_type" not in payload


def test_expired_token(app):
    token = create_access_token("NPS0001", "student", school_code="NPS", expires_hours=-1)
    with pytest.raises(AuthError, match="Token expired"):
        decode_access_token(token)


def test_tampered_token(app):
    token = jwt.encode({"sub": "x", "role": "admin"}, "other-secret", algorithm="HS256")
    with pytest.raises(AuthError, match="Invalid token"):
        decode_access_token(token)


def test_school_token_without_school_code_rejected(app):
    token = jwt.encode({"sub": "NPS_ADM001", "role": "admin", "user_type": "school_user"}, "unit-secret", algorithm="HS256")
    with pytest.raises(AuthError, match="Invalid token payload"):
        decode_access_token(token)


def test_bearer_token_parsing():
    assert bearer_token("Bearer abc") == "abc"
    assert bearer_token("bearer  abc ") == "abc"
    assert bearer_token("Basic abc") is None
    assert bearer_token("Bearer ") is None
    assert bearer_token(None) is None


def test_password_hashing():
    h = hash_password("s3cret-pass")
    assert h != "s3cret-pass"
    assert verify_password(h, "s3cret-pass")
    assert not verify_password(h, "wrong")
    assert not verify_password(None, "s3cret-pass")


def test_random_password_alphabet():
    pw = generate_random_password()
    assert len(pw) == 8
    assert set(pw) <= set(PASSWORD_ALPHABET)
    # no look-alike characters
    assert not set(pw) & set("0O1lI")


def test_password_from_date_of_birth():
    assert password_from_date_of_birth(date(2012, 3, 7)) == "07032012"
    assert password_from_date_of_birth("2012-03-07") == "07032012"
    assert len(password_from_date_of_birth("not-a-date")) == 8
