from datetime import datetime, timedelta
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import database
from core import auth
from core.auth import AuthError


@pytest.fixture(autouse=True)
def db(tmp_path, monkeypatch):
    monkeypatch.setattr(database, "_database_path", str(tmp_path / "auth.db"))
    database.init_database()


def test_password_hash_verifies_and_salts():
    first = auth.hash_password("s3cret", iterations=1000)
    second = auth.hash_password("s3cret", iterations=1000)

    assert first != second
    assert auth.verify_password("s3cret", first)
    assert not auth.verify_password("wrong", first)
    assert not auth.verify_password("s3cret", "garbage")


def test_authenticate_opens_session_for_user():
    user = auth.create_user("Ops@Example.com", "hunter2")

    session = auth.authenticate("ops@example.com", "hunter2")

    assert session.user_id == user.id
    assert auth.user_for_token(session.token).email == "ops@example.com"


def test_bad_credentials_raise():
    auth.create_user("ops@example.com", "hunter2")

    with pytest.raises(AuthError):
        auth.authenticate("ops@example.com", "nope")
    with pytest.raises(AuthError):
        auth.authenticate("nobody@example.com", "hunter2")


def test_duplicate_user_rejected():
    auth.create_user("ops@example.com", "hunter2")

    with pytest.raises(AuthError):
        auth.create_user("OPS@example.com", "other")


def test_session_expires_after_an_hour():
    auth.create_user("ops@example.com", "hunter2")
    now = datetime(2024, 5, 10, 12, 0)
    session = auth.authenticate("ops@example.com", "hunter2", now=now)

    assert auth.user_for_token(session.token, now=now + timedelta(minutes=59)).email == "ops@example.com"
    with pytest.raises(AuthError):
        auth.user_for_token(session.token, now=now + timedelta(hours=1))
    # Expired sessions are removed on lookup
    assert database.get_session(session.token) is None


def test_logout_invalidates_token():
    auth.create_user("ops@example.com", "hunter2")
    session = auth.authenticate("ops@example.com", "hunter2")

    auth.logout(session.token)

    with pytest.raises(AuthError):
        auth.user_for_token(session.token)
    with pytest.raises(AuthError):
        auth.user_for_token(None)
