from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from auth import (
    can_sign_in,
    issue_magic_link_token,
    issue_session_token,
    read_session_token,
    session_user_for,
    verify_magic_link_token,
)
from config import get_settings
from csrf import generate_csrf_token, validate_csrf_token
from database import Base
from models import Owner


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_owners_and_admins_may_sign_in(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "admin_emails", frozenset({"admin@example.com"}))
    with make_session() as session:
        session.add(Owner(name="Ana", apartment_id="1A", email="Ana@Example.com"))
        session.commit()

        assert can_sign_in(session, " ana@example.com ")
        assert can_sign_in(session, "ADMIN@example.com")
        assert not can_sign_in(session, "stranger@example.com")
        assert not can_sign_in(session, "")


def test_magic_link_round_trip_and_tampering() -> None:
    token = issue_magic_link_token("Ana@Example.com")

    assert verify_magic_link_token(token) == "ana@example.com"
    assert verify_magic_link_token(token + "x") is None
    assert verify_magic_link_token("garbage") is None


def test_session_token_carries_admin_flag(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "admin_emails", frozenset({"admin@example.com"}))
    with make_session() as session:
        session.add(Owner(name="Ana", apartment_id="1A", email="ana@example.com"))
        session.commit()

        owner_user = session_user_for(session, "ana@example.com")
        admin = read_session_token(
            issue_session_token(session_user_for(session, "admin@example.com"))
        )

        restored = read_session_token(issue_session_token(owner_user))
        assert restored.email == "ana@example.com"
        assert restored.name == "Ana"
        assert restored.is_admin is False
        assert admin.is_admin is True
        assert read_session_token(None) is None
        assert read_session_token("not-a-token") is None


def test_csrf_token_validation() -> None:
    token = generate_csrf_token()

    assert validate_csrf_token(token)
    assert not validate_csrf_token(token[:-2] + "zz")
    assert not validate_csrf_token(generate_csrf_token("someone-else"))
    assert not validate_csrf_token(generate_csrf_token(max_age_hours=-1))
