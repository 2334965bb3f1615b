"""Behavioural tests for the registration workflow."""

from __future__ import annotations

import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from pathlib import Path

import pytest

from homestay import registration
from homestay.database import Database
from homestay.models import GoogleProfile
from homestay.registration import (
    AuthenticationError,
    ConflictError,
    NotRegisteredError,
    StoreError,
    ValidationError,
)


PHONE = "5551234567"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "homestay.sqlite3")
    db.initialize()
    return db


def _google_profile(google_id: str = "google-123", email: str = "ana@homestay.dev") -> GoogleProfile:
    return GoogleProfile(
        google_id=google_id,
        email=email,
        given_name="Ana",
        family_name="Diaz",
        picture="https://example.org/ana.png",
    )


def _signup(database: Database, phone: str = PHONE, email: str = "ana@x.com"):
    return registration.complete_signup(
        database,
        phone,
        first_name="Ana",
        last_name="Diaz",
        dob=date(1990, 1, 1),
        email=email,
    )


def test_lookup_returns_none_for_absent_keys(database: Database) -> None:
    assert registration.lookup_user(database, phone=PHONE) is None
    assert registration.lookup_user(database, email="nobody@homestay.dev") is None
    assert registration.lookup_user(database, google_id="missing") is None
    assert registration.lookup_user(database, user_id=42) is None


def test_lookup_requires_exactly_one_key(database: Database) -> None:
    with pytest.raises(ValidationError):
        registration.lookup_user(database)
    with pytest.raises(ValidationError):
        registration.lookup_user(database, phone=PHONE, email="ana@homestay.dev")


def test_lookup_finds_user_by_each_key(database: Database) -> None:
    user = registration.login_with_google(database, _google_profile())

    assert registration.lookup_user(database, google_id="google-123") == user
    assert registration.lookup_user(database, email="ANA@homestay.dev") == user
    assert registration.lookup_user(database, user_id=user.id) == user


def test_register_phone_is_idempotent(database: Database) -> None:
    first = registration.register_phone(database, PHONE)
    second = registration.register_phone(database, PHONE)

    assert first.created is True
    assert second.created is False
    assert second.user == first.user
    assert database.count_users_with_phone(PHONE) == 1


def test_register_phone_does_not_touch_existing_profile(database: Database) -> None:
    registration.register_phone(database, PHONE)
    completed = _signup(database)

    again = registration.register_phone(database, f"  {PHONE} ")
    assert again.created is False
    assert again.user == completed


def test_register_phone_requires_phone(database: Database) -> None:
    for value in (None, "", "   "):
        with pytest.raises(ValidationError) as excinfo:
            registration.register_phone(database, value)
        assert excinfo.value.field == "phone"
    assert database.list_users() == []


def test_concurrent_phone_registrations_create_one_row(database: Database) -> None:
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: registration.register_phone(database, PHONE), range(8)))

    assert sum(1 for result in results if result.created) == 1
    assert len({result.user.id for result in results}) == 1
    assert database.count_users_with_phone(PHONE) == 1


def test_register_user_creates_full_record(database: Database) -> None:
    user = registration.register_user(
        database,
        PHONE,
        first_name="Ana",
        last_name="Diaz",
        dob=date(1990, 1, 1),
        email="ana@x.com",
    )
    assert user.first_name == "Ana"
    assert user.dob == date(1990, 1, 1)

    with pytest.raises(ConflictError) as excinfo:
        registration.register_user(
            database,
            "5559876543",
            first_name="Bo",
            last_name="Lee",
            dob=date(1985, 5, 5),
            email="ana@x.com",
        )
    assert excinfo.value.field == "email"


def test_signup_requires_prior_registration(database: Database) -> None:
    with pytest.raises(NotRegisteredError):
        _signup(database)
    assert database.list_users() == []


def test_signup_fills_profile_without_changing_identity(database: Database) -> None:
    registered = registration.register_phone(database, PHONE).user
    completed = _signup(database)

    assert completed.id == registered.id
    assert completed.phonenumber == PHONE
    assert completed.first_name == "Ana"
    assert completed.last_name == "Diaz"
    assert completed.dob == date(1990, 1, 1)
    assert completed.email == "ana@x.com"


def test_signup_validates_profile_fields(database: Database) -> None:
    registration.register_phone(database, PHONE)
    with pytest.raises(ValidationError) as excinfo:
        registration.complete_signup(
            database,
            PHONE,
            first_name=" ",
            last_name="Diaz",
            dob=date(1990, 1, 1),
            email="ana@x.com",
        )
    assert excinfo.value.field == "first_name"

    with pytest.raises(ValidationError) as excinfo:
        registration.complete_signup(
            database,
            PHONE,
            first_name="Ana",
            last_name="Diaz",
            dob=None,
            email="ana@x.com",
        )
    assert excinfo.value.field == "dob"


def test_signup_rejects_email_owned_by_another_user(database: Database) -> None:
    registration.register_phone(database, PHONE)
    registration.register_phone(database, "5559876543")
    _signup(database, PHONE, email="shared@homestay.dev")

    with pytest.raises(ConflictError):
        _signup(database, "5559876543", email="shared@homestay.dev")

    other = registration.lookup_user(database, phone="5559876543")
    assert other is not None and other.email is None


def test_google_login_is_idempotent(database: Database) -> None:
    first = registration.login_with_google(database, _google_profile())
    second = registration.login_with_google(database, _google_profile())

    assert first == second
    assert first.google_auth_pending is True
    assert first.phonenumber is None
    assert len(database.list_users()) == 1


def test_concurrent_google_logins_resolve_to_one_user(database: Database) -> None:
    with ThreadPoolExecutor(max_workers=6) as pool:
        users = list(pool.map(lambda _: registration.login_with_google(database, _google_profile()), range(6)))

    assert len({user.id for user in users}) == 1
    assert len(database.list_users()) == 1


def test_google_login_conflicts_with_existing_email(database: Database) -> None:
    registration.register_phone(database, PHONE)
    _signup(database, email="ana@homestay.dev")

    with pytest.raises(ConflictError):
        registration.login_with_google(database, _google_profile(email="ana@homestay.dev"))


def test_backfill_completes_pending_user(database: Database) -> None:
    user = registration.login_with_google(database, _google_profile())
    updated = registration.backfill_phone(database, user.id, PHONE, session_user_id=user.id)

    assert updated.phonenumber == PHONE
    assert updated.google_auth_pending is False

    replaced = registration.backfill_phone(database, user.id, "5559876543", session_user_id=user.id)
    assert replaced.phonenumber == "5559876543"
    assert replaced.google_auth_pending is False

    # Signing in again never reopens the pending state.
    again = registration.login_with_google(database, _google_profile())
    assert again.google_auth_pending is False


def test_backfill_rejects_phone_owned_by_another_user(database: Database) -> None:
    owner = registration.register_phone(database, PHONE).user
    google_user = registration.login_with_google(database, _google_profile())

    with pytest.raises(ConflictError):
        registration.backfill_phone(database, google_user.id, PHONE, session_user_id=google_user.id)

    assert registration.lookup_user(database, user_id=owner.id) == owner
    assert registration.lookup_user(database, user_id=google_user.id) == google_user


def test_backfill_rejects_formatted_variant_of_registered_phone(database: Database) -> None:
    owner = registration.register_phone(database, PHONE).user
    google_user = registration.login_with_google(database, _google_profile())

    for variant in ("555-123-4567", "(555) 123 4567", " 555 123-4567 "):
        with pytest.raises(ConflictError):
            registration.backfill_phone(database, google_user.id, variant, session_user_id=google_user.id)

    assert registration.lookup_user(database, user_id=google_user.id).phonenumber is None
    assert database.count_users_with_phone(PHONE) == 1
    assert registration.lookup_user(database, phone="555-123-4567") == owner


def test_phone_numbers_are_stored_in_normalised_form(database: Database) -> None:
    first = registration.register_phone(database, "(555) 123-4567")
    second = registration.register_phone(database, "555 123 4567")

    assert first.user.phonenumber == PHONE
    assert second.created is False
    assert second.user.id == first.user.id
    assert registration.check_phone(database, "555-123-4567") is True

    international = registration.register_phone(database, "+1 555 123 4567")
    assert international.created is True
    assert international.user.phonenumber == "+15551234567"


def test_phone_with_letters_is_rejected(database: Database) -> None:
    with pytest.raises(ValidationError) as excinfo:
        registration.register_phone(database, "call-me-maybe")
    assert excinfo.value.field == "phone"
    assert database.list_users() == []


def test_lookup_rejects_malformed_user_id(database: Database) -> None:
    with pytest.raises(ValidationError) as excinfo:
        registration.lookup_user(database, user_id="abc")  # type: ignore[arg-type]
    assert excinfo.value.field == "user_id"


def test_backfill_accepts_own_phone(database: Database) -> None:
    user = registration.login_with_google(database, _google_profile())
    registration.backfill_phone(database, user.id, PHONE, session_user_id=user.id)
    again = registration.backfill_phone(database, user.id, PHONE, session_user_id=user.id)
    assert again.phonenumber == PHONE


def test_backfill_requires_matching_session(database: Database) -> None:
    user = registration.login_with_google(database, _google_profile())
    other = registration.login_with_google(database, _google_profile("google-456", "bo@homestay.dev"))

    with pytest.raises(AuthenticationError):
        registration.backfill_phone(database, user.id, PHONE, session_user_id=None)
    with pytest.raises(AuthenticationError):
        registration.backfill_phone(database, user.id, PHONE, session_user_id=other.id)

    assert registration.lookup_user(database, user_id=user.id) == user


@pytest.mark.parametrize("phone", ["123", "555-abc-4567", ""])
def test_backfill_validates_phone(database: Database, phone: str) -> None:
    user = registration.login_with_google(database, _google_profile())
    with pytest.raises(ValidationError):
        registration.backfill_phone(database, user.id, phone, session_user_id=user.id)


def test_store_failures_become_store_errors(database: Database, monkeypatch, caplog) -> None:
    def broken(_phone: str):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(database, "create_phone_user", broken)

    with caplog.at_level("ERROR", logger="homestay.registration"):
        with pytest.raises(StoreError) as excinfo:
            registration.register_phone(database, PHONE)

    assert "disk I/O error" not in excinfo.value.message
    assert "Database failure" in caplog.text
