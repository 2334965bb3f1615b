"""User identity and registration workflow.

Every operation takes the :class:`~homestay.database.Database` it should use,
performs one or more single-statement calls against it and either returns a
:class:`~homestay.models.User` or raises a :class:`RegistrationError`
subclass. Store failures never escape as raw ``sqlite3`` errors: they are
logged here and re-raised as :class:`StoreError`.
"""
from __future__ import annotations

import logging
import re
import sqlite3
from contextlib import contextmanager
from datetime import date
from typing import Iterator, Optional

from .database import Database, DuplicateRecordError
from .models import GoogleProfile, RegistrationResult, User


logger = logging.getLogger("homestay.registration")

PHONE_MIN_LENGTH = 10

_PHONE_PATTERN = re.compile(r"^\+?[0-9 ()\-]+$")


class RegistrationError(Exception):
    """Base class for failures reported by the registration workflow."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class ValidationError(RegistrationError):
    """A required field is missing or malformed."""


class NotRegisteredError(RegistrationError):
    """The phone number has not been registered yet."""


class ConflictError(RegistrationError):
    """The phone number, email or Google account already belongs to a user."""


class AuthenticationError(RegistrationError):
    """The caller is not signed in as the user being modified."""


class StoreError(RegistrationError):
    """The database could not complete the request."""


def _mask_phone(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.exception("Database failure while trying to %s", action)
        raise StoreError("Internal server error") from exc


def _require_phone(phone: Optional[str]) -> str:
    """Return ``phone`` in its stored form: an optional leading ``+`` and digits."""

    cleaned = (phone or "").strip()
    if not cleaned:
        raise ValidationError("Phone number required", field="phone")
    if not _PHONE_PATTERN.match(cleaned):
        raise ValidationError(
            "Phone number may only contain digits, spaces, dashes and parentheses",
            field="phone",
        )
    digits = "".join(ch for ch in cleaned if ch.isdigit())
    if not digits:
        raise ValidationError("Phone number required", field="phone")
    return f"+{digits}" if cleaned.startswith("+") else digits


def _require_text(value: Optional[str], field: str, label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{label} is required", field=field)
    return cleaned


def _conflict_message(field: str) -> str:
    if field == "phonenumber":
        return "Phone number already registered"
    if field == "email":
        return "Email address already registered"
    if field == "google_id":
        return "Google account already linked"
    return "User already exists"


def _conflict_field(field: str) -> str:
    return "phone" if field == "phonenumber" else field


def validate_phone(phone: Optional[str]) -> str:
    """Return the normalised phone number or raise :class:`ValidationError`."""

    cleaned = _require_phone(phone)
    if len(cleaned.lstrip("+")) < PHONE_MIN_LENGTH:
        raise ValidationError(
            f"Phone number must contain at least {PHONE_MIN_LENGTH} digits",
            field="phone",
        )
    return cleaned


# ----------------------------------------------------------------------
# Lookup
# ----------------------------------------------------------------------
def lookup_user(
    database: Database,
    *,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    google_id: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Optional[User]:
    """Return the user matching exactly one key, or ``None`` when absent."""

    keys = {
        name: value
        for name, value in (
            ("phone", phone),
            ("email", email),
            ("google_id", google_id),
            ("user_id", user_id),
        )
        if value is not None
    }
    if len(keys) != 1:
        raise ValidationError("Exactly one lookup key must be provided")

    with _store_errors("look up a user"):
        if phone is not None:
            return database.get_user_by_phone(_require_phone(phone))
        if email is not None:
            return database.get_user_by_email(_require_text(email, "email", "Email"))
        if google_id is not None:
            return database.get_user_by_google_id(_require_text(google_id, "google_id", "Google id"))
        try:
            numeric_id = int(user_id)  # type: ignore[call-overload]
        except (TypeError, ValueError):
            raise ValidationError("User id must be an integer", field="user_id") from None
        return database.get_user(numeric_id)


def check_phone(database: Database, phone: Optional[str]) -> bool:
    """Return ``True`` when ``phone`` already belongs to a user."""

    cleaned = _require_phone(phone)
    with _store_errors("check a phone number"):
        return database.get_user_by_phone(cleaned) is not None


# ----------------------------------------------------------------------
# Registration
# ----------------------------------------------------------------------
def register_phone(database: Database, phone: Optional[str]) -> RegistrationResult:
    """Create a phone-only user, or return the existing owner of ``phone``.

    The insert is attempted first and the unique constraint on
    ``phonenumber`` decides the outcome, so two concurrent registrations of
    the same number always end with a single row.
    """

    cleaned = _require_phone(phone)
    with _store_errors("register a phone number"):
        try:
            user = database.create_phone_user(cleaned)
        except DuplicateRecordError as exc:
            if exc.field != "phonenumber":
                raise ConflictError(_conflict_message(exc.field), field=_conflict_field(exc.field)) from exc
            existing = database.get_user_by_phone(cleaned)
            if existing is None:
                raise StoreError("Internal server error") from exc
            logger.info("Phone %s is already registered as user %s", _mask_phone(cleaned), existing.id)
            return RegistrationResult(user=existing, created=False)

    logger.info("Registered phone %s as user %s", _mask_phone(cleaned), user.id)
    return RegistrationResult(user=user, created=True)


def register_user(
    database: Database,
    phone: Optional[str],
    *,
    first_name: Optional[str],
    last_name: Optional[str],
    dob: Optional[date],
    email: Optional[str],
) -> User:
    """Create a fully populated user in one step."""

    cleaned_phone = _require_phone(phone)
    cleaned_first = _require_text(first_name, "first_name", "First name")
    cleaned_last = _require_text(last_name, "last_name", "Last name")
    cleaned_email = _require_text(email, "email", "Email")
    if dob is None:
        raise ValidationError("Date of birth is required", field="dob")

    with _store_errors("register a user"):
        try:
            user = database.create_user(
                cleaned_phone,
                first_name=cleaned_first,
                last_name=cleaned_last,
                dob=dob,
                email=cleaned_email,
            )
        except DuplicateRecordError as exc:
            raise ConflictError(_conflict_message(exc.field), field=_conflict_field(exc.field)) from exc

    logger.info("Registered user %s with full profile", user.id)
    return user


def complete_signup(
    database: Database,
    phone: Optional[str],
    *,
    first_name: Optional[str],
    last_name: Optional[str],
    dob: Optional[date],
    email: Optional[str],
) -> User:
    """Fill in the profile of the user previously registered with ``phone``."""

    cleaned_phone = _require_phone(phone)
    cleaned_first = _require_text(first_name, "first_name", "First name")
    cleaned_last = _require_text(last_name, "last_name", "Last name")
    cleaned_email = _require_text(email, "email", "Email")
    if dob is None:
        raise ValidationError("Date of birth is required", field="dob")

    with _store_errors("complete a signup"):
        try:
            user = database.update_profile_by_phone(
                cleaned_phone,
                first_name=cleaned_first,
                last_name=cleaned_last,
                dob=dob,
                email=cleaned_email,
            )
        except DuplicateRecordError as exc:
            raise ConflictError(_conflict_message(exc.field), field=_conflict_field(exc.field)) from exc

    if user is None:
        raise NotRegisteredError(
            "Phone number not registered. Please verify phone number first.",
            field="phone",
        )
    logger.info("Completed signup for user %s", user.id)
    return user


# ----------------------------------------------------------------------
# Google accounts
# ----------------------------------------------------------------------
def login_with_google(database: Database, profile: GoogleProfile) -> User:
    """Return the user linked to ``profile``, creating a pending one if needed."""

    google_id = _require_text(profile.google_id, "google_id", "Google id")

    with _store_errors("sign in with Google"):
        existing = database.get_user_by_google_id(google_id)
        if existing is not None:
            return existing

        try:
            user = database.create_google_user(profile)
        except DuplicateRecordError as exc:
            # Another request may have created the row between lookup and insert.
            winner = database.get_user_by_google_id(google_id)
            if winner is not None:
                return winner
            raise ConflictError(_conflict_message(exc.field), field=_conflict_field(exc.field)) from exc

    logger.info("Created user %s from Google sign-in; phone number pending", user.id)
    return user


def backfill_phone(
    database: Database,
    user_id: int,
    phone: Optional[str],
    *,
    session_user_id: Optional[int],
) -> User:
    """Attach ``phone`` to a signed-in user and clear the pending flag."""

    if session_user_id is None or session_user_id != user_id:
        raise AuthenticationError("Not authenticated")

    cleaned = validate_phone(phone)

    with _store_errors("update a phone number"):
        owner = database.get_user_by_phone(cleaned)
        if owner is not None and owner.id != user_id:
            raise ConflictError(_conflict_message("phonenumber"), field="phone")
        try:
            user = database.set_phone_number(user_id, cleaned)
        except DuplicateRecordError as exc:
            raise ConflictError(_conflict_message(exc.field), field=_conflict_field(exc.field)) from exc

    if user is None:
        raise NotRegisteredError("User not found")
    logger.info("Stored phone %s for user %s", _mask_phone(cleaned), user.id)
    return user


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "NotRegisteredError",
    "PHONE_MIN_LENGTH",
    "RegistrationError",
    "StoreError",
    "ValidationError",
    "backfill_phone",
    "check_phone",
    "complete_signup",
    "login_with_google",
    "lookup_user",
    "register_phone",
    "register_user",
    "validate_phone",
]
