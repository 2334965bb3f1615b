"""Domain models for the homestay identity service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a user account stored in the ``users`` table."""

    id: int
    phonenumber: Optional[str]
    first_name: Optional[str]
    last_name: Optional[str]
    dob: Optional[date]
    email: Optional[str]
    google_id: Optional[str]
    profile_picture: Optional[str]
    google_auth_pending: bool
    created_at: datetime


@dataclass(frozen=True)
class GoogleProfile:
    """Identity claims returned by Google for a signed-in account."""

    google_id: str
    email: Optional[str]
    given_name: Optional[str]
    family_name: Optional[str]
    picture: Optional[str]


@dataclass(frozen=True)
class RegistrationResult:
    """Outcome of a phone registration: the row and whether it was just created."""

    user: User
    created: bool


__all__ = ["GoogleProfile", "RegistrationResult", "User"]
