"""Binding between cookie sessions and stored user identities."""

from __future__ import annotations

import secrets
from typing import Optional

from starlette.requests import HTTPConnection

from .database import Database
from .models import User


SESSION_USER_KEY = "user_id"
SESSION_STATE_KEY = "oauth_state"


def serialize_user(user: User) -> int:
    """Return the durable identifier stored in the session for ``user``."""

    return user.id


def deserialize_user(database: Database, identifier: object) -> Optional[User]:
    """Load the user for a session identifier; malformed or stale ids yield ``None``."""

    if identifier is None or isinstance(identifier, bool):
        return None
    try:
        numeric_id = int(identifier)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return None
    return database.get_user(numeric_id)


def login(connection: HTTPConnection, user: User) -> None:
    connection.session.clear()
    connection.session[SESSION_USER_KEY] = serialize_user(user)


def logout(connection: HTTPConnection) -> bool:
    """Clear the session and report whether a user had been signed in."""

    was_signed_in = SESSION_USER_KEY in connection.session
    connection.session.clear()
    return was_signed_in


def session_user_id(connection: HTTPConnection) -> Optional[int]:
    value = connection.session.get(SESSION_USER_KEY)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def current_user(connection: HTTPConnection, database: Database) -> Optional[User]:
    """Resolve the signed-in user, dropping session ids that no longer exist."""

    identifier = connection.session.get(SESSION_USER_KEY)
    if identifier is None:
        return None
    user = deserialize_user(database, identifier)
    if user is None:
        connection.session.pop(SESSION_USER_KEY, None)
    return user


def issue_oauth_state(connection: HTTPConnection) -> str:
    state = secrets.token_urlsafe(24)
    connection.session[SESSION_STATE_KEY] = state
    return state


def consume_oauth_state(connection: HTTPConnection, received: Optional[str]) -> bool:
    """Check ``received`` against the stored OAuth state; the state is single-use."""

    expected = connection.session.pop(SESSION_STATE_KEY, None)
    if not expected or not received:
        return False
    return secrets.compare_digest(str(expected).encode("utf-8"), received.encode("utf-8"))


__all__ = [
    "SESSION_STATE_KEY",
    "SESSION_USER_KEY",
    "consume_oauth_state",
    "current_user",
    "deserialize_user",
    "issue_oauth_state",
    "login",
    "logout",
    "serialize_user",
    "session_user_id",
]
