"""SQLite-backed persistence for users, listings and bookings."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from .config import resolve_database_path
from .models import GoogleProfile, User


logger = logging.getLogger("homestay.database")


_USERS_TABLE = """
CREATE TABLE IF NOT EXISTS {name} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    phonenumber TEXT UNIQUE,
    first_name TEXT,
    last_name TEXT,
    dob TEXT,
    email TEXT UNIQUE,
    google_id TEXT,
    profile_picture TEXT,
    google_auth_pending INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
)
"""

_USER_COLUMNS = (
    "id",
    "phonenumber",
    "first_name",
    "last_name",
    "dob",
    "email",
    "google_id",
    "profile_picture",
    "google_auth_pending",
    "created_at",
)


class DuplicateRecordError(ValueError):
    """Raised when an insert or update collides with a unique column."""

    def __init__(self, field: str) -> None:
        super().__init__(f"A user with that {field} already exists")
        self.field = field


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _normalize_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    cleaned = email.strip().lower()
    return cleaned or None


def _duplicate_field(exc: sqlite3.IntegrityError) -> Optional[str]:
    # "UNIQUE constraint failed: users.phonenumber"
    message = str(exc)
    if "UNIQUE constraint failed" not in message:
        return None
    column = message.rsplit(":", 1)[-1].strip()
    return column.split(".", 1)[-1].split(",", 1)[0]


class Database:
    """Simple wrapper around SQLite for persisting user identities."""

    def __init__(self, path: Path) -> None:
        _ensure_directory(path)
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self, *, foreign_keys: bool = True) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the required tables and upgrade older layouts in place."""

        with self._connect() as conn:
            conn.execute(_USERS_TABLE.format(name="users"))
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS listings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    description TEXT,
                    price INTEGER,
                    location TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS bookings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    listing_id INTEGER REFERENCES listings(id) ON DELETE CASCADE,
                    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
                    start_date TEXT NOT NULL,
                    end_date TEXT NOT NULL,
                    total_price INTEGER,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_listings_user_id ON listings(user_id);
                CREATE INDEX IF NOT EXISTS idx_bookings_listing_id ON bookings(listing_id);
                CREATE INDEX IF NOT EXISTS idx_bookings_user_id ON bookings(user_id);
                """
            )

            columns = {
                row["name"]: row
                for row in conn.execute("PRAGMA table_info(users)").fetchall()
            }
            if "google_id" not in columns:
                conn.execute("ALTER TABLE users ADD COLUMN google_id TEXT")
            if "profile_picture" not in columns:
                conn.execute("ALTER TABLE users ADD COLUMN profile_picture TEXT")
            if "google_auth_pending" not in columns:
                conn.execute(
                    "ALTER TABLE users ADD COLUMN google_auth_pending INTEGER NOT NULL DEFAULT 0"
                )
            phone_required = "phonenumber" in columns and bool(columns["phonenumber"]["notnull"])

        if phone_required:
            self._rebuild_users_table()

        with self._connect() as conn:
            duplicates = conn.execute(
                """
                SELECT google_id, COUNT(*) AS total FROM users
                WHERE google_id IS NOT NULL
                GROUP BY google_id HAVING COUNT(*) > 1
                """
            ).fetchall()
            if duplicates:
                ids = ", ".join(str(row["google_id"]) for row in duplicates)
                logger.error(
                    "Cannot add the unique google_id index: %s user(s) share Google ids %s. "
                    "Merge or clear the duplicate rows and restart.",
                    sum(row["total"] for row in duplicates),
                    ids,
                )
                raise RuntimeError(f"Duplicate google_id values in users table: {ids}")
            conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_google_id ON users(google_id)"
            )

    def _rebuild_users_table(self) -> None:
        # SQLite cannot drop NOT NULL in place; copy rows into a fresh table.
        column_list = ", ".join(_USER_COLUMNS)
        select_list = ", ".join(
            "COALESCE(created_at, CURRENT_TIMESTAMP)" if column == "created_at" else column
            for column in _USER_COLUMNS
        )
        with self._connect(foreign_keys=False) as conn:
            conn.execute("DROP TABLE IF EXISTS users_rebuild")
            conn.execute(_USERS_TABLE.format(name="users_rebuild"))
            conn.execute(
                f"INSERT INTO users_rebuild ({column_list}) "
                f"SELECT {select_list} FROM users"
            )
            conn.execute("DROP TABLE users")
            conn.execute("ALTER TABLE users_rebuild RENAME TO users")

    def query(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        """Run a single statement and return any rows it produced."""

        with self._connect() as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    # ------------------------------------------------------------------
    # User lookups
    # ------------------------------------------------------------------
    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))

    def get_user_by_phone(self, phonenumber: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE phonenumber = ?", (phonenumber,))

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_one(
            "SELECT * FROM users WHERE email = ?",
            (_normalize_email(email),),
        )

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        return self._fetch_one("SELECT * FROM users WHERE google_id = ?", (google_id,))

    def list_users(self, limit: Optional[int] = None) -> List[User]:
        if limit is None:
            rows = self.query("SELECT * FROM users ORDER BY id")
        else:
            rows = self.query("SELECT * FROM users ORDER BY id LIMIT ?", (int(limit),))
        return [self._row_to_user(row) for row in rows]

    def count_users_with_phone(self, phonenumber: str) -> int:
        rows = self.query(
            "SELECT COUNT(*) AS total FROM users WHERE phonenumber = ?",
            (phonenumber,),
        )
        return int(rows[0]["total"])

    # ------------------------------------------------------------------
    # User writes
    # ------------------------------------------------------------------
    def create_phone_user(self, phonenumber: str) -> User:
        """Insert a user that only carries a phone number."""

        return self._insert_user(phonenumber=phonenumber)

    def create_user(
        self,
        phonenumber: str,
        *,
        first_name: str,
        last_name: str,
        dob: date,
        email: str,
    ) -> User:
        """Insert a fully populated user record."""

        return self._insert_user(
            phonenumber=phonenumber,
            first_name=first_name,
            last_name=last_name,
            dob=dob.isoformat(),
            email=_normalize_email(email),
        )

    def create_google_user(self, profile: GoogleProfile) -> User:
        """Insert a user created from a Google sign-in, pending a phone number."""

        return self._insert_user(
            google_id=profile.google_id,
            email=_normalize_email(profile.email),
            first_name=profile.given_name,
            last_name=profile.family_name,
            profile_picture=profile.picture,
            google_auth_pending=1,
        )

    def update_profile_by_phone(
        self,
        phonenumber: str,
        *,
        first_name: str,
        last_name: str,
        dob: date,
        email: str,
    ) -> Optional[User]:
        """Overwrite the profile fields of the user owning ``phonenumber``."""

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    """
                    UPDATE users
                       SET first_name = ?, last_name = ?, dob = ?, email = ?
                     WHERE phonenumber = ?
                    """,
                    (first_name, last_name, dob.isoformat(), _normalize_email(email), phonenumber),
                )
            except sqlite3.IntegrityError as exc:
                field = _duplicate_field(exc)
                if field is None:
                    raise
                raise DuplicateRecordError(field) from exc
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM users WHERE phonenumber = ?",
                (phonenumber,),
            ).fetchone()
        return self._row_to_user(row)

    def set_phone_number(self, user_id: int, phonenumber: str) -> Optional[User]:
        """Store ``phonenumber`` on the user and clear the pending flag."""

        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "UPDATE users SET phonenumber = ?, google_auth_pending = 0 WHERE id = ?",
                    (phonenumber, user_id),
                )
            except sqlite3.IntegrityError as exc:
                field = _duplicate_field(exc)
                if field is None:
                    raise
                raise DuplicateRecordError(field) from exc
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _insert_user(self, **values: object) -> User:
        values["created_at"] = _serialize_datetime(_current_timestamp())
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    f"INSERT INTO users ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
            except sqlite3.IntegrityError as exc:
                field = _duplicate_field(exc)
                if field is None:
                    raise
                raise DuplicateRecordError(field) from exc
            row = conn.execute(
                "SELECT * FROM users WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        return self._row_to_user(row)

    def _fetch_one(self, sql: str, params: Sequence[object]) -> Optional[User]:
        rows = self.query(sql, params)
        if not rows:
            return None
        return self._row_to_user(rows[0])

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=int(row["id"]),
            phonenumber=row["phonenumber"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            dob=_parse_date(row["dob"]),
            email=row["email"],
            google_id=row["google_id"],
            profile_picture=row["profile_picture"],
            google_auth_pending=bool(row["google_auth_pending"]),
            created_at=_parse_datetime(str(row["created_at"])),
        )


__all__ = ["Database", "DuplicateRecordError", "resolve_database_path"]
