"""Configuration management for the homestay identity service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import yaml


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

_ENV_KEYS = {
    "database_path": "HOMESTAY_DB_PATH",
    "session_secret": "HOMESTAY_SESSION_SECRET",
    "environment": "HOMESTAY_ENV",
    "client_url": "HOMESTAY_CLIENT_URL",
    "production_url": "HOMESTAY_PRODUCTION_URL",
    "google_client_id": "HOMESTAY_GOOGLE_CLIENT_ID",
    "google_client_secret": "HOMESTAY_GOOGLE_CLIENT_SECRET",
    "google_redirect_uri": "HOMESTAY_GOOGLE_REDIRECT_URI",
    "cors_origins": "HOMESTAY_CORS_ORIGINS",
    "session_max_age": "HOMESTAY_SESSION_MAX_AGE",
}


def _clean(value: object) -> Optional[str]:
    if value is None:
        return None
    stripped = str(value).strip()
    return stripped or None


def _split_origins(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        raise ValueError("cors_origins must be a comma separated string or a list")
    return [item.strip().rstrip("/") for item in items if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the HTTP service."""

    database_path: Path
    session_secret: Optional[str] = None
    environment: str = "development"
    client_url: str = "http://localhost:3000"
    production_url: Optional[str] = None
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    google_redirect_uri: Optional[str] = None
    cors_origins: List[str] = field(default_factory=list)
    session_max_age: int = 24 * 60 * 60

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def google_configured(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def redirect_base_url(self) -> str:
        """Client URL that OAuth callbacks send the browser back to."""

        if self.is_production and self.production_url:
            return self.production_url
        return self.client_url

    def allowed_origins(self) -> List[str]:
        if self.cors_origins:
            return list(self.cors_origins)
        origins = [self.client_url.rstrip("/")]
        if self.production_url:
            origins.append(self.production_url.rstrip("/"))
        return origins

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw mapping data."""

        unknown = set(data.keys()) - set(_ENV_KEYS)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        raw_db_path = _clean(data.get("database_path"))
        if raw_db_path:
            expanded = Path(raw_db_path).expanduser()
            if not expanded.is_absolute() and base_path is not None:
                expanded = base_path / expanded
            database_path = expanded.resolve(strict=False)
        else:
            database_path = resolve_database_path(None)

        max_age_raw = data.get("session_max_age")
        try:
            session_max_age = int(max_age_raw) if max_age_raw not in (None, "") else 24 * 60 * 60
        except (TypeError, ValueError) as exc:
            raise ValueError("session_max_age must be an integer number of seconds") from exc
        if session_max_age <= 0:
            raise ValueError("session_max_age must be positive")

        return Settings(
            database_path=database_path,
            session_secret=_clean(data.get("session_secret")),
            environment=_clean(data.get("environment")) or "development",
            client_url=(_clean(data.get("client_url")) or "http://localhost:3000").rstrip("/"),
            production_url=(_clean(data.get("production_url")) or "").rstrip("/") or None,
            google_client_id=_clean(data.get("google_client_id")),
            google_client_secret=_clean(data.get("google_client_secret")),
            google_redirect_uri=_clean(data.get("google_redirect_uri")),
            cors_origins=_split_origins(data.get("cors_origins")),
            session_max_age=session_max_age,
        )

    def describe(self) -> Dict[str, str]:
        """Report which settings are populated without exposing their values."""

        def _state(value: object) -> str:
            return "Set" if value else "Not Set"

        return {
            "environment": self.environment,
            "database_path": str(self.database_path),
            "session_secret": _state(self.session_secret),
            "client_url": _state(self.client_url),
            "production_url": _state(self.production_url),
            "google_client_id": _state(self.google_client_id),
            "google_client_secret": _state(self.google_client_secret),
        }


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (_PROJECT_ROOT / "data" / "homestay.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Optional[Path]:
    """Resolve the optional YAML configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    candidate = (_PROJECT_ROOT / "config" / "homestay.yaml").resolve(strict=False)
    if candidate.exists():
        return candidate
    return None


def load_settings(
    config_path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Load settings from YAML (if any) overlaid with ``HOMESTAY_*`` variables."""

    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = resolve_config_path(env.get("HOMESTAY_CONFIG"))

    raw: Dict[str, object] = {}
    base_path: Path | None = None
    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")
        raw.update(loaded)
        base_path = config_path.parent

    for key, env_name in _ENV_KEYS.items():
        value = env.get(env_name)
        if value is not None and value.strip():
            raw[key] = value

    settings = Settings.from_dict(raw, base_path=base_path)
    if "database_path" in raw and env.get("HOMESTAY_DB_PATH"):
        settings = replace(settings, database_path=resolve_database_path(env["HOMESTAY_DB_PATH"]))
    return settings


__all__ = ["Settings", "load_settings", "resolve_config_path", "resolve_database_path"]
