"""Google OAuth 2.0 client used for the "Sign in with Google" flow."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

import httpx

from .models import GoogleProfile
from .registration import RegistrationError


logger = logging.getLogger("homestay.google")

AUTHORIZATION_ENDPOINT = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
USERINFO_ENDPOINT = "https://openidconnect.googleapis.com/v1/userinfo"
DEFAULT_SCOPES = ("openid", "profile", "email")


class ProviderNotConfiguredError(RegistrationError):
    """Google client credentials are missing."""

    def __init__(self, message: str = "Google authentication is not configured") -> None:
        super().__init__(message)


@dataclass(frozen=True)
class GoogleAuthResult:
    """Outcome of a code exchange: a profile on success, a reason otherwise."""

    profile: Optional[GoogleProfile] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.profile is not None

    @classmethod
    def success(cls, profile: GoogleProfile) -> "GoogleAuthResult":
        return cls(profile=profile)

    @classmethod
    def failure(cls, reason: str) -> "GoogleAuthResult":
        return cls(error=reason)


def _optional_text(payload: Dict[str, object], key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def profile_from_userinfo(payload: Dict[str, object]) -> Optional[GoogleProfile]:
    """Build a :class:`GoogleProfile` from an OpenID Connect userinfo payload."""

    subject = _optional_text(payload, "sub")
    if subject is None:
        return None
    return GoogleProfile(
        google_id=subject,
        email=_optional_text(payload, "email"),
        given_name=_optional_text(payload, "given_name"),
        family_name=_optional_text(payload, "family_name"),
        picture=_optional_text(payload, "picture"),
    )


class GoogleOAuthClient:
    """Builds authorization redirects and exchanges callback codes for profiles."""

    def __init__(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client_id = (client_id or "").strip() or None
        self._client_secret = (client_secret or "").strip() or None
        self._timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def _require_configured(self) -> None:
        if not self.configured:
            raise ProviderNotConfiguredError()

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        self._require_configured()
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(DEFAULT_SCOPES),
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> GoogleAuthResult:
        """Trade an authorization ``code`` for the signed-in account's profile."""

        self._require_configured()
        if not code:
            return GoogleAuthResult.failure("missing_code")

        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "redirect_uri": redirect_uri,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                token_response = await client.post(TOKEN_ENDPOINT, data=token_data)
                if token_response.status_code != 200:
                    logger.warning(
                        "Google token exchange failed with status %s", token_response.status_code
                    )
                    return GoogleAuthResult.failure("token_exchange_failed")

                token_payload = token_response.json()
                access_token = (
                    token_payload.get("access_token") if isinstance(token_payload, dict) else None
                )
                if not access_token:
                    return GoogleAuthResult.failure("token_exchange_failed")

                userinfo_response = await client.get(
                    USERINFO_ENDPOINT,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                if userinfo_response.status_code != 200:
                    logger.warning(
                        "Google userinfo request failed with status %s",
                        userinfo_response.status_code,
                    )
                    return GoogleAuthResult.failure("userinfo_failed")
                userinfo = userinfo_response.json()
        except httpx.HTTPError as exc:
            logger.warning("Failed to contact Google: %s", exc)
            return GoogleAuthResult.failure("provider_unreachable")
        except ValueError:
            logger.warning("Google returned a malformed response")
            return GoogleAuthResult.failure("invalid_response")

        if not isinstance(userinfo, dict):
            return GoogleAuthResult.failure("invalid_response")
        profile = profile_from_userinfo(userinfo)
        if profile is None:
            return GoogleAuthResult.failure("invalid_response")
        return GoogleAuthResult.success(profile)


__all__ = [
    "GoogleAuthResult",
    "GoogleOAuthClient",
    "ProviderNotConfiguredError",
    "profile_from_userinfo",
]
