"""FastAPI application exposing the registration and sign-in endpoints."""
from __future__ import annotations

import logging
import os
import sqlite3
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple, Type
from urllib.parse import urlencode

from fastapi import FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from starlette.middleware.sessions import SessionMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import registration, sessions
from .config import Settings, load_settings
from .database import Database
from .google import GoogleOAuthClient, ProviderNotConfiguredError
from .models import User
from .registration import (
    AuthenticationError,
    ConflictError,
    NotRegisteredError,
    RegistrationError,
    StoreError,
    ValidationError,
)


logger = logging.getLogger("homestay.api")

_ERROR_STATUS: List[Tuple[Type[RegistrationError], int]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (NotRegisteredError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ProviderNotConfiguredError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (StoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


class PhoneRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone: Optional[str] = Field(
        default=None,
        max_length=32,
        validation_alias=AliasChoices("phone", "phonenumber", "phoneNumber"),
    )


class ProfileRequest(PhoneRequest):
    first_name: Optional[str] = Field(
        default=None,
        max_length=100,
        validation_alias=AliasChoices("firstName", "first_name"),
    )
    last_name: Optional[str] = Field(
        default=None,
        max_length=100,
        validation_alias=AliasChoices("lastName", "last_name"),
    )
    dob: Optional[date] = None
    email: Optional[EmailStr] = None

    def has_profile(self) -> bool:
        return any(
            value is not None
            for value in (self.first_name, self.last_name, self.dob, self.email)
        )


class UserResponse(BaseModel):
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


class RegisterResponse(BaseModel):
    message: str
    created: bool
    user: UserResponse


class UserEnvelope(BaseModel):
    message: str
    user: UserResponse


class CheckPhoneResponse(BaseModel):
    status: str
    message: str


class LogoutResponse(BaseModel):
    success: bool
    message: str


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        phonenumber=user.phonenumber,
        first_name=user.first_name,
        last_name=user.last_name,
        dob=user.dob,
        email=user.email,
        google_id=user.google_id,
        profile_picture=user.profile_picture,
        google_auth_pending=user.google_auth_pending,
        created_at=user.created_at,
    )


def _trusted_proxy_hosts() -> list[str] | str:
    raw = os.getenv("HOMESTAY_TRUSTED_PROXIES")
    if not raw:
        return "*"
    hosts = [item.strip() for item in raw.split(",") if item.strip()]
    return hosts or "*"


def _error_payload(exc: RegistrationError) -> Dict[str, object]:
    payload: Dict[str, object] = {"error": exc.message}
    if exc.field:
        payload["field"] = exc.field
    return payload


def _status_for(exc: RegistrationError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
    google_client: GoogleOAuthClient | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    """Create the HTTP application around an explicit :class:`Database`."""

    if settings is None:
        settings = load_settings()

    if database is None:
        database = Database(settings.database_path)
        database.initialize()
    elif initialize_database:
        database.initialize()

    if not settings.session_secret:
        raise RuntimeError("HOMESTAY_SESSION_SECRET must be configured to serve the API")

    if google_client is None:
        google_client = GoogleOAuthClient(settings.google_client_id, settings.google_client_secret)

    app = FastAPI(
        title="Homestay Identity Service",
        description="Phone registration, signup and Google sign-in for the homestay platform",
        version="1.0.0",
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie="homestay_session",
        https_only=settings.is_production,
        same_site="lax",
        max_age=settings.session_max_age,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=_trusted_proxy_hosts())
    app.state.database = database
    app.state.settings = settings
    app.state.google_client = google_client

    def _client_redirect(marker: str, *, reason: Optional[str] = None) -> RedirectResponse:
        params = {"login": marker}
        if reason:
            params["reason"] = reason
        base = settings.redirect_base_url
        separator = "&" if "?" in base else "?"
        return RedirectResponse(
            f"{base}{separator}{urlencode(params)}",
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        )

    def _google_redirect_uri(request: Request) -> str:
        if settings.google_redirect_uri:
            return settings.google_redirect_uri
        return str(request.url_for("google_callback"))

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/test-db")
    async def database_check() -> JSONResponse:
        try:
            users = database.list_users(limit=5)
        except sqlite3.Error:
            logger.exception("Database check failed")
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={"message": "DB test failed"},
            )
        return JSONResponse(
            content={
                "message": "DB working",
                "users": [user_to_response(user).model_dump(mode="json") for user in users],
            }
        )

    @app.post("/register", response_model=RegisterResponse)
    async def register(payload: ProfileRequest, response: Response) -> RegisterResponse:
        if payload.has_profile():
            user = registration.register_user(
                database,
                payload.phone,
                first_name=payload.first_name,
                last_name=payload.last_name,
                dob=payload.dob,
                email=payload.email,
            )
            response.status_code = status.HTTP_201_CREATED
            return RegisterResponse(message="User registered", created=True, user=user_to_response(user))

        result = registration.register_phone(database, payload.phone)
        if result.created:
            response.status_code = status.HTTP_201_CREATED
            message = "Phone number saved"
        else:
            response.status_code = status.HTTP_200_OK
            message = "Phone number already registered"
        return RegisterResponse(message=message, created=result.created, user=user_to_response(result.user))

    @app.post("/check-phone", response_model=CheckPhoneResponse)
    async def check_phone(payload: PhoneRequest) -> CheckPhoneResponse:
        if registration.check_phone(database, payload.phone):
            raise ConflictError("Phone number already registered", field="phone")
        return CheckPhoneResponse(status="new", message="Phone number is not registered")

    @app.post("/signup", response_model=UserEnvelope)
    async def signup(payload: ProfileRequest) -> UserEnvelope:
        user = registration.complete_signup(
            database,
            payload.phone,
            first_name=payload.first_name,
            last_name=payload.last_name,
            dob=payload.dob,
            email=payload.email,
        )
        return UserEnvelope(message="Signup successful", user=user_to_response(user))

    @app.get("/api/current-user")
    async def read_current_user(request: Request) -> Dict[str, object]:
        user = sessions.current_user(request, database)
        if user is None:
            return {"authenticated": False}
        return {"authenticated": True, "user": user_to_response(user).model_dump(mode="json")}

    @app.get("/auth/google", name="google_login")
    async def google_login(request: Request) -> RedirectResponse:
        if not google_client.configured:
            raise ProviderNotConfiguredError()
        state = sessions.issue_oauth_state(request)
        url = google_client.authorization_url(_google_redirect_uri(request), state)
        return RedirectResponse(url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    @app.get("/auth/google/callback", name="google_callback")
    async def google_callback(
        request: Request,
        code: Optional[str] = Query(default=None),
        state: Optional[str] = Query(default=None),
        error: Optional[str] = Query(default=None),
    ) -> RedirectResponse:
        if not google_client.configured:
            raise ProviderNotConfiguredError()

        state_valid = sessions.consume_oauth_state(request, state)
        if error:
            logger.info("Google sign-in was declined: %s", error)
            return _client_redirect("failed", reason="access_denied")
        if not state_valid:
            logger.warning("Rejected Google callback with an invalid state parameter")
            return _client_redirect("failed", reason="invalid_state")

        result = await google_client.exchange_code(code or "", _google_redirect_uri(request))
        if not result.ok or result.profile is None:
            return _client_redirect("failed", reason=result.error)

        try:
            user = registration.login_with_google(database, result.profile)
        except ConflictError:
            logger.info("Google account email already belongs to another user")
            return _client_redirect("failed", reason="account_exists")

        sessions.login(request, user)
        return _client_redirect("pending" if user.google_auth_pending else "success")

    @app.post("/api/update-phone", response_model=UserEnvelope)
    async def update_phone(payload: PhoneRequest, request: Request) -> UserEnvelope:
        user = sessions.current_user(request, database)
        if user is None:
            raise AuthenticationError("Not authenticated")
        updated = registration.backfill_phone(
            database,
            user.id,
            payload.phone,
            session_user_id=sessions.session_user_id(request),
        )
        return UserEnvelope(message="Phone number updated successfully", user=user_to_response(updated))

    @app.get("/api/logout", response_model=LogoutResponse)
    async def logout(request: Request) -> LogoutResponse:
        if sessions.logout(request):
            return LogoutResponse(success=True, message="Logged out successfully")
        return LogoutResponse(success=True, message="Not logged in")

    @app.exception_handler(RegistrationError)
    async def handle_registration_error(_: Request, exc: RegistrationError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content=_error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        field: Optional[str] = None
        if errors:
            location = [part for part in errors[0].get("loc", ()) if part != "body"]
            if location:
                field = str(location[-1])
        payload: Dict[str, object] = {"error": "Invalid request"}
        if field:
            payload["field"] = field
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=payload)

    @app.exception_handler(sqlite3.Error)
    async def handle_database_error(_: Request, exc: sqlite3.Error) -> JSONResponse:
        logger.error("Unhandled database error", exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    return app


__all__ = ["create_app", "user_to_response"]
