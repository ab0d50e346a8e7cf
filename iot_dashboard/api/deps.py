from __future__ import annotations

from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, Request, Security, WebSocket, status
from fastapi.security import OAuth2PasswordBearer, SecurityScopes

from iot_dashboard.core.config import Settings
from iot_dashboard.core.security import SCOPES, decode_access_token, verify_password
from iot_dashboard.repositories.base import TelemetryRepository
from iot_dashboard.schemas.auth import User
from iot_dashboard.services.fanout import LiveFanout
from iot_dashboard.services.telemetry import TelemetryService

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", scopes=SCOPES)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_telemetry_repository(request: Request) -> TelemetryRepository:
    return request.app.state.telemetry_repository


def get_telemetry_service(request: Request) -> TelemetryService:
    return request.app.state.telemetry_service


def get_ws_settings(websocket: WebSocket) -> Settings:
    return websocket.app.state.settings


def get_live_fanout(websocket: WebSocket) -> LiveFanout:
    return websocket.app.state.live_fanout


def authenticate_user(*, username: str, password: str, settings: Settings) -> User | None:
    if username != settings.admin_username:
        return None
    if not verify_password(password, settings.admin_password_hash):
        return None
    return User(username=username, scopes=list(SCOPES))


def user_from_token(token: str, *, settings: Settings) -> User | None:
    try:
        subject, scopes = decode_access_token(token, settings=settings)
    except (jwt.PyJWTError, ValueError):
        return None
    return User(username=subject, scopes=scopes)


def get_current_user(
    security_scopes: SecurityScopes,
    token: Annotated[str, Depends(oauth2_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    authenticate_value = "Bearer"
    if security_scopes.scopes:
        authenticate_value = f'Bearer scope="{security_scopes.scope_str}"'

    user = user_from_token(token, settings=settings)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": authenticate_value},
        )

    if user.missing_scopes(security_scopes.scopes):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions",
            headers={"WWW-Authenticate": authenticate_value},
        )
    return user


CurrentUser = Annotated[User, Security(get_current_user)]

ReadUser = Annotated[User, Security(get_current_user, scopes=["telemetry:read"])]
ManageUser = Annotated[User, Security(get_current_user, scopes=["devices:manage"])]
