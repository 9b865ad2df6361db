from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from db import crud
from db.models import Caller
from market.errors import ForbiddenError, UnauthenticatedError
from utils.config import Settings
from utils.state import AppState

# tokens are issued by the auth service; this side only verifies them
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def create_access_token(
    data: dict, settings: Settings, expires_delta: Optional[timedelta] = None
) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def token_for(user_id: str, settings: Settings) -> str:
    return create_access_token({"sub": user_id}, settings)


async def resolve_caller(state: AppState, token: Optional[str]) -> Caller:
    """Verify a bearer token and look its user up. Raises UnauthenticatedError."""
    if not token:
        raise UnauthenticatedError("Access token required")
    try:
        payload = jwt.decode(
            token,
            state.settings.secret_key,
            algorithms=[state.settings.jwt_algorithm],
        )
    except JWTError:
        raise UnauthenticatedError("Token is not valid", "invalid_token")
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthenticatedError("Token is not valid", "invalid_token")
    user = await crud.get_user(state.db, user_id)
    if user is None:
        raise UnauthenticatedError("Invalid token", "invalid_token")
    return Caller(id=user.id, role=user.role)


def get_state(request: Request) -> AppState:
    return request.app.state.market


async def get_current_caller(
    token: Optional[str] = Depends(oauth2_scheme),
    state: AppState = Depends(get_state),
) -> Caller:
    return await resolve_caller(state, token)


def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_admin:
        raise ForbiddenError("Access denied. Admin privileges required")
    return caller
