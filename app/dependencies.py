import logging
from typing import Annotated, Optional

from fastapi import Cookie, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.layer import CacheLayer
from app.core.config import SettingsDep
from app.core.errors import AuthenticationError, AuthorizationError
from app.core.security import TokenService
from app.database import get_db, get_session_factory
from app.models import Role
from app.schemas import CachedUser
from app.services.auth_service import AuthService
from app.services.task_service import TaskService

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

DbDep = Annotated[AsyncSession, Depends(get_db)]


def get_cache(request: Request) -> CacheLayer:
    return request.app.state.cache


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


CacheDep = Annotated[CacheLayer, Depends(get_cache)]
TokensDep = Annotated[TokenService, Depends(get_token_service)]


def get_auth_service(
    db: DbDep, cache: CacheDep, tokens: TokensDep, settings: SettingsDep
) -> AuthService:
    return AuthService(db, cache, tokens, settings)


def get_task_service(
    db: DbDep,
    cache: CacheDep,
    settings: SettingsDep,
    session_factory: Annotated[async_sessionmaker, Depends(get_session_factory)],
) -> TaskService:
    return TaskService(db, cache, settings, session_factory)


AuthServiceDep = Annotated[AuthService, Depends(get_auth_service)]
TaskServiceDep = Annotated[TaskService, Depends(get_task_service)]


def get_request_token(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(bearer_scheme)],
    token: Annotated[Optional[str], Cookie()] = None,
) -> Optional[str]:
    """Bearer header first, then the ``token`` cookie."""
    if credentials and credentials.credentials:
        return credentials.credentials
    return token or None


TokenDep = Annotated[Optional[str], Depends(get_request_token)]


async def get_current_user(
    request: Request, token: TokenDep, auth: AuthServiceDep
) -> CachedUser:
    if not token:
        raise AuthenticationError("Not authorized, no token")
    user = await auth.authenticate(token)
    request.state.user = user
    return user


async def get_optional_user(
    request: Request, token: TokenDep, auth: AuthServiceDep
) -> Optional[CachedUser]:
    if not token:
        return None
    try:
        user = await auth.authenticate(token)
    except AuthenticationError as e:
        logger.debug("Ignoring unusable token on optional route: %s", e.message)
        return None
    request.state.user = user
    return user


CurrentUser = Annotated[CachedUser, Depends(get_current_user)]
OptionalUser = Annotated[Optional[CachedUser], Depends(get_optional_user)]


def require_roles(*roles: Role):
    """Route dependency admitting only the given roles."""

    async def check(user: CurrentUser) -> CachedUser:
        if user.role not in roles:
            logger.warning("Role %s denied (id=%s)", user.role.value, user.id)
            raise AuthorizationError("Not authorized to access this route")
        return user

    return check
