import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache import keys
from app.cache.decorators import cached
from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.core.errors import AuthenticationError, ConflictError, NotFoundError
from app.core.security import (
    ExpiredToken,
    InvalidToken,
    TokenService,
    changed_password_after,
    hash_password,
    verify_password,
)
from app.models import User, get_utc_now
from app.schemas import (
    AuthResult,
    CachedUser,
    PasswordChange,
    UserLogin,
    UserRead,
    UserRegister,
    UserUpdate,
)

logger = logging.getLogger(__name__)


class AuthService:
    def __init__(
        self,
        db: AsyncSession,
        cache: CacheLayer,
        tokens: TokenService,
        settings: Settings,
    ):
        self.db = db
        self.cache = cache
        self.tokens = tokens
        self.settings = settings

    async def _find_by_email(self, email: str) -> User | None:
        result = await self.db.exec(select(User).where(User.email == email.lower()))
        return result.first()

    async def _get_user(self, user_id: int) -> User:
        user = await self.db.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def _remember(self, user: User) -> CachedUser:
        cached_user = CachedUser.model_validate(user)
        await self.cache.set(
            keys.user(user.id),
            cached_user.model_dump(mode="json"),
            ttl=self.settings.cache_ttl_user,
        )
        return cached_user

    async def _commit(self):
        try:
            await self.db.commit()
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError("Email already in use") from exc

    async def register(self, data: UserRegister) -> AuthResult:
        if await self._find_by_email(data.email):
            raise ConflictError("Email already in use")

        now = get_utc_now()
        user = User(
            name=data.name,
            email=data.email.lower(),
            password_hash=await hash_password(data.password, self.settings.bcrypt_rounds),
            role=data.role,
            created_at=now,
            updated_at=now,
        )
        self.db.add(user)
        await self._commit()

        token = self.tokens.issue(user.id)
        await self._remember(user)

        logger.info("New user registered: %s (id=%s, role=%s)", user.email, user.id, user.role.value)
        return AuthResult(user=UserRead.model_validate(user), token=token)

    async def login(self, credentials: UserLogin) -> AuthResult:
        user = await self._find_by_email(credentials.email)
        if not user or not await verify_password(credentials.password, user.password_hash):
            raise AuthenticationError("Incorrect email or password")

        if not user.is_active:
            raise AuthenticationError("Account is deactivated")

        user.last_login = get_utc_now()
        await self.db.commit()

        token = self.tokens.issue(user.id)
        await self._remember(user)

        logger.info("User logged in: %s (id=%s)", user.email, user.id)
        return AuthResult(user=UserRead.model_validate(user), token=token)

    async def logout(self, token: str | None, user_id: int | None = None) -> None:
        if not token:
            return
        await self.tokens.revoke(token)
        logger.info("User logged out (id=%s)", user_id if user_id is not None else "unknown")

    @cached(lambda user_id: keys.user(user_id), "cache_ttl_user", model=CachedUser)
    async def get_cached_user(self, user_id: int) -> CachedUser | None:
        user = await self.db.get(User, user_id)
        if user is None:
            return None
        return CachedUser.model_validate(user)

    async def get_current_user(self, user_id: int) -> UserRead:
        user = await self.get_cached_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return UserRead.model_validate(user.model_dump())

    async def authenticate(self, token: str) -> CachedUser:
        """Resolve a token to an active user whose credentials the token does not predate."""
        try:
            claims = self.tokens.verify(token)
        except ExpiredToken:
            raise AuthenticationError("Token expired")
        except InvalidToken:
            raise AuthenticationError("Invalid token")

        if await self.tokens.is_revoked(token):
            raise AuthenticationError("Token has been revoked")

        # is_active and password_changed_at always come from the store
        user = await self.db.get(User, claims["id"])
        if user is None:
            logger.warning("User not found for token (id=%s)", claims["id"])
            raise AuthenticationError("User not found")

        if not user.is_active:
            logger.warning("Inactive user tried to access (id=%s)", user.id)
            raise AuthenticationError("User account is deactivated")

        if changed_password_after(user.password_changed_at, claims["iat"]):
            logger.warning("Token issued before password change (id=%s)", user.id)
            raise AuthenticationError("User recently changed password. Please log in again.")

        return CachedUser.model_validate(user)

    async def update_profile(self, user_id: int, changes: UserUpdate) -> UserRead:
        user = await self._get_user(user_id)
        update_data = changes.model_dump(exclude_unset=True)

        email = update_data.get("email")
        if email and email != user.email:
            if await self._find_by_email(email):
                raise ConflictError("Email already in use")
            user.email = email
        if "name" in update_data:
            user.name = update_data["name"]

        # nested documents are merged key-wise
        for section in ("profile", "preferences"):
            if update_data.get(section) is not None:
                current = dict(getattr(user, section) or {})
                incoming = getattr(changes, section).model_dump(mode="json", exclude_unset=True)
                if section == "preferences" and "notifications" in incoming:
                    incoming["notifications"] = {
                        **current.get("notifications", {}),
                        **incoming["notifications"],
                    }
                setattr(user, section, {**current, **incoming})

        user.updated_at = get_utc_now()
        await self._commit()
        await self.cache.delete(keys.user(user_id))

        logger.info("User profile updated (id=%s, fields=%s)", user_id, sorted(update_data))
        return UserRead.model_validate(user)

    async def change_password(self, user_id: int, data: PasswordChange) -> str:
        user = await self._get_user(user_id)

        if not await verify_password(data.current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")

        now = get_utc_now()
        user.password_hash = await hash_password(data.new_password, self.settings.bcrypt_rounds)
        user.password_changed_at = now
        user.updated_at = now
        await self.db.commit()
        await self.cache.delete(keys.user(user_id))

        logger.info("Password changed (id=%s)", user_id)
        return self.tokens.issue(user.id)
