"""
Password hashing and session tokens.

Tokens are HS256 JWTs carrying the user id, a sub-second ``iat`` and ``exp``.
Revocation is a ``blacklist:<token>`` cache entry that lives exactly as long
as the token would have.
"""

import logging
import time
from datetime import datetime

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt
from starlette.concurrency import run_in_threadpool

from app.cache import keys
from app.cache.layer import CacheLayer
from app.core.config import Settings
from app.models import as_utc

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Password Hashing
# -----------------------------------------------------------------------------


def _hash(raw_password: str, rounds: int) -> str:
    return bcrypt.hashpw(raw_password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def _check(raw_password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(raw_password.encode(), password_hash.encode())
    except ValueError:
        return False


async def hash_password(raw_password: str, rounds: int = 12) -> str:
    """bcrypt is CPU bound, so it runs in the threadpool."""
    return await run_in_threadpool(_hash, raw_password, rounds)


async def verify_password(raw_password: str, password_hash: str) -> bool:
    return await run_in_threadpool(_check, raw_password, password_hash)


def changed_password_after(password_changed_at: datetime | None, issued_at: float) -> bool:
    """True when the credentials are newer than the token."""
    if password_changed_at is None:
        return False
    return as_utc(password_changed_at).timestamp() > issued_at


# -----------------------------------------------------------------------------
# JWT Token Handling
# -----------------------------------------------------------------------------


class TokenError(Exception):
    pass


class InvalidToken(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class TokenService:
    def __init__(self, settings: Settings, cache: CacheLayer):
        self.secret = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.expires_in = settings.jwt_expires_in
        self.cache = cache

    def issue(self, user_id: int) -> str:
        now = time.time()
        payload = {
            "id": user_id,
            "iat": now,
            "exp": int(now) + self.expires_in,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> dict:
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError as exc:
            raise ExpiredToken(str(exc)) from exc
        except JWTError as exc:
            raise InvalidToken(str(exc)) from exc

        if not isinstance(claims.get("id"), int) or "iat" not in claims:
            raise InvalidToken("Token is missing required claims")
        return claims

    async def revoke(self, token: str) -> bool:
        """
        Blacklist a token until its natural expiry.

        Never raises: logout must succeed even if the token is garbage or the
        cache is down.
        """
        try:
            claims = jwt.get_unverified_claims(token)
            expires_in = int(claims["exp"]) - int(time.time())
        except (JWTError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Could not revoke token: %s", exc)
            return False

        if expires_in <= 0:
            return False
        revoked = await self.cache.set(keys.blacklist(token), True, ttl=expires_in)
        if not revoked:
            logger.warning("Token revocation was not persisted (cache unavailable)")
        return revoked

    async def is_revoked(self, token: str) -> bool:
        return await self.cache.exists(keys.blacklist(token))
