from fastapi import APIRouter, Response, status

from app.core.config import SettingsDep
from app.dependencies import AuthServiceDep, CurrentUser, OptionalUser, TokenDep
from app.schemas import (
    ApiResponse,
    AuthResult,
    PasswordChange,
    TokenEnvelope,
    UserEnvelope,
    UserLogin,
    UserRegister,
    UserUpdate,
)

router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_COOKIE = "token"
COOKIE_MAX_AGE = 24 * 60 * 60


def set_token_cookie(response: Response, token: str, settings):
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.is_production,
        samesite="strict" if settings.is_production else "lax",
    )


@router.post(
    "/register",
    response_model=ApiResponse[AuthResult],
    status_code=status.HTTP_201_CREATED,
)
async def register(data: UserRegister, auth: AuthServiceDep):
    """Create an account and return it with a fresh token"""
    result = await auth.register(data)
    return ApiResponse(message="User registered successfully", data=result)


@router.post("/login", response_model=ApiResponse[AuthResult])
async def login(
    credentials: UserLogin,
    response: Response,
    auth: AuthServiceDep,
    settings: SettingsDep,
):
    """Log in; the token is returned in the body and as an httpOnly cookie"""
    result = await auth.login(credentials)
    set_token_cookie(response, result.token, settings)
    return ApiResponse(message="Login successful", data=result)


@router.post("/logout", response_model=ApiResponse[None])
async def logout(
    response: Response,
    token: TokenDep,
    user: OptionalUser,
    auth: AuthServiceDep,
):
    """Revoke the presented token, if any, and clear the cookie"""
    await auth.logout(token, user.id if user else None)
    response.delete_cookie(TOKEN_COOKIE)
    return ApiResponse(message="Logged out successfully")


@router.get("/me", response_model=ApiResponse[UserEnvelope])
async def me(user: CurrentUser, auth: AuthServiceDep):
    current = await auth.get_current_user(user.id)
    return ApiResponse(data=UserEnvelope(user=current))


@router.patch("/update-profile", response_model=ApiResponse[UserEnvelope])
async def update_profile(changes: UserUpdate, user: CurrentUser, auth: AuthServiceDep):
    updated = await auth.update_profile(user.id, changes)
    return ApiResponse(message="Profile updated successfully", data=UserEnvelope(user=updated))


@router.patch("/change-password", response_model=ApiResponse[TokenEnvelope])
async def change_password(
    data: PasswordChange,
    response: Response,
    user: CurrentUser,
    auth: AuthServiceDep,
    settings: SettingsDep,
):
    """Change the password; tokens issued before now stop working"""
    token = await auth.change_password(user.id, data)
    set_token_cookie(response, token, settings)
    return ApiResponse(message="Password changed successfully", data=TokenEnvelope(token=token))
