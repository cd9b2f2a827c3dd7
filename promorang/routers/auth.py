from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from promorang.core.errors import success
from promorang.core.settings import settings
from promorang.db import get_db
from promorang.deps import require_user
from promorang.models.user import User
from promorang.services.oauth_service import fetch_google_profile, google_auth_url
from promorang.services.security import issue_session_token
from promorang.services.user_service import ensure_user

router = APIRouter(prefix="/api/auth", tags=["auth"])


def set_session_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=settings.COOKIE_NAME,
        value=token,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite=settings.COOKIE_SAMESITE,
        domain=settings.COOKIE_DOMAIN,
        path="/",
        max_age=settings.SESSION_TTL_DAYS * 86400,
    )


@router.get("/google/url")
async def google_url():
    return success({"url": google_auth_url()})


@router.get("/google/callback")
async def google_callback(code: str, db: AsyncSession = Depends(get_db)):
    profile = await fetch_google_profile(code)
    user, _ = await ensure_user(
        db,
        google_sub=str(profile["id"]),
        email=profile.get("email"),
        name=profile.get("name"),
        picture=profile.get("picture"),
    )

    # 在重定向响应里种下 Cookie，浏览器会自动跳转
    response = RedirectResponse(url=f"{settings.FRONTEND_URL.rstrip('/')}/auth/success?session=true", status_code=302)
    set_session_cookie(response, issue_session_token(user.id))
    return response


@router.post("/logout")
async def logout(response: Response):
    response.delete_cookie(settings.COOKIE_NAME, path="/", domain=settings.COOKIE_DOMAIN)
    return success({"logged_out": True})


@router.get("/me")
async def me(user: User = Depends(require_user)):
    return success({
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "picture": user.picture,
        "tier": user.tier,
        "level": user.level,
    })
