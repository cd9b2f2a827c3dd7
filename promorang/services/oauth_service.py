from __future__ import annotations

import logging
from urllib.parse import urlencode

import httpx

from promorang.core.errors import BadRequest, UpstreamTimeout
from promorang.core.settings import settings

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def google_auth_url() -> str:
    if not settings.GOOGLE_CLIENT_ID:
        raise BadRequest("google_not_configured")
    params = {
        "client_id": settings.GOOGLE_CLIENT_ID,
        "redirect_uri": settings.GOOGLE_REDIRECT_URI,
        "response_type": "code",
        "scope": "openid email profile",
        "access_type": "online",
        "prompt": "select_account",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def fetch_google_profile(code: str) -> dict:
    """Exchange an authorization code and return the Google userinfo payload."""
    if not (settings.GOOGLE_CLIENT_ID and settings.GOOGLE_CLIENT_SECRET):
        raise BadRequest("google_not_configured")

    try:
        async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
            # 换取 Token
            token_resp = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": settings.GOOGLE_CLIENT_ID,
                    "client_secret": settings.GOOGLE_CLIENT_SECRET,
                    "redirect_uri": settings.GOOGLE_REDIRECT_URI,
                    "grant_type": "authorization_code",
                },
            )
            if token_resp.status_code != 200:
                logger.warning("google token exchange failed: %s %s", token_resp.status_code, token_resp.text)
                raise BadRequest("google_token_exchange_failed")
            access_token = token_resp.json().get("access_token")
            if not access_token:
                raise BadRequest("google_no_access_token")

            # 获取用户信息
            info_resp = await client.get(GOOGLE_USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"})
            if info_resp.status_code != 200:
                raise BadRequest("google_userinfo_failed")
            info = info_resp.json()
    except httpx.TimeoutException as exc:
        raise UpstreamTimeout("Google sign-in timed out, please retry") from exc

    if not info.get("id"):
        raise BadRequest("google_profile_incomplete")
    return info
