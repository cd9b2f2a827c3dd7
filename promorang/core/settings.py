from __future__ import annotations

from pathlib import Path
from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# 1. 强制加载 .env
ENV_PATH = Path(__file__).resolve().parent.parent.parent / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH)


class Settings(BaseSettings):
    # --- App ---
    APP_NAME: str = "Promorang API"
    LOG_LEVEL: str = "INFO"
    FRONTEND_URL: str = "http://127.0.0.1:5173"
    CORS_ORIGINS: list[str] = ["http://127.0.0.1:5173", "http://localhost:5173"]

    # --- Auth ---
    JWT_SECRET: str = "change-me"
    JWT_ALG: str = "HS256"
    SESSION_TTL_DAYS: int = 7
    COOKIE_NAME: str = "pr_token"
    ADMIN_COOKIE_NAME: str = "pr_admin_token"
    COOKIE_SECURE: bool = False
    COOKIE_SAMESITE: str = "lax"
    COOKIE_DOMAIN: str | None = None

    # --- Database ---
    DATABASE_URL: str = "sqlite+aiosqlite:///./promorang.db"

    # --- Google OAuth ---
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://127.0.0.1:8000/api/auth/google/callback"

    # --- 外部请求超时（Google / Stripe） ---
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # --- Admin bootstrap ---
    DEFAULT_ADMIN_USERNAME: str = "admin"
    DEFAULT_ADMIN_PASSWORD: str = "000000"

    # ================= Stripe 配置 =================
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    STRIPE_PRICE_ID_10GEMS: str = ""
    STRIPE_PRICE_ID_47GEMS: str = ""
    # ===============================================

    model_config = SettingsConfigDict(
        env_file=ENV_PATH,
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def gem_price_ids(self) -> dict[int, str]:
        return {10: self.STRIPE_PRICE_ID_10GEMS, 47: self.STRIPE_PRICE_ID_47GEMS}


settings = Settings()
