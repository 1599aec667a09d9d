import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    auth_url: str
    auth_api_key: str
    auth_timeout_seconds: int
    auth_password_min_length: int

    port: int
    web_concurrency: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///fieldops.db"),
        auth_url=_getenv("AUTH_URL", ""),
        auth_api_key=_getenv("AUTH_API_KEY", ""),
        auth_timeout_seconds=_getenv_int("AUTH_TIMEOUT_SECONDS", 30),
        auth_password_min_length=_getenv_int("AUTH_PASSWORD_MIN_LENGTH", 6),
        port=_getenv_int("PORT", 8080),
        web_concurrency=_getenv_int("WEB_CONCURRENCY", 2),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "AUTH_URL": s.auth_url,
        "AUTH_API_KEY": s.auth_api_key,
        "AUTH_TIMEOUT_SECONDS": s.auth_timeout_seconds,
        "AUTH_PASSWORD_MIN_LENGTH": s.auth_password_min_length,
        "PORT": s.port,
        "WEB_CONCURRENCY": s.web_concurrency,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        "MAX_CONTENT_LENGTH": 1 * 1024 * 1024,
    }
