# portfolio_auth/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./portfolio_auth.db"
    SITE_URL: str = "http://localhost:8000"
    SITE_NAME: str = "Portfolio"

    # signing key for CSRF tokens
    JWT_SECRET: str = "change-me-to-a-very-secret-key-of-32-chars"
    JWT_ALGORITHM: str = "HS256"
    CSRF_TOKEN_EXPIRE_SECONDS: int = 3600  # 1 hour
    CSRF_CLOCK_SKEW_SECONDS: int = 60
    CSRF_COOKIE_NAME: str = "csrf-token"
    CSRF_HEADER_NAME: str = "X-CSRF-Token"

    # account lockout
    MAX_FAILED_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15
    REQUIRE_EMAIL_VERIFICATION: bool = True

    # sessions
    SESSION_COOKIE_NAME: str = "session"
    SESSION_COOKIE_SECURE: bool = True
    SESSION_TTL_HOURS: int = 12
    REMEMBER_ME_TTL_DAYS: int = 30
    SESSION_REFRESH_THRESHOLD: float = 0.5  # fraction of lifetime left before sliding
    SESSION_TOUCH_INTERVAL_SECONDS: int = 300

    # honour X-Forwarded-For only behind a trusted reverse proxy
    TRUST_PROXY_HEADERS: bool = False

    # single-use tokens
    EMAIL_VERIFICATION_EXPIRE_MINUTES: int = 60
    VERIFICATION_RESEND_COOLDOWN_SECONDS: int = 300
    PASSWORD_RESET_EXPIRE_MINUTES: int = 30
    PASSWORD_RESET_COOLDOWN_SECONDS: int = 60

    # rate limiting: <limit> hits per <window> seconds
    LOGIN_RATE_LIMIT: int = 10
    LOGIN_RATE_WINDOW_SECONDS: int = 60
    REGISTER_RATE_LIMIT: int = 3
    REGISTER_RATE_WINDOW_SECONDS: int = 3600
    EMAIL_RATE_LIMIT: int = 5
    EMAIL_RATE_WINDOW_SECONDS: int = 3600

    # session monitoring heuristics
    MONITOR_MAX_ACTIVE_SESSIONS: int = 10
    MONITOR_MAX_DISTINCT_IPS: int = 3
    MONITOR_MAX_DISTINCT_USER_AGENTS: int = 5
    MONITOR_MAX_SUSPICIOUS_USERS: int = 5

    # mail delivery; unset SMTP_HOST logs mail instead of sending it
    SMTP_HOST: str | None = None
    SMTP_PORT: int = 587
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    SMTP_USE_TLS: bool = True
    MAIL_FROM: str | None = None

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
