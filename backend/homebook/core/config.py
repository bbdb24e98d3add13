import os
import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str | None
    redis_prefix: str
    session_secret: str
    cookie_secure: bool
    tz: str
    log_level: str
    log_json: bool
    feeder_cache_ttl: int
    login_rate_limit: int
    login_rate_window: int
    register_rate_limit: int
    register_rate_window: int
    password_min_len: int
    username_re: re.Pattern[str]
    invite_code: str
    db_pool_min: int
    db_pool_max: int
    db_pool_timeout: float
    db_pool_max_idle: float
    db_pool_max_waiting: int
    uploads_dir: str
    upload_max_mb: int
    image_webp_quality: int


def load_settings() -> Settings:
    database_url = os.getenv("DATABASE_URL", "")
    session_secret = os.getenv("SESSION_SECRET")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    if not session_secret:
        raise RuntimeError("SESSION_SECRET is required")

    db_pool_min = max(1, int(os.getenv("DB_POOL_MIN", "1")))
    db_pool_max = max(db_pool_min, int(os.getenv("DB_POOL_MAX", "10")))

    return Settings(
        database_url=database_url,
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        redis_prefix=(os.getenv("REDIS_PREFIX") or "homebook").strip() or "homebook",
        session_secret=session_secret,
        cookie_secure=os.getenv("COOKIE_SECURE", "false").lower() == "true",
        tz=os.getenv("TZ", "Asia/Kolkata"),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        log_json=os.getenv("LOG_JSON", "false").lower() == "true",
        feeder_cache_ttl=int(os.getenv("FEEDER_CACHE_TTL", "300")),
        login_rate_limit=int(os.getenv("LOGIN_RATE_LIMIT", "10")),
        login_rate_window=int(os.getenv("LOGIN_RATE_WINDOW", "300")),
        register_rate_limit=int(os.getenv("REGISTER_RATE_LIMIT", "5")),
        register_rate_window=int(os.getenv("REGISTER_RATE_WINDOW", "900")),
        password_min_len=int(os.getenv("PASSWORD_MIN_LEN", "8")),
        username_re=re.compile(r"^[a-zA-Z0-9._-]{3,32}$"),
        invite_code=(os.getenv("INVITE_CODE") or "").strip(),
        db_pool_min=db_pool_min,
        db_pool_max=db_pool_max,
        db_pool_timeout=float(os.getenv("DB_POOL_TIMEOUT", "10")),
        db_pool_max_idle=float(os.getenv("DB_POOL_MAX_IDLE", "30")),
        db_pool_max_waiting=int(os.getenv("DB_POOL_MAX_WAITING", "100")),
        uploads_dir=(os.getenv("UPLOADS_DIR") or "/app/storage/uploads").strip() or "/app/storage/uploads",
        upload_max_mb=max(1, int(os.getenv("UPLOAD_MAX_MB", "10"))),
        image_webp_quality=max(1, min(100, int(os.getenv("IMAGE_WEBP_QUALITY", "80")))),
    )


settings = load_settings()
