from typing import Any

from fastapi import HTTPException, Request
from passlib.hash import bcrypt

from homebook.core.config import settings
from homebook.core.logging import get_logger
from homebook.services.state import rate_limiter

log = get_logger(__name__)


def get_client_ip(req: Request) -> str:
    forwarded = req.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = req.headers.get("x-real-ip", "")
    if real_ip:
        return real_ip.strip()
    if req.client:
        return req.client.host
    return "unknown"


def _coerce_user_id(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        user_id = int(str(value).strip())
    except ValueError:
        return None
    return user_id if user_id > 0 else None


def resolve_user_id(req: Request) -> int | None:
    session = req.scope.get("session") or {}
    user_id = _coerce_user_id(session.get("user_id"))
    if user_id is None:
        user_id = _coerce_user_id(req.headers.get("x-user-id"))
    return user_id


def require_user_id(req: Request) -> int:
    """Session user first, then the ``x-user-id`` header used by older clients."""
    user_id = resolve_user_id(req)
    if user_id is None:
        raise HTTPException(status_code=401, detail="Unauthorized: user_id missing")
    return user_id


def enforce_register_rate_limit(req: Request) -> None:
    client_ip = get_client_ip(req)
    if rate_limiter.exceeded(
        f"register:ip:{client_ip}",
        settings.register_rate_limit,
        settings.register_rate_window,
    ):
        raise HTTPException(status_code=429, detail="Too many registration attempts. Try again later.")


def enforce_login_rate_limit(req: Request, username: str) -> None:
    client_ip = get_client_ip(req)
    if rate_limiter.exceeded(f"login:ip:{client_ip}", settings.login_rate_limit, settings.login_rate_window):
        raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")
    if rate_limiter.exceeded(f"login:user:{username.lower()}", settings.login_rate_limit, settings.login_rate_window):
        raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")


def validate_credentials(data: dict[str, Any]) -> tuple[str, str]:
    username = (data.get("username") or "").strip()
    password = (data.get("password") or "").strip()
    if not username or not password:
        raise HTTPException(status_code=400, detail="username and password required")
    if len(password.encode("utf-8")) > 72:
        raise HTTPException(status_code=400, detail="Password too long (max 72 bytes)")
    return username, password


def register_user(cur, data: dict[str, Any]) -> dict[str, Any]:
    invite_code = (data.get("invite_code") or "").strip()
    if not settings.invite_code:
        raise HTTPException(status_code=403, detail="Registration disabled")
    if invite_code != settings.invite_code:
        raise HTTPException(status_code=403, detail="Invalid invite code")

    username, password = validate_credentials(data)
    if not settings.username_re.fullmatch(username):
        raise HTTPException(
            status_code=400,
            detail="Invalid username. Use 3-32 chars: letters, numbers, dot, underscore, or hyphen.",
        )
    if len(password) < settings.password_min_len:
        raise HTTPException(status_code=400, detail=f"Password too short (min {settings.password_min_len})")

    full_name = (data.get("full_name") or "").strip() or username
    cur.execute(
        """
        INSERT INTO users (username, password_hash, full_name)
        VALUES (%s, %s, %s)
        RETURNING user_id, username, full_name
        """,
        (username, bcrypt.hash(password), full_name),
    )
    user = cur.fetchone()
    log.info("user_registered", user_id=user["user_id"])
    return user


def authenticate_user(cur, username: str, password: str) -> dict[str, Any]:
    cur.execute(
        "SELECT user_id, username, password_hash, full_name FROM users WHERE lower(username)=lower(%s)",
        (username,),
    )
    user = cur.fetchone()
    if not user or not bcrypt.verify(password, user["password_hash"]):
        log.info("login_rejected", username=username)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return user
