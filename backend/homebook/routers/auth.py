from fastapi import APIRouter, HTTPException, Request
from psycopg import errors as pg_errors

from homebook.core.config import settings
from homebook.core.logging import get_logger
from homebook.db.pool import db_conn
from homebook.services.auth import (
    authenticate_user,
    enforce_login_rate_limit,
    enforce_register_rate_limit,
    register_user,
    require_user_id,
    validate_credentials,
)
from homebook.services.common import ok, read_json

log = get_logger(__name__)

router = APIRouter(prefix="/api/auth")


@router.post("/register", status_code=201)
async def register(req: Request):
    data = await read_json(req)
    enforce_register_rate_limit(req)

    with db_conn() as conn, conn.cursor() as cur:
        try:
            user = register_user(cur, data)
            conn.commit()
        except HTTPException:
            conn.rollback()
            raise
        except pg_errors.UniqueViolation:
            conn.rollback()
            raise HTTPException(status_code=409, detail="User already exists")
    return ok(user, "Registered")


@router.post("/login")
async def login(req: Request):
    username, password = validate_credentials(await read_json(req))
    enforce_login_rate_limit(req, username)

    with db_conn() as conn, conn.cursor() as cur:
        user = authenticate_user(cur, username, password)

    req.session["user_id"] = user["user_id"]
    req.session["username"] = user["username"]
    req.session["full_name"] = user["full_name"]
    log.info("user_logged_in", user_id=user["user_id"])
    return ok({"user_id": user["user_id"], "username": user["username"], "full_name": user["full_name"]})


@router.post("/logout")
def logout(req: Request):
    req.session.clear()
    return ok()


@router.get("/me")
def me(req: Request):
    user_id = require_user_id(req)
    return ok(
        {
            "user_id": user_id,
            "username": req.session.get("username"),
            "full_name": req.session.get("full_name"),
            "tz": settings.tz,
        }
    )
