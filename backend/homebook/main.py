import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from homebook.core.config import settings
from homebook.core.logging import bind_request_context, clear_request_context, configure_logging, get_logger
from homebook.db.pool import close_db_pool, open_db_pool
from homebook.routers import (
    actress,
    auth,
    daily_transaction,
    dipwid,
    documents,
    dpr,
    favorites,
    inward,
    inward_view,
    investment,
    journal,
    plan,
    reports,
    sitekharch,
    titles,
)
from homebook.services.uploads import PUBLIC_UPLOADS_PREFIX, ensure_uploads_dir

configure_logging(settings.log_level, settings.log_json, "homebook")
log = get_logger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    open_db_pool()
    ensure_uploads_dir()
    try:
        yield
    finally:
        close_db_pool()


app = FastAPI(title="homebook", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="homebook_session",
    same_site="strict",
    https_only=settings.cookie_secure,
)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    bind_request_context(request_id=request_id, method=request.method, path=request.url.path)
    try:
        response = await call_next(request)
    finally:
        clear_request_context("request_id", "method", "path")
    response.headers["x-request-id"] = request_id
    return response


for module in (
    auth,
    investment,
    dipwid,
    plan,
    journal,
    reports,
    daily_transaction,
    sitekharch,
    dpr,
    favorites,
    actress,
    inward,
    inward_view,
    documents,
):
    app.include_router(module.router)
app.include_router(titles.movies_router)
app.include_router(titles.series_router)

app.mount(PUBLIC_UPLOADS_PREFIX, StaticFiles(directory=settings.uploads_dir, check_dir=False), name="uploads")


@app.get("/health")
def health():
    return {"status": "OK"}


@app.exception_handler(StarletteHTTPException)
def http_exc_handler(_: Request, exc: StarletteHTTPException):
    content = {"ok": False}
    if isinstance(exc.detail, dict):
        content.update(exc.detail)
    else:
        content["message"] = exc.detail
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
def validation_exc_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"ok": False, "message": "Invalid request body"})


@app.exception_handler(Exception)
def unhandled_exc_handler(request: Request, exc: Exception):
    log.error("unhandled_error", path=request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"ok": False, "message": "Server error"})
