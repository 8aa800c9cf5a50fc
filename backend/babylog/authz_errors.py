# babylog/authz_errors.py
from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from babylog.auth_errors import AuthError

logger = logging.getLogger(__name__)

# Login endpoints report unexpected failures as "Authentication failed"
AUTH_PATH_PREFIXES = ("/api/auth", "/api/accounts/login")


async def auth_error_handler(request: Request, exc: AuthError):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_payload(),
        headers=exc.headers,
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    # Storage errors and the like never reach the client verbatim
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Authentication failed" if request.url.path.startswith(AUTH_PATH_PREFIXES) else "Request failed"
    return JSONResponse(status_code=500, content={"success": False, "error": message})


def register_exception_handlers(app) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
