from typing import Any, Dict, Optional
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base for every error the control plane raises on purpose."""

    status_code = 400
    code = "APP_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details or {}


class PathTraversalError(AppException):
    """A source or destination path escapes the vault root."""

    status_code = 403
    code = "PATH_TRAVERSAL"


class NotFoundError(AppException):
    status_code = 404
    code = "NOT_FOUND"


class ClusterNotFoundError(NotFoundError):
    """No registry row for the requested cluster id."""

    code = "CLUSTER_NOT_FOUND"


class ContextNotFoundError(NotFoundError):
    code = "CONTEXT_NOT_FOUND"


class ContextClusterNotFoundError(NotFoundError):
    """The context names a cluster entry the bundle does not define."""

    code = "CONTEXT_CLUSTER_NOT_FOUND"


class ContextUserNotFoundError(NotFoundError):
    """The context names a user entry the bundle does not define (or none at all)."""

    code = "CONTEXT_USER_NOT_FOUND"


class CredentialFileNotFoundError(NotFoundError):
    code = "CREDENTIAL_FILE_NOT_FOUND"


class CredentialReadError(AppException):
    """Malformed, unreadable, or non-regular credential bundle."""

    status_code = 422
    code = "CREDENTIAL_READ_ERROR"


class ClientConstructionError(AppException):
    status_code = 502
    code = "CLIENT_CONSTRUCTION_ERROR"


class KubernetesApiError(AppException):
    """The API server rejected a request made on behalf of a cluster-scoped command."""

    status_code = 502
    code = "KUBERNETES_API_ERROR"


class StreamError(AppException):
    """Mid-session read failure. Reported through the event channel, never over HTTP."""

    status_code = 502
    code = "STREAM_ERROR"


class PermissionHardeningError(AppException):
    status_code = 500
    code = "PERMISSION_HARDENING_FAILURE"


def _build_error_payload(
    *,
    message: str,
    status_code: int,
    code: str = "APP_ERROR",
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    rid = request_id or str(uuid.uuid4())
    return {
        "success": False,
        "error": {
            "message": message,
            "code": code,
            **({"details": details} if details else {}),
        },
        "request_id": rid,
        "status_code": status_code,
    }


def register_exception_handlers(app: FastAPI) -> None:
    """Map every error onto the standard error envelope."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        payload = _build_error_payload(
            message=message,
            status_code=exc.status_code,
            code="HTTP_ERROR",
            request_id=req_id,
        )
        logger.warning(
            "HTTPException: status=%s path=%s request_id=%s",
            exc.status_code,
            request.url.path,
            req_id,
        )
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        errors = exc.errors()
        payload = _build_error_payload(
            message="Request validation failed",
            status_code=422,
            code="VALIDATION_ERROR",
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
            request_id=req_id,
        )
        logger.info(
            "ValidationError: path=%s errors=%d request_id=%s",
            request.url.path,
            len(errors),
            req_id,
        )
        return JSONResponse(status_code=422, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        payload = _build_error_payload(
            message=exc.message,
            status_code=exc.status_code,
            code=exc.code,
            details=exc.details,
            request_id=req_id,
        )
        logger.warning(
            "AppException: status=%s code=%s path=%s request_id=%s",
            exc.status_code,
            exc.code,
            request.url.path,
            req_id,
        )
        return JSONResponse(status_code=exc.status_code, content=payload, headers={"X-Request-ID": req_id})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):  # type: ignore[override]
        req_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())
        logger.exception("UnhandledException: path=%s request_id=%s", request.url.path, req_id)
        payload = _build_error_payload(
            message="Internal server error",
            status_code=500,
            code="INTERNAL_SERVER_ERROR",
            request_id=req_id,
        )
        return JSONResponse(status_code=500, content=payload, headers={"X-Request-ID": req_id})
