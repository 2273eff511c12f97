"""
Domain error taxonomy and its mapping to HTTP responses.

Services raise these; the exception handlers registered in ``main`` turn
them (and anything else) into the uniform ``{statusCode, message, errorKind}``
payload.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class DomainError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_kind: str = "Internal"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra(self) -> Dict[str, Any]:
        return {}


class ValidationError(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_kind = "ValidationError"


class NotFound(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    error_kind = "NotFound"


class Conflict(DomainError):
    status_code = status.HTTP_409_CONFLICT
    error_kind = "Conflict"


class SlotConflict(Conflict):
    def __init__(self, message: str = "Practitioner is not available at this time slot"):
        super().__init__(message)


class InvalidTransition(DomainError):
    status_code = status.HTTP_409_CONFLICT
    error_kind = "InvalidTransition"

    def __init__(self, current_state: str, operation: str, message: Optional[str] = None):
        self.current_state = current_state
        self.operation = operation
        super().__init__(message or f"Cannot {operation} when status is '{current_state}'")

    def extra(self) -> Dict[str, Any]:
        return {"currentState": self.current_state, "operation": self.operation}


class InsufficientBalance(DomainError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_kind = "InsufficientBalance"

    def __init__(self, available: Decimal, requested: Decimal):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient wallet balance: available {available}, requested {requested}"
        )

    def extra(self) -> Dict[str, Any]:
        return {"available": str(self.available), "requested": str(self.requested)}


class GatewayFailure(DomainError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_kind = "GatewayFailure"


class Internal(DomainError):
    pass


def error_payload(status_code: int, message: Any, error_kind: str, **extra: Any) -> Dict[str, Any]:
    payload = {"statusCode": status_code, "message": message, "errorKind": error_kind}
    payload.update(extra)
    return payload


# =========================
# HANDLERS
# =========================

async def domain_error_handler(request: Request, exc: Exception) -> JSONResponse:
    if not isinstance(exc, DomainError):
        return await unhandled_exception_handler(request, exc)
    if exc.status_code >= 500:
        logger.error(f"{exc.error_kind} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.status_code, exc.message, exc.error_kind, **exc.extra()),
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = exc if isinstance(exc, HTTPException) else HTTPException(status_code=500, detail=str(exc))
    kinds = {
        status.HTTP_401_UNAUTHORIZED: "Unauthorized",
        status.HTTP_403_FORBIDDEN: "Forbidden",
        status.HTTP_404_NOT_FOUND: "NotFound",
    }
    return JSONResponse(
        status_code=http_exc.status_code,
        content=error_payload(
            http_exc.status_code,
            http_exc.detail,
            kinds.get(http_exc.status_code, "HttpError"),
        ),
        headers=http_exc.headers,
    )


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    details = []
    if isinstance(exc, RequestValidationError):
        for error in exc.errors():
            details.append(
                {
                    "field": ".".join(str(loc) for loc in error["loc"]),
                    "message": error["msg"],
                }
            )
    logger.warning(f"Validation error on {request.url.path}: {details}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_payload(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            "ValidationError",
            details=details,
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled exception on {request.method} {request.url.path}: {exc!s}",
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_payload(
            status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "Internal"
        ),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
