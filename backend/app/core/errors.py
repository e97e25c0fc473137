"""
Domain errors for the credential subsystem.

Services raise these; the HTTP layer renders them with a single handler
(see app.main). `kind` is the stable machine-readable code clients match on.
"""
from __future__ import annotations

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse


class CredentialError(Exception):
    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal error"

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"error": self.kind, "detail": self.message}
        body.update(self.extra)
        return body


class InvalidCredential(CredentialError):
    kind = "invalid_credential"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Invalid credentials"


class InvalidCode(InvalidCredential):
    # Same kind on the wire: a stale secret and a wrong code look identical.
    message = "invalid_code"


class IncorrectPassword(InvalidCredential):
    message = "incorrect_password"

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["requiresPassword"] = True
        return body


class RequiresPassword(CredentialError):
    kind = "requires_password"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Password required"

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["requiresPassword"] = True
        return body


class NotFound(CredentialError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    message = "Not found"


class Expired(CredentialError):
    kind = "expired"
    status_code = status.HTTP_410_GONE
    message = "Expired"


class ForbiddenPlan(CredentialError):
    kind = "forbidden_plan"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Feature not available on the current plan"


class Forbidden(CredentialError):
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Not authorized"


class RateLimited(CredentialError):
    kind = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many requests"

    def __init__(self, retry_after: float, message: str | None = None):
        self.retry_after = max(1, int(retry_after + 0.999))
        super().__init__(message, retryAfter=self.retry_after)


class InvalidRequest(CredentialError):
    kind = "invalid_request"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"


class EntropyUnavailable(CredentialError):
    message = "Secure random source unavailable"


async def credential_error_handler(request: Request, exc: CredentialError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    elif exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [
        {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    body = InvalidRequest("Request validation failed").to_dict()
    body["problems"] = problems
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)
