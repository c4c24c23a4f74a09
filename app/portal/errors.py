"""
Error types raised by services and rendered as JSON by the app's error handlers.
"""
from __future__ import annotations

from typing import Any


class PortalError(Exception):
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        body.update(self.details)
        return body


class ValidationError(PortalError):
    status_code = 400

    def __init__(self, errors: list[str] | str) -> None:
        if isinstance(errors, str):
            errors = [errors]
        super().__init__(errors[0] if errors else "Invalid request.", details={"errors": list(errors)})
        self.errors = list(errors)


class ConflictError(PortalError):
    status_code = 409


class PaymentProviderError(PortalError):
    status_code = 502


class ServiceUnavailable(PortalError):
    status_code = 503


class PermissionDenied(PortalError):
    status_code = 403


class NotFound(PortalError):
    status_code = 404


class TooManyRequests(PortalError):
    status_code = 429
