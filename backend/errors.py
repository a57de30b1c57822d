from typing import Any, Optional

from fastapi import HTTPException


class ServiceError(HTTPException):
    """Domain error rendered by the API's HTTPException handler."""

    status_code_default = 500

    def __init__(self, detail: Any = None, status_code: Optional[int] = None) -> None:
        super().__init__(
            status_code=status_code or self.status_code_default,
            detail=detail if detail is not None else "Internal server error",
        )


class ValidationFailed(ServiceError):
    status_code_default = 400


class InsufficientFunds(ServiceError):
    status_code_default = 400

    def __init__(self, available: int, required: int) -> None:
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient coins. You have {available} coins but need {required} coins."
        )


class Forbidden(ServiceError):
    status_code_default = 403


class NotFound(ServiceError):
    status_code_default = 404


class Conflict(ServiceError):
    status_code_default = 409
