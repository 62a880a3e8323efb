"""
Error taxonomy shared by every component.

Handlers never build HTTP errors themselves: they raise one of these and the
exception handlers registered in main.py render `{"message": ...}`.
"""
from typing import List, Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, errors: Optional[List[dict]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


# Authenticated but not entitled to this particular resource.
PermissionDenied = Forbidden


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class InvalidState(AppError):
    status_code = 400
