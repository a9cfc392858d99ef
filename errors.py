"""
Error taxonomy for the request workflow.

Core operations never raise these across their boundary; they come back inside
a ``Result`` so callers can decline gracefully (e.g. drop a request that was
claimed by someone else). Only unexpected faults propagate as exceptions.
"""
import functools
from dataclasses import dataclass
from typing import Any, Dict, Optional


class PasabuyError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, message: str = "", fields: Optional[Dict[str, str]] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.fields = fields or {}

    def to_detail(self) -> Dict[str, Any]:
        detail = {"code": self.code, "message": self.message}
        if self.fields:
            detail["fields"] = self.fields
        return detail


class ValidationError(PasabuyError):
    """Malformed input, reported field by field."""
    code = "validation_error"
    status_code = 422


class AlreadyClaimed(PasabuyError):
    code = "already_claimed"
    status_code = 409


class NotFound(PasabuyError):
    code = "not_found"
    status_code = 404


class NotPermitted(PasabuyError):
    """The actor's role does not allow this action on the request."""
    code = "not_permitted"
    status_code = 403


class InvalidTransition(PasabuyError):
    """The request is not in a state from which this action is allowed."""
    code = "invalid_transition"
    status_code = 409


class StoreUnavailable(PasabuyError):
    code = "store_unavailable"
    status_code = 503


class GeolocationUnavailable(PasabuyError):
    code = "geolocation_unavailable"
    status_code = 422


@dataclass
class Result:
    ok: bool
    value: Any = None
    error: Optional[PasabuyError] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: PasabuyError) -> "Result":
        return cls(ok=False, error=error)

    def unwrap(self):
        if not self.ok:
            raise self.error
        return self.value


def returns_result(func):
    """Run ``func`` and wrap its return value, or any PasabuyError it raises, in a Result."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return Result.success(func(*args, **kwargs))
        except PasabuyError as e:
            return Result.failure(e)
    return wrapper
