"""
Error taxonomy for directory, hierarchy and session operations.

Services raise these; the API layer renders them as
``{"success": false, "error": <kind>, "message": <text>, ...details}``.
Only ``StorageError`` (and its subclasses) is worth retrying unchanged.
"""
from typing import Any, Dict, Optional


class OrgHubError(Exception):
    kind: str = "Error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        body.update(self.details)
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class InvalidInput(OrgHubError):
    kind = "InvalidInput"


class InvalidOperation(OrgHubError):
    kind = "InvalidOperation"


class NotFound(OrgHubError):
    kind = "NotFound"
    status_code = 404


class Conflict(OrgHubError):
    kind = "Conflict"
    status_code = 409


class Forbidden(OrgHubError):
    kind = "Forbidden"
    status_code = 403


class InsufficientSeniority(OrgHubError):
    kind = "InsufficientSeniority"


class BranchScopeViolation(OrgHubError):
    kind = "BranchScopeViolation"


class CircularReference(OrgHubError):
    kind = "CircularReference"


class InvalidCredentials(OrgHubError):
    kind = "InvalidCredentials"
    status_code = 401


class TemporarilyLocked(OrgHubError):
    kind = "TemporarilyLocked"
    status_code = 403


class AccountLocked(OrgHubError):
    kind = "AccountLocked"
    status_code = 403


class DeviceLimitExceeded(OrgHubError):
    kind = "DeviceLimitExceeded"
    status_code = 403


class InvalidToken(OrgHubError):
    kind = "InvalidToken"
    status_code = 401


class StorageError(OrgHubError):
    kind = "StorageError"
    status_code = 503
    retryable = True

    def __init__(self, message: str = "Storage unavailable", cause: Optional[BaseException] = None, **details: Any):
        super().__init__(message, **details)
        self.cause = cause


class ConcurrentUpdate(StorageError):
    kind = "ConcurrentUpdate"
    status_code = 409
