"""Error taxonomy for the governance engine.

Every rule violation is raised as a GovernanceError subclass carrying a
machine-readable ``code``, the HTTP status a request layer should map it
to, and a specific user-facing message. Store connectivity errors are not
wrapped; they propagate as SQLAlchemy exceptions.
"""

from __future__ import annotations

from typing import Any


class GovernanceError(Exception):
    """Base class for all recoverable, caller-reportable failures."""

    code: str = "GOVERNANCE_ERROR"
    status_code: int = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload

    def __repr__(self) -> str:
        return f"<{type(self).__name__} code={self.code!r} message={self.message!r}>"


class NotFoundError(GovernanceError):
    """Referenced entity is absent or already soft-deleted."""

    code = "NOT_FOUND"
    status_code = 404


class ForbiddenError(GovernanceError):
    """Absolute rule violation or missing capability."""

    code = "FORBIDDEN"
    status_code = 403


class ConsentRequiredError(ForbiddenError):
    """A sensitive child-scoped operation was attempted without valid consent."""

    code = "CONSENT_REQUIRED"


class ConflictError(GovernanceError):
    code = "CONFLICT"
    status_code = 409


class ValidationError(GovernanceError):
    code = "VALIDATION"
    status_code = 400
