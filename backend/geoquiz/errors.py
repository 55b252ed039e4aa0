"""Expected, client-recoverable outcomes of the round engine.

Each class is an ``HTTPException`` so it propagates through the service layer and
reaches the client with its status code unchanged.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import HTTPException


class RoundEngineError(HTTPException):
    status_code_default = 400
    reason = "error"

    def __init__(self, detail: Any = None, headers: Optional[dict[str, str]] = None) -> None:
        super().__init__(
            status_code=self.status_code_default,
            detail=detail if detail is not None else self.reason,
            headers=headers,
        )


class Forbidden(RoundEngineError):
    """Round not yet released, or the caller is not a participant."""

    status_code_default = 403
    reason = "forbidden"


class NotFound(RoundEngineError):
    status_code_default = 404
    reason = "not_found"


class Conflict(RoundEngineError):
    """Duplicate guess, start while closed, or a guess without a running clock."""

    status_code_default = 409
    reason = "conflict"


class Expired(RoundEngineError):
    """Submitted after deadline + grace; the client resubmits as a timeout."""

    status_code_default = 410
    reason = "expired"


class Invalid(RoundEngineError):
    status_code_default = 422
    reason = "invalid"
