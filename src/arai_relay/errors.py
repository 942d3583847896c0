"""Error taxonomy shared by the queue, the gateway and the HTTP layer."""
from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base class; carries the HTTP status and a short machine-readable code."""

    status_code: int = 500
    code: str = "error"

    def __init__(self, message: str = "", *, code: Optional[str] = None, **extra: Any) -> None:
        super().__init__(message or self.code)
        if code is not None:
            self.code = code
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": False, "err": self.code}
        payload.update(self.extra)
        return payload


class ValidationError(RelayError):
    status_code = 400
    code = "empty"


class AuthError(RelayError):
    status_code = 401
    code = "auth"


class NotFoundError(RelayError):
    status_code = 404
    code = "notfound"


class ConflictError(RelayError):
    status_code = 409
    code = "not-claimed-by-client"


class UpstreamError(RelayError):
    """Non-success or unusable answer from the completion API.

    ``status_code`` is the upstream status when there was one; ``body`` is the
    raw upstream text so the relay can hand it back to the caller verbatim.
    """

    code = "upstream"

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"upstream returned {status_code}")
        self.status_code = status_code
        self.body = body
