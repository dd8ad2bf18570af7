"""
Shared error handling for the Connection Gateway.

All service errors derive from :class:`GatewayError`, which carries an
:class:`ErrorKind` tag, the HTTP status it maps to and an RFC 7807 problem
body. Callers branch on ``exc.kind`` instead of probing concrete types.
"""

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel

ERROR_TYPE_BASE = "https://connection-service.com/errors"


class ErrorKind(str, Enum):
    """Error categories understood by the HTTP edge."""
    VALIDATION = "validation"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REMOTE = "remote"
    BAD_GATEWAY = "bad_gateway"
    INTERNAL = "internal"


class ProblemDetails(BaseModel):
    """RFC 7807 problem details body."""

    type: str
    title: str
    status: int
    detail: str
    instance: str = ""


class GatewayError(Exception):
    """Base exception for Connection Gateway services."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500
    title: str = "Internal Server Error"

    def __init__(self, detail: str, instance: str = "", *,
                 status_code: Optional[int] = None,
                 title: Optional[str] = None,
                 type_uri: Optional[str] = None):
        if status_code is not None:
            self.status_code = status_code
        if title is not None:
            self.title = title
        self.detail = detail
        self.instance = instance
        self.type_uri = type_uri or f"{ERROR_TYPE_BASE}/{self.status_code}"
        super().__init__(f"{self.title}: {detail}")

    def to_problem(self) -> ProblemDetails:
        """Convert to a problem details body."""
        return ProblemDetails(
            type=self.type_uri,
            title=self.title,
            status=self.status_code,
            detail=self.detail,
            instance=self.instance,
        )

    def with_instance(self, instance: str) -> "GatewayError":
        """Fill in the request path when the raiser did not know it."""
        if not self.instance:
            self.instance = instance
        return self


class ValidationError(GatewayError):
    """Malformed or incomplete request input."""
    kind = ErrorKind.VALIDATION
    status_code = 400
    title = "Bad Request"


class AuthenticationError(GatewayError):
    """Token rejected by the identity service."""
    kind = ErrorKind.UNAUTHORIZED
    status_code = 401
    title = "Unauthorized"


class AuthorizationError(GatewayError):
    """User is known but not allowed to connect."""
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    title = "Forbidden"


class NotFoundError(GatewayError):
    """Requested resource does not exist."""
    kind = ErrorKind.NOT_FOUND
    status_code = 404
    title = "Not Found"


class ConflictError(GatewayError):
    """Request conflicts with the current resource state."""
    kind = ErrorKind.CONFLICT
    status_code = 409
    title = "Conflict"


class SessionConflictError(ConflictError):
    """Status transition attempted on a session that is not IN_PROGRESS."""
    title = "Session Not In Progress"

    def __init__(self, detail: str, instance: str = ""):
        super().__init__(
            detail,
            instance,
            type_uri="https://connection-service.com/session-not-in-progress",
        )


class BadGatewayError(GatewayError):
    """Upstream service unreachable or failing with 5xx."""
    kind = ErrorKind.BAD_GATEWAY
    status_code = 502
    title = "Bad Gateway"


class InternalError(GatewayError):
    """Local failure (database, broker, marshaling)."""
    kind = ErrorKind.INTERNAL
    status_code = 500
    title = "Internal Server Error"


class RemoteServiceError(GatewayError):
    """A 4xx answer from a collaborator, forwarded with its original status."""
    kind = ErrorKind.REMOTE

    @classmethod
    def from_response(cls, service: str, status_code: int, body: bytes,
                      instance: str = "") -> "RemoteServiceError":
        """Build from a remote response, keeping a problem body's text verbatim.

        The HTTP status always comes from the response itself, never the body.
        """
        try:
            payload: Dict[str, Any] = json.loads(body)
        except (ValueError, TypeError):
            payload = {}

        if isinstance(payload, dict) and "title" in payload and "detail" in payload:
            return cls(
                str(payload["detail"]),
                str(payload.get("instance") or instance),
                status_code=status_code,
                title=str(payload["title"]),
                type_uri=payload.get("type") or None,
            )

        # FastAPI-style {"detail": ...} bodies
        if isinstance(payload, dict) and "detail" in payload:
            detail = payload["detail"]
            if not isinstance(detail, str):
                detail = json.dumps(detail)
        else:
            detail = body.decode("utf-8", errors="replace") if body else ""

        return cls(
            f"{service} returned error: {detail}",
            instance,
            status_code=status_code,
            title="External Service Error",
            type_uri="https://connection-service.com/external-service-error",
        )
