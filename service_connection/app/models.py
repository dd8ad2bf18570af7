"""
Data models for the Connection Service.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_DISPATCHER_STATUS = "PENDING"


class SessionStatus(str, Enum):
    """Lifecycle states of a client session."""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    TIMEOUT = "TIMEOUT"


@dataclass
class Session:
    """One logical client-connection lifetime (row of the ``sessions`` table)."""
    session_id: str
    user_id: str
    token_id: str
    session_status: SessionStatus
    dispatcher_status: str
    created_at: datetime
    completed_at: Optional[datetime] = None


@dataclass
class TokenValidation:
    """Answer of the identity service to a token validation."""
    is_valid: bool
    token_id: Optional[str] = None
    expires_at: Optional[str] = None
    usage_count: Optional[int] = None
    max_uses: Optional[int] = None
    uses_remaining: Optional[int] = None


@dataclass
class UserProfile:
    """User record held by the identity service."""
    id: str
    username: str = ""
    email: str = ""
    model_type: str = ""
    inputs_format: str = ""
    outputs_format: str = ""
    is_authorized: bool = True
    created_at: Optional[str] = None


# API models

class ConnectRequest(BaseModel):
    """Request model for a client connect."""
    user_id: str = Field(..., description="User ID")
    token: str = Field(..., description="Connection token issued to the user")

    @field_validator("user_id", "token")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()


class BrokerCredentials(BaseModel):
    """Broker account a client uses to reach its queues."""
    username: str
    password: str
    host: str
    port: int


class ConnectResponse(BaseModel):
    """Response model for a client connect."""
    status: str
    message: str
    session_id: Optional[str] = None
    credentials: Optional[BrokerCredentials] = None
    inputs_format: str = ""
    outputs_format: str = ""
    model_type: str = ""


class ConnectionNotification(BaseModel):
    """Event published once per new session."""
    user_id: str
    session_id: str
    email: str = ""
    inputs_format: str = ""
    outputs_format: str = ""
    model_type: str = ""


class SessionStatusResponse(BaseModel):
    """Response model for a session status transition."""
    message: str
    session_id: str
    status: SessionStatus


class UpdateSessionStatusRequest(BaseModel):
    """Legacy request body carrying the session id and target status."""
    session_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)


class DispatcherStatusRequest(BaseModel):
    """Request model for a dispatcher acknowledgement update."""
    dispatcher_status: str = Field(..., min_length=1, max_length=64)


class SessionResponse(BaseModel):
    """Full view of a session."""
    session_id: str
    user_id: str
    token_id: str
    session_status: SessionStatus
    dispatcher_status: str
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            token_id=session.token_id,
            session_status=session.session_status,
            dispatcher_status=session.dispatcher_status,
            created_at=session.created_at,
            completed_at=session.completed_at,
        )
