"""Persistence layer for the Connection Service."""

from .postgres import (
    ActiveSessionExistsError,
    SessionNotFoundError,
    SessionNotInProgressError,
    SessionRepository,
)

__all__ = [
    "ActiveSessionExistsError",
    "SessionNotFoundError",
    "SessionNotInProgressError",
    "SessionRepository",
]
