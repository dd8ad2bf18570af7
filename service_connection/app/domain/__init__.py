"""Connection and session domain logic."""

from .credentials import CredentialIssuer
from .orchestrator import ConnectionOrchestrator
from .sessions import SessionService

__all__ = ["ConnectionOrchestrator", "CredentialIssuer", "SessionService"]
