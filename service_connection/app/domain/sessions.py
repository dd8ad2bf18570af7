"""
Session lifecycle transitions for the Connection Service.
"""

from typing import Optional

from shared.errors import NotFoundError, SessionConflictError, ValidationError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..adapters.identity_client import IdentityClient
from ..models import Session, SessionStatus
from ..persistence.postgres import SessionNotFoundError, SessionNotInProgressError, SessionRepository
from ..topology.provisioner import TopologyError, TopologyProvisioner


class SessionService:
    """Moves sessions out of IN_PROGRESS and releases what they held."""

    def __init__(self, repository: SessionRepository, provisioner: TopologyProvisioner,
                 identity: IdentityClient, metrics: Optional[MetricsCollector] = None):
        self.repository = repository
        self.provisioner = provisioner
        self.identity = identity
        self.metrics = metrics
        self.logger = get_logger("connection.sessions")

    async def get_session(self, session_id: str) -> Session:
        try:
            return await self.repository.get_session_by_id(session_id)
        except SessionNotFoundError:
            raise NotFoundError(f"session with ID {session_id} not found")

    async def set_session_status_to_completed(self, session_id: str) -> Session:
        """Complete the session, tear down its topology and revoke its access.

        Topology failures are logged. Identity-service failures propagate,
        with the session already COMPLETED.
        """
        session = await self._transition(session_id, SessionStatus.COMPLETED)
        await self._release_topology(session)
        await self.identity.revoke_authorization(session.user_id)
        await self.identity.revoke_token(session.token_id, session.user_id)
        return session

    async def set_session_status_to_timeout(self, session_id: str) -> Session:
        """Time the session out and tear down its topology."""
        session = await self._transition(session_id, SessionStatus.TIMEOUT)
        await self._release_topology(session)
        return session

    async def update_session_status(self, session_id: str, status: str) -> Session:
        """Apply a terminal status given by name."""
        try:
            target = SessionStatus(status.strip().upper())
        except ValueError:
            raise ValidationError(f"invalid session status '{status}', expected COMPLETED or TIMEOUT")

        if target is SessionStatus.COMPLETED:
            return await self.set_session_status_to_completed(session_id)
        if target is SessionStatus.TIMEOUT:
            return await self.set_session_status_to_timeout(session_id)
        raise ValidationError("sessions cannot be moved back to IN_PROGRESS")

    async def update_dispatcher_status(self, session_id: str, dispatcher_status: str) -> Session:
        try:
            return await self.repository.update_dispatcher_status(session_id, dispatcher_status)
        except SessionNotFoundError:
            raise NotFoundError(f"session with ID {session_id} not found")

    async def _transition(self, session_id: str, status: SessionStatus) -> Session:
        """Atomically move an IN_PROGRESS session to ``status``."""
        set_user_context(session_id=session_id)
        try:
            if status is SessionStatus.COMPLETED:
                session = await self.repository.set_session_status_to_completed(
                    session_id, expected_status=SessionStatus.IN_PROGRESS)
            else:
                session = await self.repository.update_session_status(
                    session_id, status, expected_status=SessionStatus.IN_PROGRESS)
        except SessionNotFoundError:
            raise NotFoundError(f"session with ID {session_id} not found")
        except SessionNotInProgressError:
            raise SessionConflictError("cannot update status: session is not IN_PROGRESS")

        if self.metrics is not None:
            self.metrics.increment_counter("session_transitions_total", status=status.value)
        self.logger.info(
            "Session status updated",
            session_id=session_id,
            user_id=session.user_id,
            status=status.value
        )
        return session

    async def _release_topology(self, session: Session) -> None:
        try:
            await self.provisioner.delete_topology_for(session.user_id)
        except TopologyError as e:
            self.logger.error(
                "Failed to delete topology for finished session",
                session_id=session.session_id,
                user_id=session.user_id,
                error=str(e)
            )
