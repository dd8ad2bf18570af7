"""
Client connection orchestration.

A connect validates the caller against the identity service, then either
reuses the user's IN_PROGRESS session or opens a new one. Opening a session
spans three systems (the session table, the broker's topology and the
connection exchange); when a later step fails the earlier ones are undone.
"""

import time
from typing import Optional

from shared.errors import AuthorizationError, BadGatewayError, ConflictError, InternalError, ValidationError
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector

from ..adapters.identity_client import IdentityClient
from ..messaging.publisher import ConnectionNotifier, PublishError
from ..models import ConnectResponse, Session, UserProfile
from ..persistence.postgres import ActiveSessionExistsError, SessionRepository
from ..topology.provisioner import TopologyError, TopologyProvisioner
from .credentials import CredentialIssuer

CONNECTED_MESSAGE = "Client connected successfully"
RECONNECTED_MESSAGE = "Client reconnected to existing session"


class ConnectionOrchestrator:
    """Drives the connect state machine for one request at a time."""

    def __init__(self, identity: IdentityClient, repository: SessionRepository,
                 provisioner: TopologyProvisioner, notifier: ConnectionNotifier,
                 credentials: CredentialIssuer, metrics: Optional[MetricsCollector] = None):
        self.identity = identity
        self.repository = repository
        self.provisioner = provisioner
        self.notifier = notifier
        self.credentials = credentials
        self.metrics = metrics
        self.logger = get_logger("connection.orchestrator")

    async def handle_client_connection(self, user_id: str, token: str) -> ConnectResponse:
        """Validate the caller and return broker credentials for its session."""
        user_id = (user_id or "").strip()
        token = (token or "").strip()
        if not user_id or not token:
            raise ValidationError("user_id and token are required")

        start_time = time.time()
        outcome = "failed"
        set_user_context(user_id=user_id)

        try:
            validation = await self.identity.validate_token(token, user_id)
            user = await self.identity.get_user(user_id)
            if not user.is_authorized:
                self.logger.warning("User is not authorized to connect", user_id=user_id)
                raise AuthorizationError(f"user {user_id} is not authorized to connect")

            session = await self.repository.get_active_session(user_id)
            if session is not None:
                outcome = "reconnect"
                return self._reconnect(user, session)

            if not validation.token_id:
                raise BadGatewayError("users-service returned a token validation without token_id")

            try:
                session = await self._open_session(user, validation.token_id)
            except ActiveSessionExistsError:
                # A concurrent connect for this user won the insert
                session = await self.repository.get_active_session(user_id)
                if session is None:
                    raise ConflictError(f"concurrent connect for user {user_id}, retry the request")
                outcome = "reconnect"
                return self._reconnect(user, session)

            outcome = "new"
            return self._response(CONNECTED_MESSAGE, user, session)

        finally:
            self._record(outcome, time.time() - start_time)

    async def _open_session(self, user: UserProfile, token_id: str) -> Session:
        session = await self.repository.create_session(user.id, token_id)
        set_user_context(session_id=session.session_id)

        topology_attempted = False
        try:
            topology_attempted = True
            await self.provisioner.set_up_topology_for(
                user.id, self.credentials.password_for(session.session_id))
            await self.notifier.notify_new_connection(user, session)
        except Exception as e:
            self.logger.error(
                "Connect failed after session creation, rolling back",
                user_id=user.id,
                session_id=session.session_id,
                error=str(e)
            )
            await self._compensate(session, topology_attempted)
            if isinstance(e, (TopologyError, PublishError)):
                raise InternalError(str(e))
            raise

        self.logger.info("Opened new session", user_id=user.id, session_id=session.session_id)
        return session

    async def _compensate(self, session: Session, topology_attempted: bool) -> None:
        """Undo a half-opened session. Failures here are logged only."""
        if topology_attempted:
            try:
                await self.provisioner.delete_topology_for(session.user_id)
            except Exception as e:
                self.logger.error(
                    "Rollback failed to delete topology",
                    user_id=session.user_id,
                    error=str(e)
                )

        try:
            await self.repository.delete_session(session.session_id)
        except Exception as e:
            self.logger.error(
                "Rollback failed to delete session",
                session_id=session.session_id,
                error=str(e)
            )

    def _reconnect(self, user: UserProfile, session: Session) -> ConnectResponse:
        set_user_context(session_id=session.session_id)
        self.logger.info("Reusing active session", user_id=user.id, session_id=session.session_id)
        return self._response(RECONNECTED_MESSAGE, user, session)

    def _response(self, message: str, user: UserProfile, session: Session) -> ConnectResponse:
        return ConnectResponse(
            status="success",
            message=message,
            session_id=session.session_id,
            credentials=self.credentials.credentials_for(session.user_id, session.session_id),
            inputs_format=user.inputs_format,
            outputs_format=user.outputs_format,
            model_type=user.model_type,
        )

    def _record(self, outcome: str, duration: float) -> None:
        if self.metrics is None:
            return
        self.metrics.increment_counter("connections_total", outcome=outcome)
        self.metrics.observe_histogram("connect_duration_seconds", duration, outcome=outcome)
