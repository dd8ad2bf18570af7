"""
Connection service for the Connection Gateway.
"""

from typing import Optional

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .adapters.broker_admin import BrokerAdminClient, BrokerAdminError
from .adapters.identity_client import IdentityClient
from .domain.credentials import CredentialIssuer
from .domain.orchestrator import ConnectionOrchestrator
from .domain.sessions import SessionService
from .messaging.publisher import AMQPPublisher, ConnectionNotifier
from .models import (
    ConnectRequest,
    ConnectResponse,
    DispatcherStatusRequest,
    SessionResponse,
    SessionStatusResponse,
    UpdateSessionStatusRequest,
)
from .persistence.postgres import SessionRepository
from .topology.provisioner import TopologyProvisioner

SERVICE_NAME = "connection"
DEFAULT_PORT = 8000
STATUS_UPDATED_MESSAGE = "Session status updated successfully"


class ConnectionService(BaseService):
    """Connection service implementation.

    Collaborators default to the real adapters built from config. Tests
    pass in-memory replacements through the keyword arguments.
    """

    def __init__(self, config: Optional[ServiceConfig] = None, *,
                 repository=None, identity=None, broker_admin=None, publisher=None):
        super().__init__(SERVICE_NAME, DEFAULT_PORT, config)

        # Passwords must be reproducible across replicas and restarts
        if not self.config.credentials_secret and self.config.env != "local":
            raise ValueError(
                "CONNECTION_CREDENTIALS_SECRET is required outside the local environment"
            )

        # Initialize components
        self.identity = identity or IdentityClient(
            self.config.users_service_url,
            timeout=self.config.identity_timeout_seconds
        )
        self.broker_admin = broker_admin or BrokerAdminClient(
            self.config.rabbitmq_management_url,
            self.config.rabbitmq_user,
            self.config.rabbitmq_password,
            timeout=self.config.broker_admin_timeout_seconds
        )
        self.repository = repository or SessionRepository(
            self.config.postgres_dsn,
            min_size=self.config.db_min_pool_size,
            max_size=self.config.db_max_pool_size,
            command_timeout=self.config.db_command_timeout
        )
        self.publisher = publisher or AMQPPublisher(
            self.config.amqp_url,
            max_attempts=self.config.publish_max_attempts,
            backoff_seconds=self.config.publish_backoff_seconds,
            confirm_timeout=self.config.publish_confirm_timeout,
            metrics=self.metrics
        )

        self.provisioner = TopologyProvisioner(
            self.broker_admin,
            vhost=self.config.rabbitmq_vhost,
            dispatcher_exchange=self.config.dispatcher_exchange,
            shovel_destination_uri=self.config.shovel_destination_uri,
            metrics=self.metrics
        )
        self.notifier = ConnectionNotifier(self.publisher, self.config.connection_exchange)
        self.credentials = CredentialIssuer(
            self.config.credentials_secret,
            host=self.config.rabbitmq_host,
            port=self.config.rabbitmq_port
        )
        if not self.config.credentials_secret:
            self.logger.warning(
                "No credentials secret configured, broker passwords will not survive a restart",
                env=self.config.env
            )

        self.orchestrator = ConnectionOrchestrator(
            self.identity,
            self.repository,
            self.provisioner,
            self.notifier,
            self.credentials,
            metrics=self.metrics
        )
        self.sessions = SessionService(
            self.repository,
            self.provisioner,
            self.identity,
            metrics=self.metrics
        )

        self._setup_connection_routes()

    async def startup(self):
        """Open the database pool and the broker connection."""
        await self.repository.start()
        await self.publisher.start()
        self.logger.info("Connection service started", pod_name=self.config.pod_name)

    async def shutdown(self):
        """Close the broker connection and the database pool."""
        await self.publisher.close()
        await self.repository.stop()
        self.logger.info("Connection service stopped")

    def _setup_connection_routes(self):
        """Set up connection-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": SERVICE_NAME,
                "message": "Connection Gateway - Connection Service",
                "version": "1.0.0",
                "capabilities": ["sessions", "broker_topology", "connection_notifications"]
            }

        @self.app.post("/users/connect", response_model=ConnectResponse)
        async def connect(request: ConnectRequest):
            """Validate a client and hand out broker credentials for its session."""
            return await self.orchestrator.handle_client_connection(request.user_id, request.token)

        @self.app.post("/sessions/start", response_model=ConnectResponse)
        async def start_session(request: ConnectRequest):
            """Alias of /users/connect."""
            return await self.orchestrator.handle_client_connection(request.user_id, request.token)

        @self.app.put("/sessions/status", response_model=SessionStatusResponse)
        async def update_session_status(request: UpdateSessionStatusRequest):
            """Legacy transition endpoint taking the target status in the body."""
            session = await self.sessions.update_session_status(request.session_id, request.status)
            return SessionStatusResponse(
                message=STATUS_UPDATED_MESSAGE,
                session_id=session.session_id,
                status=session.session_status
            )

        @self.app.put("/sessions/{session_id}/status/completed", response_model=SessionStatusResponse)
        async def complete_session(session_id: str):
            """Mark a session COMPLETED and revoke the user's access."""
            session = await self.sessions.set_session_status_to_completed(session_id)
            return SessionStatusResponse(
                message=STATUS_UPDATED_MESSAGE,
                session_id=session.session_id,
                status=session.session_status
            )

        @self.app.put("/sessions/{session_id}/status/timeout", response_model=SessionStatusResponse)
        async def timeout_session(session_id: str):
            """Mark a session TIMEOUT."""
            session = await self.sessions.set_session_status_to_timeout(session_id)
            return SessionStatusResponse(
                message=STATUS_UPDATED_MESSAGE,
                session_id=session.session_id,
                status=session.session_status
            )

        @self.app.put("/sessions/{session_id}/dispatcher-status", response_model=SessionResponse)
        async def update_dispatcher_status(session_id: str, request: DispatcherStatusRequest):
            """Record the dispatcher's acknowledgement state."""
            session = await self.sessions.update_dispatcher_status(session_id, request.dispatcher_status)
            return SessionResponse.from_session(session)

        @self.app.get("/sessions/{session_id}", response_model=SessionResponse)
        async def get_session(session_id: str):
            """Get a session by id."""
            session = await self.sessions.get_session(session_id)
            return SessionResponse.from_session(session)

    async def _check_dependencies(self):
        """Check connection service dependencies."""
        dependencies = {}

        dependencies["postgres"] = "ok" if await self.repository.health_check() else "error"

        try:
            await self.broker_admin.overview()
            dependencies["rabbitmq_management"] = "ok"
        except BrokerAdminError as e:
            self.logger.warning("Broker management API health check failed", error=str(e))
            dependencies["rabbitmq_management"] = "error"

        dependencies["rabbitmq_amqp"] = "ok" if self.publisher.is_connected() else "error"

        return dependencies


def create_app():
    """Create FastAPI application."""
    service = ConnectionService()
    return service.app


if __name__ == "__main__":
    service = ConnectionService()
    service.run()
