"""
Unit tests for the connection orchestrator.
"""

from unittest.mock import AsyncMock

import pytest

from service_connection.app.adapters.broker_admin import BrokerAdminClient
from service_connection.app.adapters.identity_client import IdentityClient
from service_connection.app.domain.credentials import CredentialIssuer
from service_connection.app.domain.orchestrator import (
    CONNECTED_MESSAGE,
    RECONNECTED_MESSAGE,
    ConnectionOrchestrator,
)
from service_connection.app.messaging.publisher import ConnectionNotifier
from service_connection.app.models import SessionStatus
from service_connection.app.persistence.postgres import ActiveSessionExistsError
from service_connection.app.topology.provisioner import TopologyProvisioner
from shared.errors import (
    AuthenticationError,
    AuthorizationError,
    BadGatewayError,
    ConflictError,
    InternalError,
    RemoteServiceError,
    ValidationError,
)
from shared.metrics import MetricsCollector
from shared.test_helpers import (
    FakeManagementAPI,
    FakePublisher,
    FakeSessionRepository,
    FakeUsersService,
    TestDataFactory,
)


class TestConnectionOrchestrator:
    """Test cases for ConnectionOrchestrator."""

    @pytest.fixture
    def users_service(self):
        service = FakeUsersService()
        for user in TestDataFactory.create_test_users():
            service.add_user(user)
        return service

    @pytest.fixture
    def broker(self):
        return FakeManagementAPI()

    @pytest.fixture
    def repository(self):
        return FakeSessionRepository()

    @pytest.fixture
    def publisher(self):
        return FakePublisher()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("connection")

    @pytest.fixture
    def credentials(self):
        return CredentialIssuer("test-secret", host="rabbitmq.test", port=5672)

    @pytest.fixture
    def provisioner(self, broker, metrics):
        admin = BrokerAdminClient("http://rabbitmq.test:15672", "admin", "secret",
                                  transport=broker.transport())
        return TopologyProvisioner(admin, metrics=metrics)

    @pytest.fixture
    def orchestrator(self, users_service, repository, provisioner, publisher, credentials, metrics):
        identity = IdentityClient("http://users-service.test", transport=users_service.transport())
        notifier = ConnectionNotifier(publisher, "new_connections_exchange")
        return ConnectionOrchestrator(identity, repository, provisioner, notifier, credentials,
                                      metrics=metrics)

    @pytest.mark.asyncio
    async def test_new_user_gets_session(self, orchestrator, users_service, repository,
                                         broker, publisher, credentials, metrics):
        """A first connect opens one IN_PROGRESS/PENDING session and provisions topology."""
        token = users_service.issue_token("user-1")

        response = await orchestrator.handle_client_connection("user-1", token.token)

        assert response.status == "success"
        assert response.message == CONNECTED_MESSAGE
        assert len(repository.sessions) == 1
        session = repository.sessions[response.session_id]
        assert session.session_status is SessionStatus.IN_PROGRESS
        assert session.dispatcher_status == "PENDING"
        assert session.token_id == token.token_id

        assert response.credentials.username == "user-1"
        assert response.credentials.password == credentials.password_for(session.session_id)
        assert response.credentials.host == "rabbitmq.test"
        assert response.credentials.port == 5672
        assert response.inputs_format == "csv"
        assert response.outputs_format == "json"
        assert response.model_type == "regression"

        assert broker.users["user-1"]["password"] == response.credentials.password
        assert ("/", "user-1_dispatcher_queue") in broker.queues

        assert publisher.published == [("new_connections_exchange", {
            "user_id": "user-1",
            "session_id": session.session_id,
            "email": "john.doe@example.com",
            "inputs_format": "csv",
            "outputs_format": "json",
            "model_type": "regression",
        })]
        assert metrics.get_sample_value("connections_total", {"outcome": "new"}) == 1.0

    @pytest.mark.asyncio
    async def test_reconnect_reuses_session(self, orchestrator, users_service, repository,
                                            broker, publisher, metrics):
        """A second connect creates nothing, provisions nothing and publishes nothing."""
        token = users_service.issue_token("user-1")
        first = await orchestrator.handle_client_connection("user-1", token.token)
        broker.calls.clear()

        second = await orchestrator.handle_client_connection("user-1", token.token)

        assert second.message == RECONNECTED_MESSAGE
        assert second.session_id == first.session_id
        assert second.credentials == first.credentials
        assert len(repository.sessions) == 1
        assert broker.calls == []
        assert len(publisher.published) == 1
        assert metrics.get_sample_value("connections_total", {"outcome": "reconnect"}) == 1.0

    @pytest.mark.asyncio
    async def test_new_session_after_completion(self, orchestrator, users_service, repository):
        token = users_service.issue_token("user-1")
        first = await orchestrator.handle_client_connection("user-1", token.token)
        repository.sessions[first.session_id].session_status = SessionStatus.COMPLETED

        second = await orchestrator.handle_client_connection("user-1", token.token)

        assert second.session_id != first.session_id
        assert second.credentials.password != first.credentials.password
        assert len(repository.sessions) == 2

    @pytest.mark.asyncio
    async def test_blank_input_is_validation_error(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.handle_client_connection("  ", "token")

    @pytest.mark.asyncio
    async def test_invalid_token(self, orchestrator, repository, metrics):
        with pytest.raises(AuthenticationError):
            await orchestrator.handle_client_connection("user-1", "bogus")

        assert repository.sessions == {}
        assert metrics.get_sample_value("connections_total", {"outcome": "failed"}) == 1.0

    @pytest.mark.asyncio
    async def test_unauthorized_user(self, orchestrator, users_service, repository):
        token = users_service.issue_token("user-blocked")

        with pytest.raises(AuthorizationError) as exc_info:
            await orchestrator.handle_client_connection("user-blocked", token.token)

        assert exc_info.value.status_code == 403
        assert repository.sessions == {}

    @pytest.mark.asyncio
    async def test_unknown_user_propagates_remote_404(self, orchestrator, users_service):
        token = users_service.issue_token("ghost")

        with pytest.raises(RemoteServiceError) as exc_info:
            await orchestrator.handle_client_connection("ghost", token.token)

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_identity_outage_is_bad_gateway(self, orchestrator, users_service):
        users_service.fail("POST", "/tokens/validate", 500)

        with pytest.raises(BadGatewayError):
            await orchestrator.handle_client_connection("user-1", "anything")

    @pytest.mark.asyncio
    async def test_publish_failure_rolls_back(self, orchestrator, users_service, repository,
                                              broker, publisher):
        """Topology and session row are removed and the publish error surfaces."""
        token = users_service.issue_token("user-1")
        publisher.fail = True

        with pytest.raises(InternalError) as exc_info:
            await orchestrator.handle_client_connection("user-1", token.token)

        assert "new_connections_exchange" in exc_info.value.detail
        assert repository.sessions == {}
        assert len(repository.deleted) == 1
        assert broker.users == {}
        assert broker.queues == {}

    @pytest.mark.asyncio
    async def test_topology_failure_rolls_back(self, orchestrator, users_service, repository,
                                               broker, publisher):
        token = users_service.issue_token("user-1")
        broker.fail("PUT", "permissions", 500)

        with pytest.raises(InternalError) as exc_info:
            await orchestrator.handle_client_connection("user-1", token.token)

        assert "set permissions" in exc_info.value.detail
        assert repository.sessions == {}
        assert broker.users == {}
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_rollback_failures_do_not_mask_original_error(self, orchestrator, users_service,
                                                                repository, broker, publisher):
        token = users_service.issue_token("user-1")
        publisher.fail = True
        broker.fail("DELETE", "users", 500)
        repository.delete_session = AsyncMock(side_effect=OSError("db gone"))

        with pytest.raises(InternalError) as exc_info:
            await orchestrator.handle_client_connection("user-1", token.token)

        assert "failed to publish" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_lost_race_serves_reconnect(self, orchestrator, users_service, repository,
                                              publisher):
        """When a concurrent connect wins the insert, the loser reuses its session."""
        token = users_service.issue_token("user-1")
        winner = await repository.create_session("user-1", token.token_id)
        repository.get_active_session = AsyncMock(side_effect=[None, winner])

        response = await orchestrator.handle_client_connection("user-1", token.token)

        assert response.message == RECONNECTED_MESSAGE
        assert response.session_id == winner.session_id
        assert publisher.published == []

    @pytest.mark.asyncio
    async def test_lost_race_without_winner_is_conflict(self, orchestrator, users_service, repository):
        token = users_service.issue_token("user-1")
        repository.create_error = ActiveSessionExistsError("user-1")

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.handle_client_connection("user-1", token.token)

        assert exc_info.value.status_code == 409
