"""
RabbitMQ management API client for the Connection Service.
"""

from typing import Any, Dict, FrozenSet, Optional
from urllib.parse import quote

import httpx

from shared.logging import get_logger

# Success sets: "already exists" and "already gone" are not failures
CREATED_OR_UPDATED = frozenset({201, 204})
DELETED_OR_ABSENT = frozenset({204, 404})
BINDING_CREATED = frozenset({201})


class BrokerAdminError(Exception):
    """A management API call failed."""

    def __init__(self, operation: str, status_code: Optional[int], detail: str):
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        if status_code is None:
            message = f"{operation} failed: {detail}"
        else:
            message = f"{operation} failed with status {status_code}: {detail}"
        super().__init__(message)


def _segment(value: str) -> str:
    """Percent-encode a path segment, including '/' (the default vhost)."""
    return quote(value, safe="")


class BrokerAdminClient:
    """Basic-auth client for the broker's HTTP management API."""

    def __init__(self, management_url: str, username: str, password: str,
                 timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.management_url = management_url.rstrip("/")
        self.auth = httpx.BasicAuth(username, password)
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("connection.broker_admin")

    async def create_user(self, username: str, password: str, tags: str = "") -> int:
        """Create or update a broker account."""
        return await self._call(
            "create_user", "PUT", f"/api/users/{_segment(username)}",
            CREATED_OR_UPDATED,
            json={"password": password, "tags": tags},
        )

    async def delete_user(self, username: str) -> int:
        """Delete a broker account."""
        return await self._call(
            "delete_user", "DELETE", f"/api/users/{_segment(username)}",
            DELETED_OR_ABSENT,
        )

    async def declare_queue(self, vhost: str, name: str, durable: bool = True,
                            auto_delete: bool = False,
                            arguments: Optional[Dict[str, Any]] = None) -> int:
        """Declare a queue. Management-declared queues are never exclusive."""
        return await self._call(
            "declare_queue", "PUT", f"/api/queues/{_segment(vhost)}/{_segment(name)}",
            CREATED_OR_UPDATED,
            json={"durable": durable, "auto_delete": auto_delete, "arguments": arguments or {}},
        )

    async def delete_queue(self, vhost: str, name: str) -> int:
        """Delete a queue."""
        return await self._call(
            "delete_queue", "DELETE", f"/api/queues/{_segment(vhost)}/{_segment(name)}",
            DELETED_OR_ABSENT,
        )

    async def declare_exchange(self, vhost: str, name: str, exchange_type: str = "direct",
                               durable: bool = True) -> int:
        """Declare an exchange."""
        return await self._call(
            "declare_exchange", "PUT", f"/api/exchanges/{_segment(vhost)}/{_segment(name)}",
            CREATED_OR_UPDATED,
            json={"type": exchange_type, "durable": durable, "auto_delete": False,
                  "internal": False, "arguments": {}},
        )

    async def delete_exchange(self, vhost: str, name: str) -> int:
        """Delete an exchange."""
        return await self._call(
            "delete_exchange", "DELETE", f"/api/exchanges/{_segment(vhost)}/{_segment(name)}",
            DELETED_OR_ABSENT,
        )

    async def bind_queue(self, vhost: str, exchange: str, queue: str, routing_key: str) -> int:
        """Bind a queue to an exchange. Re-binding an identical binding is a no-op."""
        return await self._call(
            "bind_queue", "POST",
            f"/api/bindings/{_segment(vhost)}/e/{_segment(exchange)}/q/{_segment(queue)}",
            BINDING_CREATED,
            json={"routing_key": routing_key, "arguments": {}},
        )

    async def set_permissions(self, vhost: str, username: str, configure: str,
                              write: str, read: str) -> int:
        """Grant configure/write/read regex permissions on a vhost."""
        return await self._call(
            "set_permissions", "PUT", f"/api/permissions/{_segment(vhost)}/{_segment(username)}",
            CREATED_OR_UPDATED,
            json={"configure": configure, "write": write, "read": read},
        )

    async def create_shovel(self, vhost: str, name: str, src_queue: str,
                            dest_uri: str, dest_queue: str, src_uri: str = "amqp://") -> int:
        """Create a dynamic shovel relaying ``src_queue`` to a remote broker."""
        return await self._call(
            "create_shovel", "PUT", f"/api/parameters/shovel/{_segment(vhost)}/{_segment(name)}",
            CREATED_OR_UPDATED,
            json={
                "value": {
                    "src-protocol": "amqp091",
                    "src-uri": src_uri,
                    "src-queue": src_queue,
                    "dest-protocol": "amqp091",
                    "dest-uri": dest_uri,
                    "dest-queue": dest_queue,
                    "ack-mode": "on-confirm",
                    "src-delete-after": "never",
                }
            },
        )

    async def delete_shovel(self, vhost: str, name: str) -> int:
        """Delete a dynamic shovel."""
        return await self._call(
            "delete_shovel", "DELETE", f"/api/parameters/shovel/{_segment(vhost)}/{_segment(name)}",
            DELETED_OR_ABSENT,
        )

    async def overview(self) -> Dict[str, Any]:
        """Fetch the broker overview; used as a health probe."""
        async with self._client() as client:
            try:
                response = await client.get("/api/overview")
            except httpx.HTTPError as e:
                raise BrokerAdminError("overview", None, str(e))
        if response.status_code != 200:
            raise BrokerAdminError("overview", response.status_code, response.text)
        return response.json()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.management_url,
            auth=self.auth,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _call(self, operation: str, method: str, path: str,
                    success: FrozenSet[int], **kwargs: Any) -> int:
        """Issue a management call and check it against its success set."""
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.error("Broker management API unreachable", operation=operation, error=str(e))
            raise BrokerAdminError(operation, None, str(e))

        if response.status_code not in success:
            self.logger.error(
                "Broker management call failed",
                operation=operation,
                path=path,
                status_code=response.status_code,
                body=response.text
            )
            raise BrokerAdminError(operation, response.status_code, response.text)

        self.logger.debug(
            "Broker management call succeeded",
            operation=operation,
            path=path,
            status_code=response.status_code
        )
        return response.status_code
