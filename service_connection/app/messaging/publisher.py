"""
AMQP publisher for the Connection Service.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import aio_pika
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractRobustConnection
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryError, linear_policy, retry_async

from ..models import ConnectionNotification, Session, UserProfile

# Failures that count as a failed attempt: nack (DeliveryError is an
# AMQPError), confirm timeout, and channel/connection loss
RETRYABLE_ERRORS = (AMQPError, ChannelInvalidStateError, asyncio.TimeoutError, ConnectionError)


class PublishError(Exception):
    """A message could not be published."""

    def __init__(self, message: str, exchange: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.exchange = exchange
        self.cause = cause


class AMQPPublisher:
    """Publishes to fanout exchanges over one confirm-mode channel.

    The channel's confirm sequencing requires one in-flight publish at a
    time, so each attempt holds ``_lock`` until the broker acknowledges.
    """

    def __init__(self, amqp_url: str, max_attempts: int = 5, backoff_seconds: float = 1.0,
                 confirm_timeout: float = 10.0, metrics: Optional[MetricsCollector] = None):
        self.amqp_url = amqp_url
        self.retry_policy = linear_policy(max_attempts, backoff_seconds)
        self.confirm_timeout = confirm_timeout
        self.metrics = metrics
        self.logger = get_logger("connection.messaging.publisher")
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._exchanges: Dict[str, AbstractExchange] = {}
        self._lock = asyncio.Lock()

    async def start(self):
        """Connect to the broker and open a confirm-mode channel."""
        try:
            self._connection = await aio_pika.connect_robust(self.amqp_url)
            self._channel = await self._connection.channel(publisher_confirms=True)
            self.logger.info("AMQP publisher started")
        except Exception as e:
            self.logger.error("Failed to start AMQP publisher", error=str(e))
            raise

    async def close(self):
        """Close the channel and the connection."""
        self._exchanges.clear()
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        if self._connection is not None and not self._connection.is_closed:
            await self._connection.close()
        self._channel = None
        self._connection = None
        self.logger.info("AMQP publisher stopped")

    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def publish(self, exchange: str, body: bytes) -> None:
        """Publish ``body`` to ``exchange`` and wait for the broker's confirm.

        Retries with linear backoff; raises ``PublishError`` once the attempts
        are exhausted.
        """
        if self._channel is None:
            raise PublishError(f"publisher is not started, cannot publish to exchange '{exchange}'",
                               exchange)

        async def attempt():
            async with self._lock:
                try:
                    await self._publish_once(exchange, body)
                except RETRYABLE_ERRORS:
                    self._exchanges.pop(exchange, None)
                    self._record(exchange, "failure")
                    raise
            self._record(exchange, "success")

        try:
            await retry_async(
                attempt,
                self.retry_policy,
                exceptions=RETRYABLE_ERRORS,
                operation="publish"
            )
        except RetryError as e:
            self.logger.error(
                "Giving up publishing",
                exchange=exchange,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise PublishError(
                f"failed to publish to exchange '{exchange}' after {e.attempts} attempts",
                exchange,
                e.last_exception,
            )

        self.logger.debug("Message published", exchange=exchange, size=len(body))

    async def publish_json(self, exchange: str, payload: Dict[str, Any]) -> None:
        """Serialize ``payload`` as JSON and publish it."""
        await self.publish(exchange, json.dumps(payload).encode("utf-8"))

    async def _publish_once(self, exchange: str, body: bytes) -> None:
        target = self._exchanges.get(exchange)
        if target is None:
            target = await self._channel.declare_exchange(
                exchange,
                aio_pika.ExchangeType.FANOUT,
                durable=True
            )
            self._exchanges[exchange] = target

        message = aio_pika.Message(
            body=body,
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT
        )
        # With publisher confirms a nack raises DeliveryError
        await target.publish(message, routing_key="", timeout=self.confirm_timeout)

    def _record(self, exchange: str, result: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("publish_attempts_total", exchange=exchange, result=result)


class ConnectionNotifier:
    """Announces new sessions on the connection exchange."""

    def __init__(self, publisher: AMQPPublisher, exchange: str = "new_connections_exchange"):
        self.publisher = publisher
        self.exchange = exchange
        self.logger = get_logger("connection.messaging.notifier")

    async def notify_new_connection(self, user: UserProfile, session: Session) -> ConnectionNotification:
        notification = ConnectionNotification(
            user_id=session.user_id,
            session_id=session.session_id,
            email=user.email,
            inputs_format=user.inputs_format,
            outputs_format=user.outputs_format,
            model_type=user.model_type,
        )
        await self.publisher.publish_json(self.exchange, notification.model_dump())
        self.logger.info(
            "Published connection notification",
            exchange=self.exchange,
            user_id=session.user_id,
            session_id=session.session_id
        )
        return notification
