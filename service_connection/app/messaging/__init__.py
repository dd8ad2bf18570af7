"""Broker messaging for the Connection Service."""

from .publisher import AMQPPublisher, ConnectionNotifier, PublishError

__all__ = ["AMQPPublisher", "ConnectionNotifier", "PublishError"]
