"""Outbound HTTP adapters for the Connection Service."""

from .broker_admin import BrokerAdminClient, BrokerAdminError
from .identity_client import IdentityClient

__all__ = ["BrokerAdminClient", "BrokerAdminError", "IdentityClient"]
