"""Clients for external services."""

from task_market_service.clients.identity_client import IdentityClient
from task_market_service.clients.payment_client import PaymentClient

__all__ = ["IdentityClient", "PaymentClient"]
