"""Application services — use case orchestration."""

from escrow_marketplace.services.dispute_service import DisputeService
from escrow_marketplace.services.escrow_service import EscrowService, FundingInstructions
from escrow_marketplace.services.notifications import LoggingNotifier, NotificationDispatcher
from escrow_marketplace.services.payment_service import PaystackGateway
from escrow_marketplace.services.pricing_service import FeeQuote, PricingService

__all__ = [
    "DisputeService",
    "EscrowService",
    "FeeQuote",
    "FundingInstructions",
    "LoggingNotifier",
    "NotificationDispatcher",
    "PaystackGateway",
    "PricingService",
]
