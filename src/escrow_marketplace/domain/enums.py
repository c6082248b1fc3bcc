"""Domain enumerations for the Escrow Marketplace.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow.

    State transitions are enforced by the EscrowStateMachine guard.
    See domain/state_machine.py for the transition table.
    """

    PENDING = "pending"
    ACCEPTED = "accepted"
    FUNDED = "funded"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    PAID_OUT = "paid_out"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class EscrowEvent(enum.StrEnum):
    """Events that drive the escrow state machine.

    Each event has exactly one target status (see EVENT_TARGETS in
    domain/state_machine.py).
    """

    SELLER_ACCEPTS = "seller_accepts"
    BUYER_FUNDS = "buyer_funds"
    SELLER_DELIVERS = "seller_delivers"
    BUYER_CONFIRMS = "buyer_confirms"
    AUTO_RELEASE = "auto_release"
    PAYOUT_EXECUTED = "payout_executed"
    CANCEL = "cancel"
    RAISE_DISPUTE = "raise_dispute"
    RESOLVE_RELEASE = "resolve_release"
    RESOLVE_REFUND = "resolve_refund"


class TierId(enum.StrEnum):
    """Subscription tiers, ordered from lowest to highest rank."""

    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    ENTERPRISE = "enterprise"
    API = "api"


class CurrencyBucket(enum.StrEnum):
    FIAT = "fiat"
    CRYPTO = "crypto"


class Currency(enum.StrEnum):
    """Supported escrow currencies."""

    # Fiat
    USD = "USD"
    EUR = "EUR"
    GBP = "GBP"
    NGN = "NGN"
    KES = "KES"
    GHS = "GHS"
    ZAR = "ZAR"
    INR = "INR"
    CNY = "CNY"
    JPY = "JPY"
    CAD = "CAD"
    AUD = "AUD"

    # Crypto
    BTC = "BTC"
    ETH = "ETH"
    USDT = "USDT"
    USDC = "USDC"
    BNB = "BNB"
    MATIC = "MATIC"

    @property
    def bucket(self) -> CurrencyBucket:
        if self in _CRYPTO_CURRENCIES:
            return CurrencyBucket.CRYPTO
        return CurrencyBucket.FIAT


_CRYPTO_CURRENCIES = frozenset(
    {Currency.BTC, Currency.ETH, Currency.USDT, Currency.USDC, Currency.BNB, Currency.MATIC}
)


class KycStatus(enum.StrEnum):
    """KYC state as reported by the KYC provider. Only `approved` unlocks escrow."""

    UNVERIFIED = "unverified"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RESUBMISSION_REQUIRED = "resubmission_required"


class AccountStatus(enum.StrEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class RequiredAction(enum.StrEnum):
    """Remedial action a denied caller should be routed to."""

    VERIFY_EMAIL = "verify_email"
    COMPLETE_KYC = "complete_kyc"
    CONTACT_SUPPORT = "contact_support"
    UPGRADE_TIER = "upgrade_tier"
    ADD_PAYOUT_METHOD = "add_payout_method"


class ParticipantRole(enum.StrEnum):
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"
    ADMIN = "admin"


class DeliveryMethod(enum.StrEnum):
    PHYSICAL = "physical"
    DIGITAL = "digital"
    SERVICE = "service"
    IN_PERSON = "in_person"
    CRYPTO = "crypto"


class ProofType(enum.StrEnum):
    """Kinds of delivery evidence a seller can submit."""

    TRACKING_NUMBER = "tracking_number"
    COURIER_RECEIPT = "courier_receipt"
    PHOTO = "photo"
    DOWNLOAD_LINK = "download_link"
    FILE = "file"
    SCREENSHOT = "screenshot"
    COMPLETION_REPORT = "completion_report"
    SIGNED_ACCEPTANCE = "signed_acceptance"
    TRANSACTION_HASH = "transaction_hash"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"
    DISMISSED = "dismissed"


class DisputeType(enum.StrEnum):
    NON_DELIVERY = "non_delivery"
    ITEM_NOT_AS_DESCRIBED = "item_not_as_described"
    UNAUTHORIZED_TRANSACTION = "unauthorized_transaction"
    SELLER_NOT_RESPONDING = "seller_not_responding"
    BUYER_NOT_RESPONDING = "buyer_not_responding"
    OTHER = "other"


class DisputeResolution(enum.StrEnum):
    REFUND_BUYER = "refund_buyer"
    RELEASE_TO_SELLER = "release_to_seller"
    PARTIAL_REFUND = "partial_refund"
    SPLIT = "split"
    OTHER = "other"


class DisputeWinner(enum.StrEnum):
    """Who the admin ruled for. `reportedBy` is the party that raised the dispute."""

    REPORTED_BY = "reportedBy"
    REPORTED_USER = "reportedUser"
    SPLIT = "split"
    REFUND = "refund"


class AdminRole(enum.StrEnum):
    MASTER = "master"
    SUB_ADMIN = "sub_admin"


class AdminPermission(enum.StrEnum):
    VIEW_TRANSACTIONS = "view_transactions"
    MANAGE_DISPUTES = "manage_disputes"
    VERIFY_USERS = "verify_users"
    MANAGE_PAYMENTS = "manage_payments"
    MANAGE_FEES = "manage_fees"


class PaymentMethod(enum.StrEnum):
    """Gateways used for collecting escrow funds."""

    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"
    CRYPTO = "crypto"
