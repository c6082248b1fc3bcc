"""Tier catalog, exchange rates and currency helpers.

The catalog is static and immutable at runtime. Tier pricing is defined in
USD and converted into a user's local currency with a static exchange-rate
table; rates are configuration, not computed.

Fee percentages are expressed as percent values (Decimal("3.5") == 3.5 %)
per currency bucket. Fiat currencies share a rate; crypto has its own,
lower rate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import TYPE_CHECKING

from escrow_marketplace.domain.enums import Currency, CurrencyBucket, TierId
from escrow_marketplace.domain.exceptions import (
    UnknownTierError,
    UnsupportedCurrencyError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

UNBOUNDED = -1
CENT = Decimal("0.01")


def round2(value: Decimal) -> Decimal:
    """Round a monetary value to 2 decimal places, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: str | float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def parse_currency(currency: str | Currency) -> Currency:
    """Normalize a currency code, raising UnsupportedCurrencyError if unknown."""
    try:
        return Currency(str(currency).upper())
    except ValueError as err:
        raise UnsupportedCurrencyError(str(currency)) from err


# Decimal places of the smallest unit an escrow may be denominated in.
# Fiat settles in cents; anything not listed uses 2.
CURRENCY_SCALE: Mapping[Currency, int] = MappingProxyType(
    {
        Currency.BTC: 8,
        Currency.ETH: 8,
        Currency.BNB: 8,
        Currency.MATIC: 8,
        Currency.USDT: 6,
        Currency.USDC: 6,
    }
)


def currency_scale(currency: str | Currency) -> int:
    return CURRENCY_SCALE.get(parse_currency(currency), 2)


def minor_unit(currency: str | Currency) -> Decimal:
    """Smallest representable amount, e.g. Decimal("0.01") for USD."""
    return Decimal(1).scaleb(-currency_scale(currency))


def round_money(value: Decimal, currency: str | Currency) -> Decimal:
    """Round half-up to the currency's scale (2 dp for fiat, same as round2)."""
    return value.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Exchange rates (base: USD)
# ---------------------------------------------------------------------------

EXCHANGE_RATES: Mapping[Currency, Decimal] = MappingProxyType(
    {
        Currency.USD: Decimal("1"),
        Currency.NGN: Decimal("1550"),
        Currency.EUR: Decimal("0.92"),
        Currency.GBP: Decimal("0.79"),
        Currency.CAD: Decimal("1.35"),
        Currency.AUD: Decimal("1.52"),
        Currency.KES: Decimal("129"),
        Currency.GHS: Decimal("12"),
        Currency.ZAR: Decimal("18.5"),
        Currency.INR: Decimal("83"),
        Currency.CNY: Decimal("7.2"),
        Currency.JPY: Decimal("148"),
    }
)

CURRENCY_SYMBOLS: Mapping[Currency, str] = MappingProxyType(
    {
        Currency.USD: "$",
        Currency.NGN: "₦",
        Currency.EUR: "€",
        Currency.GBP: "£",
        Currency.CAD: "C$",
        Currency.AUD: "A$",
        Currency.KES: "KSh",
        Currency.GHS: "GH₵",
        Currency.ZAR: "R",
        Currency.INR: "₹",
        Currency.CNY: "¥",
        Currency.JPY: "¥",
    }
)


def convert_currency(amount_usd: Decimal | int | str, currency: str | Currency) -> Decimal:
    """Convert a USD amount into `currency` and round to 2 dp.

    Currencies without a configured rate (crypto) convert at 1.
    """
    target = parse_currency(currency)
    rate = EXCHANGE_RATES.get(target, Decimal("1"))
    return round2(to_decimal(amount_usd) * rate)


def format_currency(amount: Decimal, currency: str | Currency) -> str:
    """Render an amount with its currency symbol, e.g. ``$1,035``, ``₦12,500.5``
    or ``BTC 0.00412``."""
    code = parse_currency(currency)
    symbol = CURRENCY_SYMBOLS.get(code, f"{code.value} ")
    rounded = round_money(to_decimal(amount), code)
    formatted = f"{rounded:,.{currency_scale(code)}f}".rstrip("0").rstrip(".")
    return f"{symbol}{formatted}"


# ---------------------------------------------------------------------------
# Tier definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FeeRates:
    """Buyer and seller fee percentages for one currency bucket."""

    buyer: Decimal
    seller: Decimal

    @property
    def combined(self) -> Decimal:
        return self.buyer + self.seller


@dataclass(frozen=True)
class Tier:
    """A subscription plan bucket determining fee rate and transaction limits.

    Attributes:
        id: Tier identifier.
        name: Display name.
        rank: Position in the upgrade ladder (free=0 ... api=4).
        monthly_cost_usd: Subscription cost per month in USD.
        setup_fee_usd: One-time setup fee in USD.
        max_transactions_per_month: Monthly escrow creation cap, -1 for unbounded.
        max_transaction_amount: Per-currency ceilings. A missing entry falls
            back to the USD ceiling converted at the exchange rate.
        max_transaction_amount_usd: USD ceiling, -1 for unbounded.
        fees: Fee rates per currency bucket.
        features: Marketing feature list (display only).
    """

    id: TierId
    name: str
    rank: int
    monthly_cost_usd: Decimal
    setup_fee_usd: Decimal
    max_transactions_per_month: int
    max_transaction_amount_usd: Decimal
    max_transaction_amount: Mapping[Currency, Decimal]
    fees: Mapping[CurrencyBucket, FeeRates]
    features: tuple[str, ...] = field(default=())

    @property
    def has_unbounded_transactions(self) -> bool:
        return self.max_transactions_per_month == UNBOUNDED

    def fee_rates(self, currency: str | Currency) -> FeeRates:
        """Return the fee rates for `currency`, falling back to the fiat bucket."""
        code = parse_currency(currency)
        return self.fees.get(code.bucket, self.fees[CurrencyBucket.FIAT])

    def amount_ceiling(self, currency: str | Currency) -> Decimal | None:
        """Return the max transaction amount in `currency`, or None if unbounded.

        Explicit per-currency entries win. Otherwise the USD ceiling is
        converted when an exchange rate exists; currencies with no rate
        (crypto) carry no ceiling.
        """
        code = parse_currency(currency)
        if self.max_transaction_amount_usd == UNBOUNDED:
            return None
        explicit = self.max_transaction_amount.get(code)
        if explicit is not None:
            return None if explicit == UNBOUNDED else explicit
        if code in EXCHANGE_RATES:
            return convert_currency(self.max_transaction_amount_usd, code)
        return None


def _fees(fiat: str, crypto: str) -> Mapping[CurrencyBucket, FeeRates]:
    return MappingProxyType(
        {
            CurrencyBucket.FIAT: FeeRates(buyer=Decimal(fiat), seller=Decimal(fiat)),
            CurrencyBucket.CRYPTO: FeeRates(buyer=Decimal(crypto), seller=Decimal(crypto)),
        }
    )


def _ceilings(**amounts: int) -> Mapping[Currency, Decimal]:
    return MappingProxyType({Currency(code): Decimal(value) for code, value in amounts.items()})


TIER_CATALOG: Mapping[TierId, Tier] = MappingProxyType(
    {
        TierId.FREE: Tier(
            id=TierId.FREE,
            name="Free",
            rank=0,
            monthly_cost_usd=Decimal("0"),
            setup_fee_usd=Decimal("0"),
            max_transactions_per_month=3,
            max_transaction_amount_usd=Decimal("500"),
            max_transaction_amount=_ceilings(
                USD=500, EUR=450, GBP=400, NGN=750_000,
                KES=65_000, GHS=6_000, ZAR=9_000, INR=42_000,
            ),
            fees=_fees("5.0", "2.5"),
            features=(
                "3 transactions per month",
                "Max $500 per transaction",
                "Basic support",
                "Buyer & seller protection",
            ),
        ),
        TierId.STARTER: Tier(
            id=TierId.STARTER,
            name="Starter",
            rank=1,
            monthly_cost_usd=Decimal("0"),
            setup_fee_usd=Decimal("0"),
            max_transactions_per_month=10,
            max_transaction_amount_usd=Decimal("2000"),
            max_transaction_amount=_ceilings(
                USD=2_000, EUR=1_800, GBP=1_600, NGN=3_000_000,
                KES=260_000, GHS=24_000, ZAR=36_000, INR=168_000,
            ),
            fees=_fees("3.5", "1.75"),
            features=(
                "10 transactions per month",
                "Max $2,000 per transaction",
                "Email support",
                "Lower fees than Free",
            ),
        ),
        TierId.GROWTH: Tier(
            id=TierId.GROWTH,
            name="Growth",
            rank=2,
            monthly_cost_usd=Decimal("5"),
            setup_fee_usd=Decimal("0"),
            max_transactions_per_month=50,
            max_transaction_amount_usd=Decimal("10000"),
            max_transaction_amount=_ceilings(
                USD=10_000, EUR=9_000, GBP=8_000, NGN=15_000_000,
                KES=1_300_000, GHS=120_000, ZAR=180_000, INR=840_000,
            ),
            fees=_fees("2.5", "1.25"),
            features=(
                "50 transactions per month",
                "Max $10,000 per transaction",
                "Priority support",
                "Advanced analytics",
            ),
        ),
        TierId.ENTERPRISE: Tier(
            id=TierId.ENTERPRISE,
            name="Enterprise",
            rank=3,
            monthly_cost_usd=Decimal("15"),
            setup_fee_usd=Decimal("0"),
            max_transactions_per_month=UNBOUNDED,
            max_transaction_amount_usd=Decimal("100000"),
            max_transaction_amount=_ceilings(
                USD=100_000, EUR=90_000, GBP=80_000, NGN=150_000_000,
                KES=13_000_000, GHS=1_200_000, ZAR=1_800_000, INR=8_400_000,
            ),
            fees=_fees("1.5", "0.75"),
            features=(
                "Unlimited transactions",
                "Premium 24/7 support",
                "Dedicated account manager",
                "Custom workflows",
            ),
        ),
        TierId.API: Tier(
            id=TierId.API,
            name="API Tier",
            rank=4,
            monthly_cost_usd=Decimal("50"),
            setup_fee_usd=Decimal("80"),
            max_transactions_per_month=UNBOUNDED,
            max_transaction_amount_usd=Decimal(UNBOUNDED),
            max_transaction_amount=MappingProxyType({}),
            fees=_fees("1.0", "0.5"),
            features=(
                "Full API access",
                "Webhook support",
                "Unlimited transactions and amounts",
                "SLA guarantee",
            ),
        ),
    }
)


def get_tier(tier_id: str | TierId) -> Tier:
    """Look up a tier by id, raising UnknownTierError if it is not in the catalog."""
    try:
        return TIER_CATALOG[TierId(str(tier_id))]
    except (ValueError, KeyError) as err:
        raise UnknownTierError(str(tier_id)) from err


def tiers_by_rank() -> list[Tier]:
    return sorted(TIER_CATALOG.values(), key=lambda tier: tier.rank)


# ---------------------------------------------------------------------------
# Localized pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TierPricing:
    """A tier's costs and limits expressed in a user's local currency."""

    tier_id: TierId
    name: str
    currency: Currency
    monthly_cost: Decimal
    setup_fee: Decimal
    max_transaction_amount: Decimal | None
    max_transactions_per_month: int
    buyer_fee_percent: Decimal
    seller_fee_percent: Decimal

    @property
    def combined_fee_percent(self) -> Decimal:
        return self.buyer_fee_percent + self.seller_fee_percent

    def to_dict(self) -> dict:
        return {
            "tier_id": self.tier_id.value,
            "name": self.name,
            "currency": self.currency.value,
            "monthly_cost": str(self.monthly_cost),
            "monthly_cost_formatted": format_currency(self.monthly_cost, self.currency),
            "setup_fee": str(self.setup_fee),
            "max_transaction_amount": (
                None if self.max_transaction_amount is None else str(self.max_transaction_amount)
            ),
            "max_transactions_per_month": self.max_transactions_per_month,
            "buyer_fee_percent": str(self.buyer_fee_percent),
            "seller_fee_percent": str(self.seller_fee_percent),
            "combined_fee_percent": str(self.combined_fee_percent),
        }


def tier_pricing(tier_id: str | TierId, currency: str | Currency = Currency.USD) -> TierPricing:
    tier = get_tier(tier_id)
    code = parse_currency(currency)
    rates = tier.fee_rates(code)
    return TierPricing(
        tier_id=tier.id,
        name=tier.name,
        currency=code,
        monthly_cost=convert_currency(tier.monthly_cost_usd, code),
        setup_fee=convert_currency(tier.setup_fee_usd, code),
        max_transaction_amount=tier.amount_ceiling(code),
        max_transactions_per_month=tier.max_transactions_per_month,
        buyer_fee_percent=rates.buyer,
        seller_fee_percent=rates.seller,
    )


@dataclass(frozen=True)
class UpgradeCost:
    target_tier: TierId
    currency: Currency
    setup_fee: Decimal
    monthly_cost: Decimal

    @property
    def total_due(self) -> Decimal:
        return self.setup_fee + self.monthly_cost


def upgrade_cost(target_tier: str | TierId, currency: str | Currency = Currency.USD) -> UpgradeCost:
    """Amount due when upgrading to `target_tier`: setup fee plus the first month."""
    pricing = tier_pricing(target_tier, currency)
    return UpgradeCost(
        target_tier=pricing.tier_id,
        currency=pricing.currency,
        setup_fee=pricing.setup_fee,
        monthly_cost=pricing.monthly_cost,
    )
