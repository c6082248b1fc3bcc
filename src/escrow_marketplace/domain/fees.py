"""Fee Calculator.

Pure function over (amount, currency, tier). No clock, no randomness, no I/O:
identical inputs always produce an identical breakdown.

The amount is never rounded: it must already be expressible in the
currency's smallest unit (cents for fiat, satoshis for BTC, ...) or it is
rejected. Each fee is rounded once, half-up to that same scale, and the
totals are exact sums of those rounded values, so

    buyer_pays - amount == buyer_fee
    amount - seller_receives == seller_fee
    platform_fee == buyer_fee + seller_fee

hold exactly.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from escrow_marketplace.domain.enums import Currency, PaymentMethod, TierId
from escrow_marketplace.domain.exceptions import InvalidAmountError, ValidationError
from escrow_marketplace.domain.tiers import (
    Tier,
    convert_currency,
    currency_scale,
    format_currency,
    get_tier,
    minor_unit,
    parse_currency,
    round2,
    round_money,
    to_decimal,
)

HUNDRED = Decimal("100")


def parse_amount(
    amount: str | float | int | Decimal, currency: str | Currency = Currency.USD
) -> Decimal:
    """Coerce `amount` to an exact Decimal at `currency`'s scale.

    Raises:
        InvalidAmountError: not a number, not strictly positive, or finer
            than the currency's smallest unit (1.005 USD, 0.000000001 BTC).
    """
    code = parse_currency(currency)
    try:
        value = to_decimal(amount)
        if not value.is_finite() or value <= 0:
            raise InvalidAmountError(amount)
        exact = value.quantize(minor_unit(code))
    except (InvalidOperation, ValueError) as err:
        raise InvalidAmountError(amount) from err
    if exact != value:
        raise InvalidAmountError(
            amount, f"has more than {currency_scale(code)} decimal places for {code.value}"
        )
    return exact


def percent_of(
    amount: Decimal, percent: Decimal, currency: str | Currency = Currency.USD
) -> Decimal:
    return round_money(amount * percent / HUNDRED, currency)


@dataclass(frozen=True)
class FeeBreakdown:
    """Fees for one escrow amount under one tier.

    Percentages are percent values (3.5 means 3.5 %). This is the shape
    snapshotted onto an escrow at funding time.
    """

    amount: Decimal
    currency: Currency
    tier_id: TierId
    buyer_fee_percent: Decimal
    seller_fee_percent: Decimal
    buyer_fee: Decimal
    seller_fee: Decimal
    platform_fee: Decimal
    buyer_pays: Decimal
    seller_receives: Decimal

    @property
    def total_fee_percent(self) -> Decimal:
        return self.buyer_fee_percent + self.seller_fee_percent

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "currency": self.currency.value,
            "tier_id": self.tier_id.value,
            "buyer_fee_percent": str(self.buyer_fee_percent),
            "seller_fee_percent": str(self.seller_fee_percent),
            "total_fee_percent": str(self.total_fee_percent),
            "buyer_fee": str(self.buyer_fee),
            "seller_fee": str(self.seller_fee),
            "platform_fee": str(self.platform_fee),
            "buyer_pays": str(self.buyer_pays),
            "seller_receives": str(self.seller_receives),
            "buyer_pays_formatted": format_currency(self.buyer_pays, self.currency),
            "seller_receives_formatted": format_currency(self.seller_receives, self.currency),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FeeBreakdown:
        return cls(
            amount=Decimal(data["amount"]),
            currency=Currency(data["currency"]),
            tier_id=TierId(data["tier_id"]),
            buyer_fee_percent=Decimal(data["buyer_fee_percent"]),
            seller_fee_percent=Decimal(data["seller_fee_percent"]),
            buyer_fee=Decimal(data["buyer_fee"]),
            seller_fee=Decimal(data["seller_fee"]),
            platform_fee=Decimal(data["platform_fee"]),
            buyer_pays=Decimal(data["buyer_pays"]),
            seller_receives=Decimal(data["seller_receives"]),
        )


def compute_fees(
    amount: str | float | int | Decimal,
    currency: str | Currency,
    tier: Tier | str | TierId,
) -> FeeBreakdown:
    """Compute the fee breakdown for `amount` in `currency` under `tier`.

    Raises:
        InvalidAmountError: amount <= 0, or finer than the currency's smallest unit.
        UnsupportedCurrencyError: currency is not supported.
        UnknownTierError: tier id is not in the catalog.
    """
    if not isinstance(tier, Tier):
        tier = get_tier(tier)
    code = parse_currency(currency)
    value = parse_amount(amount, code)
    rates = tier.fee_rates(code)

    buyer_fee = percent_of(value, rates.buyer, code)
    seller_fee = percent_of(value, rates.seller, code)
    return FeeBreakdown(
        amount=value,
        currency=code,
        tier_id=tier.id,
        buyer_fee_percent=rates.buyer,
        seller_fee_percent=rates.seller,
        buyer_fee=buyer_fee,
        seller_fee=seller_fee,
        platform_fee=buyer_fee + seller_fee,
        buyer_pays=value + buyer_fee,
        seller_receives=value - seller_fee,
    )


# ---------------------------------------------------------------------------
# Gateway costs (base in USD)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewayCostTable:
    percent: Decimal
    flat_fee_usd: Decimal = Decimal("0")
    cap_usd: Decimal | None = None
    transfer_fee_usd: Decimal = Decimal("0")
    # (ceiling_usd, fee_usd) bands for outgoing transfers; last band is open-ended
    transfer_bands: tuple[tuple[Decimal | None, Decimal], ...] = ()


GATEWAY_COSTS: dict[PaymentMethod, GatewayCostTable] = {
    PaymentMethod.PAYSTACK: GatewayCostTable(
        percent=Decimal("1.5"),
        flat_fee_usd=Decimal("0.10"),
        cap_usd=Decimal("2"),
        transfer_bands=(
            (Decimal("50"), Decimal("0.10")),
            (Decimal("500"), Decimal("0.25")),
            (None, Decimal("0.50")),
        ),
    ),
    PaymentMethod.FLUTTERWAVE: GatewayCostTable(percent=Decimal("1.4")),
    PaymentMethod.CRYPTO: GatewayCostTable(percent=Decimal("0.5")),
}


@dataclass(frozen=True)
class GatewayCost:
    """Estimated processor cost of collecting and paying out one escrow."""

    payment_method: PaymentMethod
    incoming: Decimal
    outgoing: Decimal
    platform_profit: Decimal
    profit_percent: Decimal

    @property
    def total(self) -> Decimal:
        return self.incoming + self.outgoing

    def to_dict(self) -> dict:
        return {
            "payment_method": self.payment_method.value,
            "gateway_incoming": str(self.incoming),
            "gateway_outgoing": str(self.outgoing),
            "total_gateway_cost": str(self.total),
            "platform_profit": str(self.platform_profit),
            "profit_percent": str(self.profit_percent),
        }


def _transfer_fee(table: GatewayCostTable, seller_receives: Decimal, currency: Currency) -> Decimal:
    if not table.transfer_bands:
        return convert_currency(table.transfer_fee_usd, currency)
    for ceiling_usd, fee_usd in table.transfer_bands:
        if ceiling_usd is None or seller_receives <= convert_currency(ceiling_usd, currency):
            return convert_currency(fee_usd, currency)
    raise ValidationError("Transfer bands must end with an open-ended band")


def estimate_gateway_cost(
    breakdown: FeeBreakdown,
    payment_method: str | PaymentMethod = PaymentMethod.FLUTTERWAVE,
) -> GatewayCost:
    """Estimate gateway costs for a breakdown and the platform's resulting profit.

    Read-only quote; never persisted onto an escrow.
    """
    try:
        method = PaymentMethod(str(payment_method))
    except ValueError as err:
        raise ValidationError(
            f"Unsupported payment method: {payment_method}", code="UNSUPPORTED_PAYMENT_METHOD"
        ) from err
    table = GATEWAY_COSTS[method]
    currency = breakdown.currency

    incoming = percent_of(breakdown.buyer_pays, table.percent)
    if table.flat_fee_usd:
        incoming += convert_currency(table.flat_fee_usd, currency)
    if table.cap_usd is not None:
        incoming = min(incoming, convert_currency(table.cap_usd, currency))

    outgoing = Decimal("0.00")
    if method != PaymentMethod.CRYPTO:
        outgoing = _transfer_fee(table, breakdown.seller_receives, currency)

    profit = breakdown.platform_fee - incoming - outgoing
    return GatewayCost(
        payment_method=method,
        incoming=incoming,
        outgoing=outgoing,
        platform_profit=profit,
        profit_percent=round2(profit / breakdown.amount * HUNDRED),
    )
