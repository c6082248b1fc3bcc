"""Payment Service — Paystack collection and payout client.

Implements both the PaymentGateway and PayoutGateway ports over
`httpx.AsyncClient`. Amounts cross the wire in the currency's subunit
(kobo for NGN, cents for USD), i.e. multiplied by 100.

Verification GETs are retried with tenacity backoff on transport errors;
payment and transfer POSTs are sent once.

In simulation mode no HTTP request is made: initialised payments and
transfers are remembered in memory and verify as successful, which is what
local runs and the dry-run simulation use.
"""

from __future__ import annotations

import uuid
from decimal import Decimal
from typing import TYPE_CHECKING

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from escrow_marketplace.domain.exceptions import UpstreamUnavailableError
from escrow_marketplace.domain.ports import (
    PaymentInitialization,
    PaymentVerification,
    TransferVerification,
)
from escrow_marketplace.domain.tiers import round2
from escrow_marketplace.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_marketplace.config import Settings

logger = get_logger(__name__)

PROVIDER = "paystack"
SUBUNIT = Decimal("100")


def to_subunit(amount: Decimal) -> int:
    return int(round2(amount) * SUBUNIT)


def from_subunit(value: int | str) -> Decimal:
    return round2(Decimal(value) / SUBUNIT)


class PaystackGateway:
    """Paystack client implementing the payment and payout ports."""

    def __init__(
        self,
        secret_key: str = "",
        base_url: str = "https://api.paystack.co",
        callback_url: str = "",
        timeout: float = 15.0,
        simulate: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            simulate: If True, never call Paystack; every initialised payment
                     and transfer verifies as successful.
            transport: Optional httpx transport (tests pass a MockTransport).
        """
        self._simulate = simulate
        self._callback_url = callback_url
        self._client: httpx.AsyncClient | None = None
        if not simulate:
            self._client = httpx.AsyncClient(
                base_url=base_url,
                headers={
                    "Authorization": f"Bearer {secret_key}",
                    "Content-Type": "application/json",
                },
                timeout=timeout,
                transport=transport,
            )
        self._simulated_payments: dict[str, tuple[Decimal, str]] = {}
        self._simulated_transfers: dict[str, Decimal] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> PaystackGateway:
        return cls(
            secret_key=settings.paystack_secret_key,
            base_url=settings.paystack_base_url,
            callback_url=settings.paystack_callback_url,
            timeout=settings.paystack_timeout_seconds,
            simulate=settings.payments_simulate,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    async def initialize_payment(
        self, amount: Decimal, currency: str, reference: str, email: str
    ) -> PaymentInitialization:
        if self._simulate:
            self._simulated_payments[reference] = (round2(amount), str(currency))
            logger.info(
                "payment.initialized",
                reference=reference,
                amount=str(amount),
                currency=str(currency),
                simulated=True,
            )
            return PaymentInitialization(
                reference=reference,
                authorization_url=f"https://checkout.paystack.com/simulated/{reference}",
                access_code=uuid.uuid4().hex[:12],
            )

        payload = {
            "email": email,
            "amount": to_subunit(amount),
            "currency": str(currency),
            "reference": reference,
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url
        body = await self._request("POST", "/transaction/initialize", json=payload)
        if not body.get("status"):
            raise UpstreamUnavailableError(PROVIDER, body.get("message", "initialize failed"))
        data = body["data"]
        logger.info("payment.initialized", reference=reference, amount=str(amount))
        return PaymentInitialization(
            reference=data.get("reference", reference),
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code", ""),
        )

    async def verify_payment(self, reference: str) -> PaymentVerification:
        if self._simulate:
            known = self._simulated_payments.get(reference)
            if known is None:
                return PaymentVerification(
                    reference=reference,
                    success=False,
                    amount_paid=Decimal("0.00"),
                    currency="",
                    gateway_response="Unknown reference",
                )
            amount, currency = known
            return PaymentVerification(
                reference=reference,
                success=True,
                amount_paid=amount,
                currency=currency,
                gateway_response="Approved",
            )

        body = await self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        success = bool(body.get("status")) and data.get("status") == "success"
        verification = PaymentVerification(
            reference=reference,
            success=success,
            amount_paid=from_subunit(data.get("amount", 0)),
            currency=data.get("currency", ""),
            gateway_response=data.get("gateway_response", body.get("message", "")),
            raw=data,
        )
        logger.info("payment.verified", reference=reference, success=success)
        return verification

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------

    async def initiate_transfer(
        self, amount: Decimal, currency: str, destination_id: str, reference: str
    ) -> str:
        """Start a transfer to a saved transfer recipient. Returns the reference."""
        if self._simulate:
            self._simulated_transfers[reference] = round2(amount)
            logger.info(
                "payout.initiated",
                reference=reference,
                amount=str(amount),
                destination=destination_id,
                simulated=True,
            )
            return reference

        body = await self._request(
            "POST",
            "/transfer",
            json={
                "source": "balance",
                "amount": to_subunit(amount),
                "currency": str(currency),
                "recipient": destination_id,
                "reference": reference,
            },
        )
        if not body.get("status"):
            raise UpstreamUnavailableError(PROVIDER, body.get("message", "transfer failed"))
        logger.info("payout.initiated", reference=reference, amount=str(amount))
        return body.get("data", {}).get("reference", reference)

    async def verify_transfer(self, reference: str) -> TransferVerification:
        if self._simulate:
            amount = self._simulated_transfers.get(reference)
            if amount is None:
                return TransferVerification(reference, False, Decimal("0.00"), "not_found")
            return TransferVerification(reference, True, amount, "success")

        body = await self._request("GET", f"/transfer/verify/{reference}")
        data = body.get("data") or {}
        status = data.get("status", "")
        return TransferVerification(
            reference=reference,
            success=bool(body.get("status")) and status == "success",
            amount=from_subunit(data.get("amount", 0)),
            status=status,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _get(self, path: str) -> httpx.Response:
        """GET with backoff on transport failures. POSTs are never replayed."""
        return await self._client.get(path)

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request; transport and 5xx failures become UpstreamUnavailableError."""
        try:
            if method == "GET":
                response = await self._get(path)
            else:
                response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("paystack.request_failed", path=path, error=str(exc))
            raise UpstreamUnavailableError(PROVIDER, str(exc)) from exc

        if response.status_code >= 500:
            logger.error("paystack.server_error", path=path, status_code=response.status_code)
            raise UpstreamUnavailableError(PROVIDER, f"HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamUnavailableError(PROVIDER, "invalid JSON response") from exc
