"""
Konnect payment gateway adapter.

Translates internal payment intents to the gateway's HTTP API and back:

* ``POST {api}/payments/init-payment`` -- create a payment, get ``payUrl``
* ``GET  {api}/payments/{ref}``        -- authoritative payment status

Authentication is the ``x-api-key`` header.  Amounts travel in the
gateway's integer smallest unit (millimes for TND); conversion happens in
``rentacar.domain.pricing`` before calling this adapter.

Every call is bounded by the client timeout; timeouts and transport
failures surface as ``GatewayError`` instead of hanging a request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

import httpx

from rentacar.domain.errors import (
    GatewayError,
    GatewayExpired,
    GatewayNotFound,
    GatewayUnauthorized,
)

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 280
ACCEPTED_PAYMENT_METHODS = ["wallet", "bank_card", "e-DINAR"]


@dataclass(frozen=True)
class Payer:
    full_name: str
    email: str
    phone: str = ""

    @property
    def first_name(self) -> str:
        parts = self.full_name.split()
        return parts[0] if parts else "N/A"

    @property
    def last_name(self) -> str:
        return " ".join(self.full_name.split()[1:]) or "N/A"

    @property
    def phone_number(self) -> str:
        phone = self.phone.strip()
        if phone and all(ch.isdigit() or ch == "+" for ch in phone):
            return phone
        return "000000000"


@dataclass(frozen=True)
class PaymentInit:
    payment_ref: str
    pay_url: str


@dataclass(frozen=True)
class PaymentStatus:
    status: str
    amount: int
    order_id: Optional[str]
    payer_name: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"


class KonnectGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        api_url: str,
        api_key: str,
        wallet_id: str,
        lifespan_minutes: int = 10,
    ):
        self.client = client
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.wallet_id = wallet_id
        self.lifespan_minutes = lifespan_minutes

    @property
    def _headers(self) -> dict[str, str]:
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    async def initiate(
        self,
        *,
        order_id: str,
        amount: int,
        currency: str,
        payer: Payer,
        success_url: str,
        error_url: str,
        description: str,
        lifespan_minutes: Optional[int] = None,
    ) -> PaymentInit:
        """Create a payment; returns its reference and the pay-now URL."""
        if len(description) > MAX_DESCRIPTION_LENGTH:
            raise GatewayError("Payment description exceeds 280 characters")

        payload = {
            "receiverWalletId": self.wallet_id,
            "token": currency,
            "amount": amount,
            "type": "immediate",
            "description": description,
            "acceptedPaymentMethods": ACCEPTED_PAYMENT_METHODS,
            "lifespan": lifespan_minutes or self.lifespan_minutes,
            "checkoutForm": True,
            "addPaymentFeesToAmount": True,
            "firstName": payer.first_name,
            "lastName": payer.last_name,
            "phoneNumber": payer.phone_number,
            "email": payer.email,
            "orderId": order_id,
            "successUrl": success_url,
            "errorUrl": error_url,
            "theme": "dark",
        }
        try:
            response = await self.client.post(
                f"{self.api_url}/payments/init-payment",
                json=payload,
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.error("Konnect init-payment failed for order %s: %s", order_id, exc)
            raise GatewayError(f"Payment gateway unreachable: {exc}") from exc

        if response.is_error:
            logger.error(
                "Konnect init-payment returned %s for order %s: %s",
                response.status_code,
                order_id,
                response.text,
            )
            raise GatewayError(
                f"Payment gateway rejected the payment ({response.status_code})"
            )

        data = _json(response)
        if not data.get("payUrl") or not data.get("paymentRef"):
            logger.error("Konnect response missing payUrl/paymentRef: %s", data)
            raise GatewayError("Payment gateway did not return a payment URL")
        return PaymentInit(payment_ref=data["paymentRef"], pay_url=data["payUrl"])

    async def get_status(self, payment_ref: str) -> PaymentStatus:
        """Fetch the gateway's authoritative view of *payment_ref*."""
        try:
            response = await self.client.get(
                f"{self.api_url}/payments/{payment_ref}", headers=self._headers
            )
        except httpx.HTTPError as exc:
            logger.error("Konnect status lookup failed for %s: %s", payment_ref, exc)
            raise GatewayError(f"Failed to fetch payment details: {exc}") from exc

        if response.status_code == 404:
            raise GatewayNotFound("Invalid ID: Payment not found")
        if response.status_code == 401:
            raise GatewayUnauthorized("Invalid authentication: Check API key")
        if response.status_code == 410:
            raise GatewayExpired("Payment expired")
        if response.is_error:
            logger.error(
                "Konnect status lookup returned %s for %s",
                response.status_code,
                payment_ref,
            )
            raise GatewayError(
                f"Failed to fetch payment details ({response.status_code})"
            )

        payment = _json(response).get("payment") or {}
        amount = _whole_amount(payment.get("amount"))
        details = payment.get("paymentDetails") or {}
        return PaymentStatus(
            status=str(payment.get("status", "")),
            amount=amount,
            order_id=payment.get("orderId"),
            payer_name=details.get("name"),
        )


def _whole_amount(raw) -> int:
    """The gateway reports integer smallest units; anything else is refused."""
    if raw is None or isinstance(raw, bool):
        raise GatewayError("Payment details missing amount")
    try:
        value = Decimal(str(raw))
    except InvalidOperation as exc:
        raise GatewayError(f"Payment amount is not a number: {raw!r}") from exc
    if not value.is_finite() or value != value.to_integral_value():
        raise GatewayError(f"Payment amount is not a whole number: {raw!r}")
    return int(value)


def _json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise GatewayError("Payment gateway returned invalid JSON") from exc
    if not isinstance(data, dict):
        raise GatewayError("Payment gateway returned an unexpected body")
    return data
