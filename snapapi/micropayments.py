"""x402 pay-per-request gate.

The gate shapes the HTTP 402 contract (quote, verify, settle) and leaves all
signature checking to the facilitator. Settlement runs only after the paid job
produced its result; a settlement failure is logged as an accounting
discrepancy and never fails the request.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Type

from .config import ATOMIC_PER_USDC, ROUTE_PATHS, ROUTE_PRICES, RoutePrice
from .errors import (
    AdmissionError,
    InvalidRequest,
    PaymentRejected,
    PaymentRequired,
    PaymentUnavailable,
    SettlementDiscrepancy,
)
from .facilitator import X402_VERSION, FacilitatorError, PaymentFacilitator, SettlementReceipt

logger = logging.getLogger(__name__)

PAYMENT_HEADERS = ("payment-signature", "x-payment")
PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
PAYMENT_RESPONSE_HEADER = "PAYMENT-RESPONSE"


def encode_header(payload: Mapping[str, Any]) -> str:
    raw = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_header(value: str) -> Dict[str, Any]:
    try:
        decoded = base64.b64decode(value.strip(), validate=True)
        payload = json.loads(decoded.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ValueError("payment header is not base64-encoded JSON") from exc
    if not isinstance(payload, dict):
        raise ValueError("payment header must encode a JSON object")
    return payload


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class PriceRequirement:
    route: str
    scheme: str
    network: str
    amount: str
    asset: str
    pay_to: str
    max_timeout_seconds: int
    resource: str
    description: str
    mime_type: str
    price_usd: Decimal
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "network": self.network,
            "amount": self.amount,
            "asset": self.asset,
            "payTo": self.pay_to,
            "maxTimeoutSeconds": self.max_timeout_seconds,
            "extra": dict(self.extra),
        }

    def resource_info(self) -> Dict[str, Any]:
        return {"url": self.resource, "description": self.description, "mimeType": self.mime_type}


@dataclass
class VerifiedPayment:
    route: str
    payload: Dict[str, Any]
    requirement: PriceRequirement
    payer: Optional[str] = None


class MicropaymentGate:
    def __init__(
        self,
        facilitator: Optional[PaymentFacilitator],
        *,
        network: str,
        asset: str,
        pay_to: str,
        max_timeout_seconds: int = 120,
        prices: Optional[Mapping[str, RoutePrice]] = None,
        asset_name: str = "USD Coin",
        asset_version: str = "2",
    ) -> None:
        self.facilitator = facilitator
        self.network = network
        self.asset = asset
        self.pay_to = pay_to
        self.max_timeout_seconds = max_timeout_seconds
        self.prices: Mapping[str, RoutePrice] = prices if prices is not None else ROUTE_PRICES
        self.asset_name = asset_name
        self.asset_version = asset_version

    @property
    def enabled(self) -> bool:
        return self.facilitator is not None

    def quote(self, route: str) -> PriceRequirement:
        price = self.prices.get(route)
        if price is None:
            raise InvalidRequest(f"No micropayment price for route {route}")
        atomic = int(price.price_usd * ATOMIC_PER_USDC)
        return PriceRequirement(
            route=route,
            scheme="exact",
            network=self.network,
            amount=str(atomic),
            asset=self.asset,
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            resource=ROUTE_PATHS.get(route, f"/api/{route}"),
            description=price.description,
            mime_type=price.mime_type,
            price_usd=price.price_usd,
            extra={"name": self.asset_name, "version": self.asset_version},
        )

    def payment_required(
        self,
        route: str,
        message: str = "Payment required",
        *,
        error_cls: Type[AdmissionError] = PaymentRequired,
        reason: Optional[str] = None,
    ) -> AdmissionError:
        """Build the 402 error whose body tells an agent how to pay and retry."""
        requirement = self.quote(route)
        document = {
            "x402Version": X402_VERSION,
            "error": message,
            "resource": requirement.resource_info(),
            "accepts": [requirement.to_wire()],
        }
        extra = {
            "x402Version": X402_VERSION,
            "resource": requirement.resource_info(),
            "accepts": [requirement.to_wire()],
            "price": f"${requirement.price_usd}",
            "pay_to": requirement.pay_to,
            "network": requirement.network,
        }
        return error_cls(
            message,
            reason=reason,
            extra=extra,
            headers={PAYMENT_REQUIRED_HEADER: encode_header(document)},
        )

    def has_payment(self, headers: Mapping[str, str]) -> bool:
        return any(header_value(headers, name) for name in PAYMENT_HEADERS)

    async def verify(self, headers: Mapping[str, str], route: str) -> VerifiedPayment:
        if self.facilitator is None:
            raise PaymentUnavailable("x402 micropayments are not enabled")

        raw = None
        for name in PAYMENT_HEADERS:
            raw = header_value(headers, name)
            if raw:
                break
        if not raw:
            raise self.payment_required(route)

        try:
            payload = decode_header(raw)
        except ValueError as exc:
            raise self.payment_required(
                route, f"Invalid payment header: {exc}", error_cls=PaymentRejected, reason="invalid_payment_header"
            ) from exc

        requirement = self.quote(route)
        try:
            result = await self.facilitator.verify(payload, requirement.to_wire())
        except FacilitatorError as exc:
            logger.warning("[x402] Verification unavailable for %s: %s", route, exc)
            raise PaymentUnavailable("Payment facilitator unavailable. Try again shortly.") from exc

        if not result.is_valid:
            logger.info("[x402] Payment rejected for %s: %s", route, result.invalid_reason)
            raise self.payment_required(
                route,
                f"Payment verification failed: {result.invalid_reason or 'invalid payment'}",
                error_cls=PaymentRejected,
                reason=result.invalid_reason or None,
            )
        return VerifiedPayment(route=route, payload=payload, requirement=requirement, payer=result.payer)

    async def settle(self, verified: VerifiedPayment) -> Optional[SettlementReceipt]:
        if self.facilitator is None:
            return None
        try:
            receipt = await self.facilitator.settle(verified.payload, verified.requirement.to_wire())
        except Exception as exc:
            discrepancy = SettlementDiscrepancy(
                f"Settlement error for {verified.route} (payer={verified.payer}): {exc}"
            )
            logger.error("[x402] %s", discrepancy)
            return None
        if not receipt.success:
            discrepancy = SettlementDiscrepancy(
                f"Settlement refused for {verified.route} (payer={verified.payer}): {receipt.error_reason}"
            )
            logger.error("[x402] %s", discrepancy)
            return None
        logger.info("[x402] Settled %s tx=%s payer=%s", verified.route, receipt.transaction, receipt.payer)
        return receipt


__all__ = [
    "MicropaymentGate",
    "PAYMENT_REQUIRED_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "PriceRequirement",
    "VerifiedPayment",
    "decode_header",
    "encode_header",
]
