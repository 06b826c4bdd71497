"""HTTP client for an x402 payment facilitator (``/verify`` and ``/settle``)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

X402_VERSION = 2


class FacilitatorError(RuntimeError):
    """The facilitator could not be reached or returned garbage."""


@dataclass
class VerifyResult:
    is_valid: bool
    invalid_reason: Optional[str] = None
    payer: Optional[str] = None


@dataclass
class SettlementReceipt:
    success: bool
    transaction: Optional[str]
    network: Optional[str]
    payer: Optional[str] = None
    error_reason: Optional[str] = None

    def as_header_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "transaction": self.transaction,
            "network": self.network,
        }
        if self.payer:
            payload["payer"] = self.payer
        if self.error_reason:
            payload["errorReason"] = self.error_reason
        return payload


class PaymentFacilitator(Protocol):
    async def verify(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> VerifyResult:
        ...

    async def settle(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> SettlementReceipt:
        ...


class HTTPFacilitatorClient:
    def __init__(
        self,
        url: str,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        endpoint = f"{self.url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(endpoint, json=body, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(endpoint, json=body)
        except httpx.HTTPError as exc:
            raise FacilitatorError(f"Facilitator request to {path} failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            raise FacilitatorError(
                f"Facilitator returned non-JSON response ({response.status_code}) for {path}"
            ) from exc
        if not isinstance(data, dict):
            raise FacilitatorError(f"Facilitator returned invalid response for {path}")
        if response.status_code >= 500:
            raise FacilitatorError(f"Facilitator error {response.status_code} for {path}: {data}")
        return data

    async def verify(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> VerifyResult:
        data = await self._post(
            "/verify",
            {"x402Version": X402_VERSION, "paymentPayload": payload, "paymentRequirements": requirements},
        )
        return VerifyResult(
            is_valid=bool(data.get("isValid")),
            invalid_reason=data.get("invalidReason"),
            payer=data.get("payer"),
        )

    async def settle(self, payload: Dict[str, Any], requirements: Dict[str, Any]) -> SettlementReceipt:
        data = await self._post(
            "/settle",
            {"x402Version": X402_VERSION, "paymentPayload": payload, "paymentRequirements": requirements},
        )
        return SettlementReceipt(
            success=bool(data.get("success")),
            transaction=data.get("transaction"),
            network=data.get("network"),
            payer=data.get("payer"),
            error_reason=data.get("errorReason"),
        )


__all__ = [
    "FacilitatorError",
    "HTTPFacilitatorClient",
    "PaymentFacilitator",
    "SettlementReceipt",
    "VerifyResult",
    "X402_VERSION",
]
