import base64
import json
import logging

import httpx
import pytest

from snapapi.errors import InvalidRequest, PaymentRejected, PaymentRequired, PaymentUnavailable
from snapapi.facilitator import FacilitatorError, HTTPFacilitatorClient, SettlementReceipt, VerifyResult
from snapapi.micropayments import (
    PAYMENT_REQUIRED_HEADER,
    MicropaymentGate,
    decode_header,
    encode_header,
)

PAY_TO = "0x7483a9F237cf8043704D6b17DA31c12BfFF860DD"
ASSET = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


@pytest.fixture()
def anyio_backend():
    return "asyncio"


class FakeFacilitator:
    def __init__(self, *, valid=True, reason=None, verify_error=None, settle_error=None, settle_success=True):
        self.valid = valid
        self.reason = reason
        self.verify_error = verify_error
        self.settle_error = settle_error
        self.settle_success = settle_success
        self.verified = []
        self.settled = []

    async def verify(self, payload, requirements):
        if self.verify_error is not None:
            raise self.verify_error
        self.verified.append((payload, requirements))
        return VerifyResult(is_valid=self.valid, invalid_reason=self.reason, payer="0xpayer")

    async def settle(self, payload, requirements):
        if self.settle_error is not None:
            raise self.settle_error
        self.settled.append((payload, requirements))
        return SettlementReceipt(
            success=self.settle_success,
            transaction="0xsettled" if self.settle_success else None,
            network="eip155:8453",
            payer="0xpayer",
            error_reason=None if self.settle_success else "insufficient_funds",
        )


def build_gate(facilitator):
    return MicropaymentGate(facilitator, network="eip155:8453", asset=ASSET, pay_to=PAY_TO)


def payment_headers(payload=None, name="PAYMENT-SIGNATURE"):
    payload = payload or {"x402Version": 2, "payload": {"signature": "0xsig"}}
    return {name: encode_header(payload)}


def test_quote_prices_routes_in_atomic_units():
    gate = build_gate(FakeFacilitator())

    capture = gate.quote("capture")
    assert capture.amount == "10000"
    assert capture.scheme == "exact"
    assert capture.pay_to == PAY_TO
    assert capture.resource == "/api/capture"
    assert gate.quote("md2pdf").amount == "5000"
    assert gate.quote("md2png").mime_type == "image/png"

    wire = capture.to_wire()
    assert wire["payTo"] == PAY_TO
    assert wire["maxTimeoutSeconds"] == 120
    assert wire["extra"] == {"name": "USD Coin", "version": "2"}

    with pytest.raises(InvalidRequest):
        gate.quote("md2html")


def test_payment_required_carries_machine_readable_quote():
    gate = build_gate(FakeFacilitator())

    error = gate.payment_required("md2pdf")

    assert isinstance(error, PaymentRequired)
    assert error.status_code == 402
    body = error.to_body()
    assert body["reason"] == "payment_required"
    assert body["price"] == "$0.005"
    assert body["pay_to"] == PAY_TO
    assert body["accepts"][0]["amount"] == "5000"
    document = decode_header(error.headers[PAYMENT_REQUIRED_HEADER])
    assert document["x402Version"] == 2
    assert document["accepts"][0]["network"] == "eip155:8453"


def test_has_payment_accepts_either_header_case_insensitively():
    gate = build_gate(FakeFacilitator())

    assert gate.has_payment({"payment-signature": "abc"})
    assert gate.has_payment({"X-PAYMENT": "abc"})
    assert not gate.has_payment({"X-API-Key": "key"})
    assert not gate.has_payment({"X-Payment": "  "})


@pytest.mark.anyio("asyncio")
async def test_verify_passes_payload_and_requirements_to_facilitator():
    facilitator = FakeFacilitator()
    gate = build_gate(facilitator)

    verified = await gate.verify(payment_headers(name="X-PAYMENT"), "capture")

    assert verified.payer == "0xpayer"
    payload, requirements = facilitator.verified[0]
    assert payload["payload"]["signature"] == "0xsig"
    assert requirements["amount"] == "10000"


@pytest.mark.anyio("asyncio")
async def test_verify_rejects_invalid_payment_with_fresh_quote():
    gate = build_gate(FakeFacilitator(valid=False, reason="invalid_exact_evm_payload_signature"))

    with pytest.raises(PaymentRejected) as excinfo:
        await gate.verify(payment_headers(), "capture")

    error = excinfo.value
    assert error.status_code == 402
    assert error.reason == "invalid_exact_evm_payload_signature"
    assert error.extra["accepts"][0]["amount"] == "10000"


@pytest.mark.anyio("asyncio")
async def test_verify_rejects_malformed_header_without_calling_facilitator():
    facilitator = FakeFacilitator()
    gate = build_gate(facilitator)

    with pytest.raises(PaymentRejected) as excinfo:
        await gate.verify({"PAYMENT-SIGNATURE": "not-base64!!"}, "capture")

    assert excinfo.value.reason == "invalid_payment_header"
    assert facilitator.verified == []


@pytest.mark.anyio("asyncio")
async def test_verify_facilitator_outage_is_retryable():
    gate = build_gate(FakeFacilitator(verify_error=FacilitatorError("timeout")))

    with pytest.raises(PaymentUnavailable) as excinfo:
        await gate.verify(payment_headers(), "capture")
    assert excinfo.value.status_code == 503


@pytest.mark.anyio("asyncio")
async def test_disabled_gate_refuses_payments():
    gate = build_gate(None)

    assert gate.enabled is False
    with pytest.raises(PaymentUnavailable):
        await gate.verify(payment_headers(), "capture")
    assert await gate.settle(None) is None


@pytest.mark.anyio("asyncio")
async def test_settlement_failures_are_logged_not_raised(caplog):
    caplog.set_level(logging.ERROR, logger="snapapi.micropayments")
    gate = build_gate(FakeFacilitator(settle_error=FacilitatorError("facilitator down")))
    verified = await gate.verify(payment_headers(), "capture")

    assert await gate.settle(verified) is None
    assert "Settlement error" in caplog.text

    refused = build_gate(FakeFacilitator(settle_success=False))
    verified = await refused.verify(payment_headers(), "capture")
    assert await refused.settle(verified) is None
    assert "insufficient_funds" in caplog.text


@pytest.mark.anyio("asyncio")
async def test_http_facilitator_client_round_trip():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((request.url.path, body))
        if request.url.path == "/verify":
            return httpx.Response(200, json={"isValid": False, "invalidReason": "expired", "payer": "0xabc"})
        return httpx.Response(200, json={"success": True, "transaction": "0xtx", "network": "eip155:8453"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        facilitator = HTTPFacilitatorClient("https://facilitator.test/", client=client)
        result = await facilitator.verify({"sig": "1"}, {"amount": "10000"})
        receipt = await facilitator.settle({"sig": "1"}, {"amount": "10000"})

    assert result.is_valid is False
    assert result.invalid_reason == "expired"
    assert receipt.success is True
    assert receipt.transaction == "0xtx"
    assert seen[0][0] == "/verify"
    assert seen[0][1]["x402Version"] == 2
    assert seen[0][1]["paymentRequirements"] == {"amount": "10000"}
    assert seen[1][0] == "/settle"


@pytest.mark.anyio("asyncio")
async def test_http_facilitator_client_wraps_server_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        facilitator = HTTPFacilitatorClient("https://facilitator.test", client=client)
        with pytest.raises(FacilitatorError):
            await facilitator.verify({}, {})


def test_encoded_header_is_plain_base64_json():
    encoded = encode_header({"b": 1, "a": "x"})
    assert json.loads(base64.b64decode(encoded)) == {"a": "x", "b": 1}
    with pytest.raises(ValueError):
        decode_header(base64.b64encode(b"[1, 2]").decode())
