"""
Payment Transport Tests

Tests for the X-PAYMENT header codec, outbound paid calls, error mapping
and the facilitator client.
"""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from avabuilder.errors import (
    HttpError,
    NetworkError,
    PaymentRejected,
    RequestTimeoutError,
    ValidationError,
)
from avabuilder.payments import PaymentAuthorizationBuilder
from avabuilder.transport import (
    decode_payment_header,
    decode_settlement_header,
    encode_payment_header,
    encode_settlement_header,
    FacilitatorClient,
    PaidClient,
    PaymentTransport,
)
from avabuilder.types import (
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentEnvelope,
    PaymentRequirements,
    SettleResult,
)


# =========================================================================
# TEST FIXTURES
# =========================================================================

PAYER_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
PAYEE = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
USDC = "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E"
NETWORK = "avalanche"


def make_builder() -> PaymentAuthorizationBuilder:
    return PaymentAuthorizationBuilder(
        private_key=PAYER_KEY,
        payee_address=PAYEE,
        asset_address=USDC,
        chain_id=43114,
    )


def make_client(handler) -> httpx.AsyncClient:
    """Helper to create an httpx client answering from `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_requirements() -> PaymentRequirements:
    return PaymentRequirements(
        network=NETWORK,
        max_amount_required="10000",
        resource="https://agent.example/a2a/guide",
        pay_to=PAYEE,
        asset=USDC,
    )


# =========================================================================
# HEADER CODEC
# =========================================================================

class TestPaymentHeader:

    def test_round_trip(self):
        auth = make_builder().build("0.01")
        envelope = PaymentEnvelope.from_authorization(auth, NETWORK)

        decoded = decode_payment_header(encode_payment_header(envelope))

        assert decoded == envelope
        assert decoded.payload.signature == auth.signature
        assert decoded.payload.payload.nonce == auth.nonce

    def test_wire_shape(self):
        auth = make_builder().build("0.01")
        envelope = PaymentEnvelope.from_authorization(auth, NETWORK)

        wire = json.loads(base64.b64decode(encode_payment_header(envelope)))

        assert wire["x402Version"] == 1
        assert wire["network"] == NETWORK
        assert wire["asset"] == USDC
        assert wire["amount"] == "10000"
        transfer = wire["payload"]["payload"]
        assert transfer["from"] == auth.payer_address
        assert transfer["to"] == PAYEE
        assert transfer["validAfter"] == 0
        assert transfer["validBefore"] == auth.valid_before

    def test_not_base64(self):
        with pytest.raises(ValidationError, match="Malformed payment header"):
            decode_payment_header("not base64!!")

    def test_not_json(self):
        with pytest.raises(ValidationError, match="Malformed payment header"):
            decode_payment_header(base64.b64encode(b"hello").decode())

    def test_missing_fields(self):
        header = base64.b64encode(json.dumps({"x402Version": 1}).encode()).decode()
        with pytest.raises(ValidationError, match="Malformed payment envelope"):
            decode_payment_header(header)


class TestSettlementHeader:

    def test_round_trip(self):
        settlement = SettleResult(success=True, transaction="0xabc", network=NETWORK)
        assert decode_settlement_header(encode_settlement_header(settlement)) == settlement

    def test_unreadable(self):
        assert decode_settlement_header("???") is None


# =========================================================================
# OUTBOUND PAID CALLS
# =========================================================================

class TestPaymentTransport:

    @pytest.mark.asyncio
    async def test_send_attaches_header(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["header"] = request.headers.get(PAYMENT_HEADER)
            seen["body"] = json.loads(request.content)
            settlement = SettleResult(success=True, transaction="0xfeed")
            return httpx.Response(
                200,
                json={"ok": True},
                headers={PAYMENT_RESPONSE_HEADER: encode_settlement_header(settlement)},
            )

        auth = make_builder().build("0.01")
        transport = PaymentTransport(NETWORK, client=make_client(handler))

        response = await transport.send("https://agent.example/paid", "post", {"q": 1}, auth)

        assert response.status_code == 200
        assert response.data == {"ok": True}
        assert response.settlement.transaction == "0xfeed"
        assert seen["body"] == {"q": 1}
        envelope = decode_payment_header(seen["header"])
        assert envelope.payload.payload.nonce == auth.nonce

    @pytest.mark.asyncio
    async def test_402_is_payment_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": "insufficient funds"})

        transport = PaymentTransport(NETWORK, client=make_client(handler))

        with pytest.raises(PaymentRejected) as exc_info:
            await transport.send("https://agent.example/paid", "POST", {}, make_builder().build("0.01"))

        assert exc_info.value.status == 402
        assert "insufficient funds" in exc_info.value.body
        assert not exc_info.value.retryable
        assert not isinstance(exc_info.value, NetworkError)

    @pytest.mark.asyncio
    async def test_500_is_http_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="boom")

        transport = PaymentTransport(NETWORK, client=make_client(handler))

        with pytest.raises(HttpError) as exc_info:
            await transport.send("https://agent.example/paid", "POST", {}, make_builder().build("0.01"))

        assert not isinstance(exc_info.value, PaymentRejected)
        assert exc_info.value.status == 500
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        transport = PaymentTransport(NETWORK, timeout=5, client=make_client(handler))

        with pytest.raises(RequestTimeoutError) as exc_info:
            await transport.send("https://agent.example/paid", "POST", {}, make_builder().build("0.01"))

        assert exc_info.value.timeout == 5
        assert isinstance(exc_info.value, NetworkError)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport = PaymentTransport(NETWORK, client=make_client(handler))

        with pytest.raises(NetworkError, match="failed"):
            await transport.send("https://agent.example/paid", "POST", {}, make_builder().build("0.01"))

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>")

        transport = PaymentTransport(NETWORK, client=make_client(handler))

        with pytest.raises(NetworkError, match="Invalid JSON"):
            await transport.send("https://agent.example/paid", "POST", {}, make_builder().build("0.01"))


# =========================================================================
# FACILITATOR
# =========================================================================

class TestFacilitatorClient:

    @pytest.mark.asyncio
    async def test_verify_posts_payload_and_requirements(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"isValid": True, "payer": PAYEE})

        facilitator = FacilitatorClient("https://facilitator.example/", client=make_client(handler))
        envelope = PaymentEnvelope.from_authorization(make_builder().build("0.01"), NETWORK)

        result = await facilitator.verify(envelope, make_requirements())

        assert result.is_valid
        assert seen["path"] == "/verify"
        assert seen["body"]["x402Version"] == 1
        assert seen["body"]["paymentPayload"] == envelope.to_wire()
        assert seen["body"]["paymentRequirements"]["maxAmountRequired"] == "10000"
        assert seen["body"]["paymentRequirements"]["payTo"] == PAYEE

    @pytest.mark.asyncio
    async def test_settle(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/settle"
            return httpx.Response(200, json={"success": True, "transaction": "0xabc", "network": NETWORK})

        facilitator = FacilitatorClient("https://facilitator.example", client=make_client(handler))
        envelope = PaymentEnvelope.from_authorization(make_builder().build("0.01"), NETWORK)

        result = await facilitator.settle(envelope, make_requirements())

        assert result.success
        assert result.transaction == "0xabc"

    @pytest.mark.asyncio
    async def test_unexpected_response_shape(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        facilitator = FacilitatorClient("https://facilitator.example", client=make_client(handler))
        envelope = PaymentEnvelope.from_authorization(make_builder().build("0.01"), NETWORK)

        with pytest.raises(NetworkError, match="Unexpected /verify response"):
            await facilitator.verify(envelope, make_requirements())

    @pytest.mark.asyncio
    async def test_health(self):
        facilitator = FacilitatorClient(
            "https://facilitator.example",
            client=make_client(lambda request: httpx.Response(200, json={})),
        )
        assert await facilitator.health()

    @pytest.mark.asyncio
    async def test_health_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        facilitator = FacilitatorClient("https://facilitator.example", client=make_client(handler))
        assert not await facilitator.health()


# =========================================================================
# PAID CLIENT
# =========================================================================

class TestPaidClient:

    @pytest.mark.asyncio
    async def test_call_agent_guide(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["envelope"] = decode_payment_header(request.headers[PAYMENT_HEADER])
            return httpx.Response(200, json={"success": True, "answer": "deploy a subnet"})

        client = PaidClient(make_builder(), PaymentTransport(NETWORK, client=make_client(handler)))

        data = await client.call_agent_guide("https://peer.example/", {"question": "how?"}, "0.05")

        assert data["answer"] == "deploy a subnet"
        assert seen["url"] == "https://peer.example/a2a/guide"
        assert seen["envelope"].amount == "50000"

    @pytest.mark.asyncio
    async def test_each_call_uses_new_nonce(self):
        nonces = []

        def handler(request: httpx.Request) -> httpx.Response:
            nonces.append(decode_payment_header(request.headers[PAYMENT_HEADER]).payload.payload.nonce)
            return httpx.Response(200, json={})

        client = PaidClient(make_builder(), PaymentTransport(NETWORK, client=make_client(handler)))

        await client.call_protected_endpoint("https://peer.example/paid", "POST", {})
        await client.call_protected_endpoint("https://peer.example/paid", "POST", {})

        assert len(set(nonces)) == 2

    @pytest.mark.asyncio
    async def test_rejection_propagates(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": "Payment required"})

        client = PaidClient(make_builder(), PaymentTransport(NETWORK, client=make_client(handler)))

        with pytest.raises(PaymentRejected):
            await client.call_protected_endpoint("https://peer.example/paid", "POST", {})

    @pytest.mark.asyncio
    async def test_check_facilitator_without_client(self):
        client = PaidClient(make_builder(), PaymentTransport(NETWORK, client=make_client(lambda r: httpx.Response(200))))
        assert not await client.check_facilitator()
