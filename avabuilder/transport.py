"""
AvaBuilder Agent - Payment Transport

Carries signed authorizations to peers' paid endpoints and talks to the
external facilitator that verifies and settles them.

The authorization travels base64-encoded in the X-PAYMENT header, never in
the body, so intermediaries that don't understand the protocol still
forward the request unchanged.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from decimal import Decimal
from typing import Any, Optional

import httpx
import pydantic

from .errors import (
    HttpError,
    NetworkError,
    PaymentRejected,
    RequestTimeoutError,
    ValidationError,
)
from .payments import PaymentAuthorizationBuilder
from .types import (
    AgentConfig,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PaymentAuthorization,
    PaymentEnvelope,
    PaymentRequirements,
    SettleResult,
    VerifyResult,
    X402_VERSION,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
FACILITATOR_TIMEOUT_SECONDS = 10.0


# =============================================================================
# HEADER CODEC
# =============================================================================

def encode_payment_header(envelope: PaymentEnvelope) -> str:
    """Serialize an envelope to compact JSON, then base64."""
    encoded = json.dumps(envelope.to_wire(), separators=(",", ":"))
    return base64.b64encode(encoded.encode("utf-8")).decode("ascii")


def decode_payment_header(header: str) -> PaymentEnvelope:
    """
    Decode an X-PAYMENT header value.

    Raises:
        ValidationError: not base64, not JSON, or not a well-formed envelope
    """
    try:
        raw = base64.b64decode(header.strip(), validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise ValidationError(f"Malformed payment header: {e}") from e

    try:
        return PaymentEnvelope.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed payment envelope: {e.error_count()} errors") from e


def encode_settlement_header(settlement: SettleResult) -> str:
    encoded = json.dumps(settlement.to_wire(), separators=(",", ":"))
    return base64.b64encode(encoded.encode("utf-8")).decode("ascii")


def decode_settlement_header(header: str) -> Optional[SettleResult]:
    """Decode an X-PAYMENT-RESPONSE header; None if unreadable."""
    try:
        data = json.loads(base64.b64decode(header, validate=True).decode("utf-8"))
        return SettleResult.model_validate(data)
    except (binascii.Error, UnicodeDecodeError, ValueError, pydantic.ValidationError):
        logger.warning("Ignoring unreadable payment response header")
        return None


# =============================================================================
# HTTP HELPERS
# =============================================================================

async def _request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """Issue a request, mapping transport failures into the agent taxonomy."""
    try:
        return await client.request(method, url, timeout=timeout, **kwargs)
    except httpx.TimeoutException as e:
        raise RequestTimeoutError(url, timeout) from e
    except httpx.HTTPError as e:
        raise NetworkError(f"{method} {url} failed: {e}") from e


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    if response.status_code == 402:
        raise PaymentRejected(response.status_code, response.text)
    raise HttpError(response.status_code, response.text)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise NetworkError(f"Invalid JSON from {response.request.url}") from e


# =============================================================================
# OUTBOUND PAID CALLS
# =============================================================================

class PaidResponse:
    """Successful response from a paid endpoint."""

    def __init__(
        self,
        status_code: int,
        data: Any,
        settlement: SettleResult | None = None,
    ) -> None:
        self.status_code = status_code
        self.data = data
        self.settlement = settlement


class PaymentTransport:
    """
    Attaches an authorization to one outbound request.

    No automatic retries: authorizations are single-use, so a retry must
    carry a newly built one.
    """

    def __init__(
        self,
        network: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.network = network
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "PaymentTransport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def send(
        self,
        endpoint: str,
        method: str,
        body: Any,
        authorization: PaymentAuthorization,
    ) -> PaidResponse:
        """
        Send `body` as JSON to `endpoint` with the authorization attached.

        Raises:
            RequestTimeoutError: call exceeded the timeout
            PaymentRejected: peer answered 402
            HttpError: any other non-2xx status
            NetworkError: connection-level failure or non-JSON body
        """
        envelope = PaymentEnvelope.from_authorization(authorization, self.network)
        headers = {
            "Content-Type": "application/json",
            PAYMENT_HEADER: encode_payment_header(envelope),
        }

        response = await _request(
            self._client,
            method.upper(),
            endpoint,
            timeout=self.timeout,
            headers=headers,
            json=body,
        )
        _raise_for_status(response)

        settlement = None
        if PAYMENT_RESPONSE_HEADER in response.headers:
            settlement = decode_settlement_header(response.headers[PAYMENT_RESPONSE_HEADER])

        return PaidResponse(response.status_code, _json_body(response), settlement)


# =============================================================================
# FACILITATOR (external verifier)
# =============================================================================

class FacilitatorClient:
    """HTTP client for the facilitator's /verify and /settle endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = FACILITATOR_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def health(self) -> bool:
        """Check whether the facilitator answers at all."""
        try:
            response = await _request(self._client, "GET", self.base_url, timeout=self.timeout)
        except NetworkError as e:
            logger.error(f"Facilitator unavailable: {e}")
            return False
        return response.is_success

    async def verify(
        self,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> VerifyResult:
        data = await self._post("/verify", envelope, requirements)
        try:
            return VerifyResult.model_validate(data)
        except pydantic.ValidationError as e:
            raise NetworkError(f"Unexpected /verify response: {e.error_count()} errors") from e

    async def settle(
        self,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> SettleResult:
        data = await self._post("/settle", envelope, requirements)
        try:
            return SettleResult.model_validate(data)
        except pydantic.ValidationError as e:
            raise NetworkError(f"Unexpected /settle response: {e.error_count()} errors") from e

    async def _post(
        self,
        path: str,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> Any:
        payload = {
            "x402Version": X402_VERSION,
            "paymentPayload": envelope.to_wire(),
            "paymentRequirements": requirements.to_wire(),
        }
        response = await _request(
            self._client,
            "POST",
            f"{self.base_url}{path}",
            timeout=self.timeout,
            json=payload,
        )
        _raise_for_status(response)
        return _json_body(response)


# =============================================================================
# PAID CLIENT
# =============================================================================

class PaidClient:
    """
    Calls other agents' paid endpoints.

    Every call builds a fresh authorization (new nonce) and sends it once.
    """

    def __init__(
        self,
        builder: PaymentAuthorizationBuilder,
        transport: PaymentTransport,
        facilitator: FacilitatorClient | None = None,
    ) -> None:
        self.builder = builder
        self.transport = transport
        self.facilitator = facilitator

    @classmethod
    def from_config(cls, config: AgentConfig) -> "PaidClient":
        return cls(
            builder=PaymentAuthorizationBuilder.from_config(config),
            transport=PaymentTransport(config.network, timeout=config.request_timeout_seconds),
            facilitator=FacilitatorClient(config.facilitator_url),
        )

    async def close(self) -> None:
        await self.transport.close()
        if self.facilitator:
            await self.facilitator.close()

    async def call_protected_endpoint(
        self,
        url: str,
        method: str,
        data: Any,
        amount: int | float | str | Decimal = Decimal("0.01"),
    ) -> Any:
        """
        Pay `amount` and call `url`.

        Returns the decoded JSON body. Errors propagate after being logged.
        """
        authorization = self.builder.build(amount)
        try:
            response = await self.transport.send(url, method, data, authorization)
        except PaymentRejected as e:
            logger.warning(f"Payment rejected by {url}: {e.body}")
            raise
        except NetworkError as e:
            logger.error(f"Error calling protected endpoint {url}: {e}")
            raise

        if response.settlement and response.settlement.transaction:
            logger.info(f"Payment settled for {url}: {response.settlement.transaction}")

        return response.data

    async def call_agent_guide(
        self,
        agent_url: str,
        request: dict[str, Any],
        amount: int | float | str | Decimal = Decimal("0.01"),
    ) -> Any:
        """Ask another agent's paid /a2a/guide endpoint."""
        return await self.call_protected_endpoint(
            f"{agent_url.rstrip('/')}/a2a/guide",
            "POST",
            request,
            amount,
        )

    async def check_facilitator(self) -> bool:
        if self.facilitator is None:
            return False
        return await self.facilitator.health()
