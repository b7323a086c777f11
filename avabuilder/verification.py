"""
AvaBuilder Agent - Admission & Payment Verification

Two gates run in front of route logic:

1. SlidingWindowLimiter: per-caller admission control, independent of payment.
2. PaymentGate: extracts the X-PAYMENT token and hands it to the external
   facilitator. Protected logic runs only after explicit acceptance.

  Unauthenticated --token well-formed--> PendingVerification
  PendingVerification --facilitator accepts--> Authorized
  Authorized --handler succeeds, settled--> Settled
  any missing/malformed token or rejection --> Rejected
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from typing import Any, Callable, Optional

from .errors import HttpError, NetworkError, PaymentRejected, RateLimited, ValidationError
from .transforms import parse_usd_price
from .transport import FacilitatorClient, decode_payment_header
from .types import (
    AgentConfig,
    Denial,
    DenialCode,
    GateDecision,
    GateState,
    PaymentEnvelope,
    PaymentRequirements,
    X402_VERSION,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RATE LIMITER (LOCAL, IN-MEMORY)
# =============================================================================

class SlidingWindowLimiter:
    """
    In-memory per-key rate limiter.

    Uses sliding window algorithm: at most `max_requests` admitted per
    trailing `window_seconds`. Keys are independent; there is no
    prioritization between callers.
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        # {key: admitted timestamps, oldest first}
        self._windows: dict[str, deque[float]] = {}
        self._compaction_task: asyncio.Task[None] | None = None
        self._running = False

    def __len__(self) -> int:
        return len(self._windows)

    def _trim(self, window: deque[float], now: float) -> None:
        # An entry whose age equals the window exactly is already out
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    def is_allowed(self, key: str) -> bool:
        """
        Check and record one request for `key`.

        Returns True if admitted. Only admitted requests occupy a slot.
        """
        now = self._clock()
        window = self._windows.setdefault(key, deque())
        self._trim(window, now)

        if len(window) >= self.max_requests:
            return False

        window.append(now)
        return True

    def acquire(self, key: str) -> None:
        """
        Admit one request for `key` or raise.

        Raises:
            RateLimited: the key has no free slot in the current window
        """
        if not self.is_allowed(key):
            raise RateLimited(key, retry_after=self.retry_after(key))

    def retry_after(self, key: str) -> float:
        """Seconds until `key` regains a slot (0 if it has one now)."""
        window = self._windows.get(key)
        if not window:
            return 0.0

        now = self._clock()
        self._trim(window, now)
        if len(window) < self.max_requests:
            return 0.0

        return max(0.0, window[0] + self.window_seconds - now)

    def compact(self) -> int:
        """
        Drop aged-out timestamps and keys with no remaining history.

        Returns number of keys removed.
        """
        now = self._clock()
        empty = []
        for key, window in self._windows.items():
            self._trim(window, now)
            if not window:
                empty.append(key)

        for key in empty:
            self._windows.pop(key, None)

        return len(empty)

    def reset(self) -> None:
        """Reset all rate limit state."""
        self._windows.clear()

    async def start_compaction(self, interval_seconds: float) -> None:
        """Start the periodic compaction task."""
        if self._running:
            return

        self._running = True
        self._compaction_task = asyncio.create_task(self._compaction_loop(interval_seconds))

    async def stop(self) -> None:
        """Stop periodic compaction."""
        self._running = False
        if self._compaction_task:
            self._compaction_task.cancel()
            try:
                await self._compaction_task
            except asyncio.CancelledError:
                pass
            self._compaction_task = None

    async def _compaction_loop(self, interval_seconds: float) -> None:
        while self._running:
            await asyncio.sleep(interval_seconds)
            removed = self.compact()
            if removed:
                logger.debug(f"Compacted {removed} idle rate limit keys")


# =============================================================================
# PAYMENT GATE
# =============================================================================

class PaymentGate:
    """
    Server-side gate for paid routes.

    Holds the price of each protected route and delegates every
    verification and settlement decision to the facilitator. Nothing is
    cached between requests: each call needs its own fresh authorization.
    """

    def __init__(
        self,
        facilitator: FacilitatorClient,
        *,
        pay_to: str,
        network: str,
        asset_address: str,
        asset_name: str = "USD Coin",
        asset_version: str = "2",
        asset_decimals: int = 6,
        max_timeout_seconds: int = 60,
    ) -> None:
        self.facilitator = facilitator
        self.pay_to = pay_to
        self.network = network
        self.asset_address = asset_address
        self.asset_name = asset_name
        self.asset_version = asset_version
        self.asset_decimals = asset_decimals
        self.max_timeout_seconds = max_timeout_seconds
        # {path: (atomic price, description)}
        self._routes: dict[str, tuple[int, str]] = {}

    @classmethod
    def from_config(cls, config: AgentConfig, facilitator: FacilitatorClient) -> "PaymentGate":
        if not config.wallet_address:
            raise ValidationError("wallet_address is required to serve paid routes")

        return cls(
            facilitator,
            pay_to=config.wallet_address,
            network=config.network,
            asset_address=config.asset_address,
            asset_name=config.asset_name,
            asset_version=config.asset_version,
            asset_decimals=config.asset_decimals,
        )

    def protect(self, path: str, price: str, description: str = "") -> None:
        """
        Require payment of `price` (e.g. "$0.01") for `path`.

        Raises:
            TransformError: price is malformed or not positive
        """
        self._routes[path] = (parse_usd_price(price, self.asset_decimals), description)

    def is_protected(self, path: str) -> bool:
        return path in self._routes

    def requirements_for(self, path: str, resource: str) -> PaymentRequirements:
        amount, description = self._routes[path]
        return PaymentRequirements(
            network=self.network,
            max_amount_required=str(amount),
            resource=resource,
            description=description,
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=self.asset_address,
            extra={"name": self.asset_name, "version": self.asset_version},
        )

    def _reject(
        self,
        requirements: PaymentRequirements,
        code: DenialCode,
        message: str,
        envelope: Optional[PaymentEnvelope] = None,
    ) -> GateDecision:
        logger.warning(f"Payment rejected for {requirements.resource}: {code.value} ({message})")
        return GateDecision(
            state=GateState.REJECTED,
            requirements=requirements,
            envelope=envelope,
            denial=Denial(code=code, message=message),
        )

    def _mismatch(
        self,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> Optional[str]:
        """Reason the envelope cannot satisfy `requirements`, checked before the facilitator."""
        transfer = envelope.payload.payload
        if envelope.network != requirements.network:
            return f"Network {envelope.network} does not match {requirements.network}"
        if transfer.asset.lower() != requirements.asset.lower():
            return f"Asset {transfer.asset} is not accepted"
        if transfer.to_address.lower() != requirements.pay_to.lower():
            return f"Payment is addressed to {transfer.to_address}, not {requirements.pay_to}"

        try:
            amount = int(transfer.amount)
        except ValueError:
            return f"Invalid amount: {transfer.amount!r}"
        if amount < int(requirements.max_amount_required):
            return f"Amount {amount} is below the required {requirements.max_amount_required}"

        return None

    async def authorize(
        self,
        path: str,
        header: Optional[str],
        resource: str,
    ) -> GateDecision:
        """
        Run the X-PAYMENT header through the gate.

        Returns an AUTHORIZED decision only if the facilitator explicitly
        accepted the payment; otherwise REJECTED with a denial.
        """
        requirements = self.requirements_for(path, resource)

        # Unauthenticated
        if not header:
            return self._reject(requirements, DenialCode.PAYMENT_MISSING, "X-PAYMENT header is required")

        try:
            envelope = decode_payment_header(header)
        except ValidationError as e:
            return self._reject(requirements, DenialCode.PAYMENT_MALFORMED, str(e))

        mismatch = self._mismatch(envelope, requirements)
        if mismatch:
            return self._reject(requirements, DenialCode.PAYMENT_MISMATCH, mismatch, envelope)

        # PendingVerification
        try:
            result = await self.facilitator.verify(envelope, requirements)
        except (PaymentRejected, HttpError) as e:
            if e.status >= 500:
                return self._reject(
                    requirements, DenialCode.FACILITATOR_UNAVAILABLE, f"Verification failed: {e}", envelope
                )
            # The facilitator looked at the payment and declined it
            return self._reject(
                requirements,
                DenialCode.PAYMENT_INVALID,
                _declined_reason(e.body, "Payment verification failed"),
                envelope,
            )
        except NetworkError as e:
            return self._reject(
                requirements, DenialCode.FACILITATOR_UNAVAILABLE, f"Verification failed: {e}", envelope
            )

        if not result.is_valid:
            return self._reject(
                requirements,
                DenialCode.PAYMENT_INVALID,
                result.invalid_reason or "Payment verification failed",
                envelope,
            )

        return GateDecision(
            state=GateState.AUTHORIZED,
            requirements=requirements,
            envelope=envelope,
        )

    async def settle(self, decision: GateDecision) -> GateDecision:
        """Settle an authorized payment after the handler succeeded."""
        if decision.state != GateState.AUTHORIZED or decision.envelope is None:
            raise ValueError("Only authorized decisions can be settled")

        try:
            settlement = await self.facilitator.settle(decision.envelope, decision.requirements)
        except (PaymentRejected, HttpError) as e:
            reason = f"Settlement failed: {e}"
            if e.status < 500:
                reason = _declined_reason(e.body, "Settlement failed")
            return self._reject(decision.requirements, DenialCode.SETTLEMENT_FAILED, reason, decision.envelope)
        except NetworkError as e:
            return self._reject(
                decision.requirements, DenialCode.SETTLEMENT_FAILED, f"Settlement failed: {e}", decision.envelope
            )

        if not settlement.success:
            return self._reject(
                decision.requirements,
                DenialCode.SETTLEMENT_FAILED,
                settlement.error_reason or "Settlement failed",
                decision.envelope,
            )

        return decision.model_copy(update={"state": GateState.SETTLED, "settlement": settlement})


def _declined_reason(body: str, default: str) -> str:
    """Reason from a facilitator 4xx body such as {"isValid": false, "invalidReason": ...}."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip() or default

    if isinstance(data, dict):
        for key in ("invalidReason", "errorReason", "error"):
            if data.get(key):
                return str(data[key])
    return default


def payment_required_body(decision: GateDecision) -> dict[str, Any]:
    """x402 402 response body for a rejected decision."""
    return {
        "x402Version": X402_VERSION,
        "error": decision.denial.message if decision.denial else "Payment required",
        "accepts": [decision.requirements.to_wire()],
    }
