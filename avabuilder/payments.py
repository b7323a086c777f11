"""
AvaBuilder Agent - Payment Authorization

Builds signed EIP-712 TransferWithAuthorization artifacts (ERC-3009) so a
peer's facilitator can pull a fixed amount of the asset without the payer
sending an on-chain transaction per call.

Signing is local and synchronous; nothing here touches the network.
"""

from __future__ import annotations

import logging
import secrets
import time
from decimal import Decimal
from typing import Any, Callable

import pydantic
from eth_account import Account
from eth_account.messages import encode_typed_data

from .errors import SigningError, ValidationError
from .transforms import to_atomic_units
from .types import AgentConfig, PaymentAuthorization, checksum_address

logger = logging.getLogger(__name__)


# 256 bits; ERC-3009 nonces are bytes32
NONCE_BYTES = 32

DEFAULT_AUTHORIZATION_TTL_SECONDS = 3600

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

# Field order is part of the signed type hash
TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]


def generate_nonce() -> str:
    """Generate a 32-byte nonce from the OS CSPRNG, 0x-prefixed hex."""
    return "0x" + secrets.token_bytes(NONCE_BYTES).hex()


def build_typed_data(
    *,
    asset_name: str,
    asset_version: str,
    chain_id: int,
    asset_address: str,
    from_address: str,
    to_address: str,
    value: int,
    valid_after: int,
    valid_before: int,
    nonce: str,
) -> dict[str, Any]:
    """
    Build EIP-712 typed data for TransferWithAuthorization.

    The domain binds the signature to one asset contract on one chain.
    """
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": asset_name,
            "version": asset_version,
            "chainId": chain_id,
            "verifyingContract": asset_address,
        },
        "message": {
            "from": from_address,
            "to": to_address,
            "value": value,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": bytes.fromhex(nonce.removeprefix("0x")),
        },
    }


class PaymentAuthorizationBuilder:
    """
    Constructs a fresh signed authorization per outbound paid call.

    Authorizations are single-use by nonce from the verifier's point of
    view: a failed call is retried with a newly built one, never resubmitted.
    """

    def __init__(
        self,
        *,
        private_key: str,
        payee_address: str,
        asset_address: str,
        chain_id: int,
        asset_name: str = "USD Coin",
        asset_version: str = "2",
        asset_decimals: int = 6,
        ttl_seconds: int = DEFAULT_AUTHORIZATION_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        try:
            self._account = Account.from_key(private_key)
        except Exception as e:
            # Never echo key material
            raise SigningError(f"Invalid signing key: {type(e).__name__}") from None

        try:
            self.payee_address = checksum_address(payee_address)
            self.asset_address = checksum_address(asset_address)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be positive")

        self.chain_id = chain_id
        self.asset_name = asset_name
        self.asset_version = asset_version
        self.asset_decimals = asset_decimals
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    @classmethod
    def from_config(cls, config: AgentConfig) -> "PaymentAuthorizationBuilder":
        """Create a builder for the configured payer, payee and asset."""
        if not config.private_key:
            raise SigningError("private_key is not configured")
        if not config.recipient_address:
            raise ValidationError("recipient_address is not configured")

        return cls(
            private_key=config.private_key,
            payee_address=config.recipient_address,
            asset_address=config.asset_address,
            chain_id=config.chain_id,
            asset_name=config.asset_name,
            asset_version=config.asset_version,
            asset_decimals=config.asset_decimals,
            ttl_seconds=config.authorization_ttl_seconds,
        )

    @property
    def payer_address(self) -> str:
        return self._account.address

    def build(self, amount: int | float | str | Decimal) -> PaymentAuthorization:
        """
        Build and sign an authorization for `amount` (human units, e.g. 0.01 USDC).

        Raises:
            ValidationError: amount malformed or not positive
            SigningError: signing failed
        """
        value = to_atomic_units(amount, self.asset_decimals)
        if value <= 0:
            raise ValidationError(f"Amount must be positive: {amount}")

        valid_after = 0
        valid_before = int(self._clock()) + self.ttl_seconds
        nonce = generate_nonce()

        typed_data = build_typed_data(
            asset_name=self.asset_name,
            asset_version=self.asset_version,
            chain_id=self.chain_id,
            asset_address=self.asset_address,
            from_address=self.payer_address,
            to_address=self.payee_address,
            value=value,
            valid_after=valid_after,
            valid_before=valid_before,
            nonce=nonce,
        )

        try:
            signable = encode_typed_data(full_message=typed_data)
            signed = self._account.sign_message(signable)
        except Exception as e:
            raise SigningError(f"Failed to sign authorization: {e}") from e

        try:
            return PaymentAuthorization(
                payer_address=self.payer_address,
                payee_address=self.payee_address,
                asset_address=self.asset_address,
                amount=value,
                valid_after=valid_after,
                valid_before=valid_before,
                nonce=nonce,
                signature="0x" + bytes(signed.signature).hex(),
            )
        except pydantic.ValidationError as e:
            raise ValidationError(str(e)) from e


def recover_signer(
    authorization: PaymentAuthorization,
    *,
    chain_id: int,
    asset_name: str = "USD Coin",
    asset_version: str = "2",
) -> str:
    """Recover the address that signed an authorization."""
    typed_data = build_typed_data(
        asset_name=asset_name,
        asset_version=asset_version,
        chain_id=chain_id,
        asset_address=authorization.asset_address,
        from_address=authorization.payer_address,
        to_address=authorization.payee_address,
        value=authorization.amount,
        valid_after=authorization.valid_after,
        valid_before=authorization.valid_before,
        nonce=authorization.nonce,
    )
    signable = encode_typed_data(full_message=typed_data)
    return Account.recover_message(signable, signature=authorization.signature)
