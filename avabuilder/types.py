"""
AvaBuilder Agent Types

Payment authorization artifacts, x402 wire envelopes, on-chain read results,
upstream market data results, and agent configuration.

Every payload arriving from the network (facilitator, JSON-RPC, third-party
HTTP APIs) is validated into one of these models at the boundary.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Literal, Optional

from eth_utils import is_address, to_checksum_address
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .transforms import parse_usd_price, TransformError

X402_VERSION = 1
PAYMENT_HEADER = "X-PAYMENT"
PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def checksum_address(value: str) -> str:
    """Validate a 20-byte hex address and return its checksum form."""
    if not isinstance(value, str) or not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return to_checksum_address(value)


# =============================================================================
# PAYMENT AUTHORIZATION
# =============================================================================

class PaymentAuthorization(BaseModel):
    """
    Signed ERC-3009 style transfer authorization.

    "payer approves payee to pull up to `amount` of `asset_address`,
    redeemable only within [valid_after, valid_before], once, by `nonce`."

    Immutable: the signature covers every other field, so a new
    authorization is built per call.
    """

    model_config = ConfigDict(frozen=True)

    payer_address: str
    payee_address: str
    asset_address: str
    amount: int  # smallest asset unit
    valid_after: int  # unix seconds
    valid_before: int  # unix seconds
    nonce: str  # 0x-prefixed 32-byte hex
    signature: str  # 0x-prefixed 65-byte hex

    @field_validator("payer_address", "payee_address", "asset_address")
    @classmethod
    def _validate_address(cls, v: str) -> str:
        return checksum_address(v)

    @model_validator(mode="after")
    def _validate_window(self) -> "PaymentAuthorization":
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if self.valid_before <= self.valid_after:
            raise ValueError("valid_before must be after valid_after")
        return self


class TransferPayload(BaseModel):
    """The signed fields as carried on the wire."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    scheme: Literal["exact"] = "exact"
    network: str
    asset: str
    from_address: str = Field(alias="from")
    to_address: str = Field(alias="to")
    amount: str
    valid_after: int = Field(alias="validAfter")
    valid_before: int = Field(alias="validBefore")
    nonce: str


class SignedPayload(BaseModel):
    """Signature plus the transfer fields it covers."""

    model_config = ConfigDict(frozen=True)

    signature: str
    payload: TransferPayload


class PaymentEnvelope(BaseModel):
    """
    JSON envelope carried base64-encoded in the X-PAYMENT header.

    {x402Version, payload: {signature, payload: {...}}, network, asset, amount}
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    protocol_version: int = Field(default=X402_VERSION, alias="x402Version")
    payload: SignedPayload
    network: str
    asset: str
    amount: str

    @classmethod
    def from_authorization(
        cls,
        authorization: PaymentAuthorization,
        network: str,
    ) -> "PaymentEnvelope":
        """Wrap a signed authorization with its protocol metadata."""
        amount = str(authorization.amount)
        transfer = TransferPayload(
            network=network,
            asset=authorization.asset_address,
            from_address=authorization.payer_address,
            to_address=authorization.payee_address,
            amount=amount,
            valid_after=authorization.valid_after,
            valid_before=authorization.valid_before,
            nonce=authorization.nonce,
        )
        return cls(
            payload=SignedPayload(signature=authorization.signature, payload=transfer),
            network=network,
            asset=authorization.asset_address,
            amount=amount,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# =============================================================================
# PAYMENT REQUIREMENTS & FACILITATOR RESULTS
# =============================================================================

class PaymentRequirements(BaseModel):
    """What a paid route accepts (x402 v1 `accepts` entry)."""

    model_config = ConfigDict(populate_by_name=True)

    scheme: Literal["exact"] = "exact"
    network: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    resource: str
    description: str = ""
    mime_type: str = Field(default="application/json", alias="mimeType")
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(default=60, alias="maxTimeoutSeconds")
    asset: str
    extra: Optional[dict[str, Any]] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class VerifyResult(BaseModel):
    """Facilitator /verify response."""

    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(default=None, alias="invalidReason")
    payer: Optional[str] = None


class SettleResult(BaseModel):
    """Facilitator /settle response."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    transaction: Optional[str] = None
    network: Optional[str] = None
    payer: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# PAYMENT GATE
# =============================================================================

class GateState(str, Enum):
    """Inbound payment gate states."""

    UNAUTHENTICATED = "unauthenticated"
    PENDING_VERIFICATION = "pending_verification"
    AUTHORIZED = "authorized"
    SETTLED = "settled"
    REJECTED = "rejected"


class DenialCode(str, Enum):
    """Why the gate rejected a request."""

    PAYMENT_MISSING = "payment_missing"
    PAYMENT_MALFORMED = "payment_malformed"
    PAYMENT_MISMATCH = "payment_mismatch"
    PAYMENT_INVALID = "payment_invalid"
    FACILITATOR_UNAVAILABLE = "facilitator_unavailable"
    SETTLEMENT_FAILED = "settlement_failed"


class Denial(BaseModel):
    """Denial information when the gate rejects."""

    code: DenialCode
    message: str


class GateDecision(BaseModel):
    """Outcome of running a request through the payment gate."""

    state: GateState
    requirements: PaymentRequirements
    envelope: Optional[PaymentEnvelope] = None
    denial: Optional[Denial] = None
    settlement: Optional[SettleResult] = None

    @property
    def allowed(self) -> bool:
        return self.state == GateState.AUTHORIZED


# =============================================================================
# ON-CHAIN READS
# =============================================================================

class RegistryEntry(BaseModel):
    """Read-only snapshot of one registered agent."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int = Field(alias="agentId")
    metadata_locator: str = Field(alias="metadataURI")
    owner_address: str = Field(alias="owner")

    @field_validator("owner_address")
    @classmethod
    def _validate_owner(cls, v: str) -> str:
        return checksum_address(v)


class RegistryReadResult(BaseModel):
    """One discovery walk over the registry."""

    registry_address: str
    total_supply: int
    entries: list[RegistryEntry] = Field(default_factory=list)
    # Identifiers walked but unreadable (burned or removed mid-walk)
    skipped_ids: list[int] = Field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.skipped_ids)


class AssetMetadataResult(BaseModel):
    """Fungible asset metadata (and optionally a holder balance)."""

    address: str
    name: str
    symbol: str
    decimals: int
    holder: Optional[str] = None
    balance: Optional[int] = None


# =============================================================================
# UPSTREAM MARKET DATA
# =============================================================================

class TokenPrice(BaseModel):
    """CoinGecko simple price."""

    usd: float
    usd_24h_change: Optional[float] = None


class TokenSearchResult(BaseModel):
    """CoinGecko search hit."""

    id: str
    name: str
    symbol: str
    market_cap_rank: Optional[int] = None
    thumb: str = ""


class ChainTVL(BaseModel):
    """DeFiLlama /v2/chains entry."""

    name: str
    tvl: float = 0.0
    token_symbol: Optional[str] = Field(default=None, alias="tokenSymbol")


class DeFiLlamaProtocol(BaseModel):
    """DeFiLlama /protocols entry."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    chain: Optional[str] = None
    chains: list[str] = Field(default_factory=list)
    tvl: Optional[float] = None
    category: Optional[str] = None
    chain_tvls: dict[str, float] = Field(default_factory=dict, alias="chainTvls")
    change_1d: Optional[float] = None
    change_7d: Optional[float] = None

    @field_validator("chain_tvls", mode="before")
    @classmethod
    def _numeric_tvls(cls, v: Any) -> dict[str, float]:
        # chainTvls mixes numbers with nested breakdowns; keep the numbers
        if not isinstance(v, dict):
            return {}
        return {k: val for k, val in v.items() if isinstance(val, (int, float))}


class ProtocolSummary(BaseModel):
    name: str
    tvl: float
    category: Optional[str] = None


class AvalancheMetrics(BaseModel):
    total_tvl: float
    protocol_count: int
    top_protocols: list[ProtocolSummary]


class AvalancheDeFiProtocol(BaseModel):
    name: str
    tvl: float
    category: str
    change_1d: Optional[float] = None
    change_7d: Optional[float] = None
    logo: str
    url: str


class DexToken(BaseModel):
    address: str
    name: str
    symbol: str


class DexVolume(BaseModel):
    h24: float = 0.0


class DexLiquidity(BaseModel):
    usd: float = 0.0


class DexPair(BaseModel):
    """DEX Screener pair."""

    model_config = ConfigDict(populate_by_name=True)

    chain_id: str = Field(alias="chainId")
    dex_id: str = Field(alias="dexId")
    pair_address: str = Field(alias="pairAddress")
    base_token: DexToken = Field(alias="baseToken")
    quote_token: DexToken = Field(alias="quoteToken")
    price_usd: Optional[str] = Field(default=None, alias="priceUsd")
    volume: DexVolume = Field(default_factory=DexVolume)
    liquidity: DexLiquidity = Field(default_factory=DexLiquidity)
    fdv: Optional[float] = None

    @field_validator("volume", "liquidity", mode="before")
    @classmethod
    def _null_as_empty(cls, v: Any) -> Any:
        # New pairs report null liquidity/volume; treat as zero
        return {} if v is None else v


class SubnetChain(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    blockchain_id: str = Field(alias="blockchainId")
    blockchain_name: str = Field(default="Unknown", alias="blockchainName")
    evm_chain_id: Optional[int] = Field(default=None, alias="evmChainId")


class AvalancheSubnet(BaseModel):
    """Glacier subnet listing entry."""

    model_config = ConfigDict(populate_by_name=True)

    subnet_id: str = Field(alias="subnetId")
    is_l1: bool = Field(default=False, alias="isL1")
    create_block_timestamp: int = Field(default=0, alias="createBlockTimestamp")
    blockchains: list[SubnetChain] = Field(default_factory=list)
    l1_validator_manager_details: Optional[dict[str, Any]] = Field(
        default=None, alias="l1ValidatorManagerDetails"
    )


# =============================================================================
# MCP TOOLS
# =============================================================================

class ToolDefinition(BaseModel):
    """MCP tool definition as listed by tools/list."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_wire(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


# =============================================================================
# AGENT CONFIGURATION
# =============================================================================

class CacheTTLConfig(BaseModel):
    """Per-source cache lifetimes, in seconds."""

    price: float = 120
    dex: float = 120
    protocols: float = 300
    tvl: float = 600
    glacier: float = 180
    registry: float = 60

    @model_validator(mode="after")
    def _positive(self) -> "CacheTTLConfig":
        for name, value in self.model_dump().items():
            if value <= 0:
                raise ValueError(f"cache ttl {name} must be positive")
        return self


class AgentConfig(BaseModel):
    """Configuration for the agent. Endpoints and addresses have no defaults."""

    facilitator_url: str
    asset_address: str
    asset_name: str = "USD Coin"
    asset_version: str = "2"
    asset_decimals: int = 6
    network: str
    chain_id: int

    # Outbound (payer) side
    recipient_address: Optional[str] = None
    private_key: Optional[str] = Field(default=None, repr=False)
    authorization_ttl_seconds: int = 3600
    request_timeout_seconds: float = 30.0

    # Inbound (payee) side
    wallet_address: Optional[str] = None
    guide_price: str = "$0.01"

    # Chain reads
    rpc_url: Optional[str] = None
    registry_address: Optional[str] = None

    # Admission control
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: float = 60.0

    # Caching
    cache_ttl: CacheTTLConfig = Field(default_factory=CacheTTLConfig)
    sweep_interval_seconds: float = 300.0

    host: str = "0.0.0.0"
    port: int = 3000

    @field_validator("facilitator_url")
    @classmethod
    def _validate_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"facilitator_url must be an http(s) URL: {v!r}")
        return v.rstrip("/")

    @field_validator("asset_address")
    @classmethod
    def _validate_asset(cls, v: str) -> str:
        return checksum_address(v)

    @field_validator("recipient_address", "wallet_address", "registry_address")
    @classmethod
    def _validate_optional_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return checksum_address(v)

    @model_validator(mode="after")
    def _validate_limits(self) -> "AgentConfig":
        if self.chain_id <= 0:
            raise ValueError("chain_id must be positive")
        if self.asset_decimals < 0:
            raise ValueError("asset_decimals cannot be negative")
        if self.authorization_ttl_seconds <= 0:
            raise ValueError("authorization_ttl_seconds must be positive")
        if not 0 < self.request_timeout_seconds <= 30:
            raise ValueError("request_timeout_seconds must be in (0, 30]")
        if self.rate_limit_max_requests <= 0:
            raise ValueError("rate_limit_max_requests must be positive")
        if self.rate_limit_window_seconds <= 0:
            raise ValueError("rate_limit_window_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        try:
            parse_usd_price(self.guide_price, self.asset_decimals)
        except TransformError as e:
            raise ValueError(f"guide_price is invalid: {e}") from e
        return self
