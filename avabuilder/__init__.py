"""
AvaBuilder Agent

Paid agent-to-agent endpoints on Avalanche with x402 payment authorizations.
"""

__version__ = "2.1.0"

from .cache import CacheEntry, TTLCache
from .chain import AssetReader, RegistryReader, Web3Contracts
from .errors import (
    AgentError,
    HttpError,
    NetworkError,
    PaymentRejected,
    RateLimited,
    RegistryUnavailable,
    RequestTimeoutError,
    SigningError,
    ValidationError,
)
from .market import MarketData
from .mcp import MarketToolServer
from .payments import (
    PaymentAuthorizationBuilder,
    build_typed_data,
    generate_nonce,
    recover_signer,
)
from .transforms import (
    format_tvl,
    parse_usd_price,
    to_atomic_units,
    transform_to_canonical,
    TransformError,
)
from .transport import (
    decode_payment_header,
    encode_payment_header,
    FacilitatorClient,
    PaidClient,
    PaidResponse,
    PaymentTransport,
)
from .types import (
    AgentConfig,
    AssetMetadataResult,
    CacheTTLConfig,
    Denial,
    DenialCode,
    GateDecision,
    GateState,
    PaymentAuthorization,
    PaymentEnvelope,
    PaymentRequirements,
    RegistryEntry,
    RegistryReadResult,
    SettleResult,
    ToolDefinition,
    VerifyResult,
)
from .verification import PaymentGate, SlidingWindowLimiter, payment_required_body

__all__ = [
    # Cache
    "CacheEntry",
    "TTLCache",
    # Chain
    "AssetReader",
    "RegistryReader",
    "Web3Contracts",
    # Errors
    "AgentError",
    "HttpError",
    "NetworkError",
    "PaymentRejected",
    "RateLimited",
    "RegistryUnavailable",
    "RequestTimeoutError",
    "SigningError",
    "ValidationError",
    # Market data
    "MarketData",
    # MCP
    "MarketToolServer",
    # Payments
    "PaymentAuthorizationBuilder",
    "build_typed_data",
    "generate_nonce",
    "recover_signer",
    # Transforms
    "format_tvl",
    "parse_usd_price",
    "to_atomic_units",
    "transform_to_canonical",
    "TransformError",
    # Transport
    "decode_payment_header",
    "encode_payment_header",
    "FacilitatorClient",
    "PaidClient",
    "PaidResponse",
    "PaymentTransport",
    # Verification
    "PaymentGate",
    "SlidingWindowLimiter",
    "payment_required_body",
    # Types
    "AgentConfig",
    "AssetMetadataResult",
    "CacheTTLConfig",
    "Denial",
    "DenialCode",
    "GateDecision",
    "GateState",
    "PaymentAuthorization",
    "PaymentEnvelope",
    "PaymentRequirements",
    "RegistryEntry",
    "RegistryReadResult",
    "SettleResult",
    "ToolDefinition",
    "VerifyResult",
    # Version
    "__version__",
]
