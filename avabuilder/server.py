"""
AvaBuilder Agent Server

HTTP surface of the agent. Every request passes the sliding-window limiter
first; paid routes then pass the payment gate before their handler runs.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .cache import TTLCache
from .chain import RegistryReader
from .errors import NetworkError, RateLimited, ValidationError
from .market import MarketData
from .mcp import internal_error, MarketToolServer
from .transforms import format_tvl
from .transport import FacilitatorClient, encode_settlement_header
from .types import (
    ADDRESS_RE,
    AgentConfig,
    GateState,
    PAYMENT_HEADER,
    PAYMENT_RESPONSE_HEADER,
    RegistryReadResult,
)
from .verification import PaymentGate, SlidingWindowLimiter, payment_required_body

logger = logging.getLogger(__name__)

AGENT_NAME = "AvaBuilder Agent"
AGENT_VERSION = "2.1.0"

GUIDE_PATH = "/a2a/guide"

CAPABILITIES = [
    "l1-creation",
    "validator-nodes",
    "smart-contracts",
    "defi-building",
    "cross-chain",
    "nft-collections",
    "gaming-chains",
    "rwa-tokenization",
]


class GuideService(Protocol):
    """Answers builder questions for the paid guide route."""

    async def answer(
        self,
        question: str,
        *,
        topic: Optional[str] = None,
        level: str = "beginner",
        context: Optional[str] = None,
    ) -> dict[str, Any]: ...


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status)


def client_key(request: Request) -> str:
    """Rate limit key: forwarded client IP, falling back to the peer address."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host
    return "unknown"


def create_app(
    config: AgentConfig,
    *,
    limiter: Optional[SlidingWindowLimiter] = None,
    gate: Optional[PaymentGate] = None,
    market: Optional[MarketData] = None,
    registry: Optional[RegistryReader] = None,
    guide: Optional[GuideService] = None,
) -> FastAPI:
    """
    Build the agent application.

    Collaborators are constructed from `config` unless injected, so tests can
    pass isolated instances per case.
    """
    # An empty limiter is falsy (__len__), so test for None explicitly
    if limiter is None:
        limiter = SlidingWindowLimiter(
            config.rate_limit_max_requests,
            config.rate_limit_window_seconds,
        )
    if market is None:
        market = MarketData(config.cache_ttl)

    registry_cache: Optional[TTLCache[RegistryReadResult]] = None
    if registry is None and config.rpc_url:
        registry_cache = TTLCache(config.cache_ttl.registry, name="registry")
        registry = RegistryReader.from_rpc(config.rpc_url, registry_cache)

    facilitator: Optional[FacilitatorClient] = None
    if gate is None:
        facilitator = FacilitatorClient(config.facilitator_url)
        gate = PaymentGate.from_config(config, facilitator)

    if not gate.is_protected(GUIDE_PATH):
        gate.protect(GUIDE_PATH, config.guide_price, f"{AGENT_NAME} - AI builder guide for Avalanche")

    tools = MarketToolServer(market)

    caches = list(market.caches)
    if registry_cache is not None:
        caches.append(registry_cache)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        for cache in caches:
            await cache.start_sweep(config.sweep_interval_seconds)
        await limiter.start_compaction(config.sweep_interval_seconds)
        logger.info(f"{AGENT_NAME} v{AGENT_VERSION} started on network {config.network}")
        try:
            yield
        finally:
            await limiter.stop()
            for cache in caches:
                await cache.stop()
            await market.close()
            if facilitator is not None:
                await facilitator.close()
            logger.info(f"{AGENT_NAME} shutdown complete")

    app = FastAPI(title=AGENT_NAME, version=AGENT_VERSION, lifespan=lifespan)
    app.state.config = config
    app.state.limiter = limiter
    app.state.gate = gate
    app.state.market = market
    app.state.registry = registry
    app.state.tools = tools

    # ---------- Middleware (last added runs first) ----------

    @app.middleware("http")
    async def payment_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        path = request.url.path
        if request.method == "OPTIONS" or not gate.is_protected(path):
            return await call_next(request)

        decision = await gate.authorize(path, request.headers.get(PAYMENT_HEADER), str(request.url))
        if not decision.allowed:
            return JSONResponse(payment_required_body(decision), status_code=402)

        response = await call_next(request)
        if response.status_code >= 400:
            # Handler failed; the authorization is left unsettled
            return response

        settled = await gate.settle(decision)
        if settled.state != GateState.SETTLED or settled.settlement is None:
            return JSONResponse(payment_required_body(settled), status_code=402)

        response.headers[PAYMENT_RESPONSE_HEADER] = encode_settlement_header(settled.settlement)
        return response

    @app.middleware("http")
    async def rate_limit_middleware(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        key = client_key(request)
        try:
            limiter.acquire(key)
        except RateLimited as e:
            logger.info(f"Rate limit exceeded for {key}")
            response = _error(429, "Rate limit exceeded. Try again later.")
            response.headers["Retry-After"] = str(math.ceil(e.retry_after or 1))
            return response
        return await call_next(request)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", PAYMENT_HEADER],
        expose_headers=[PAYMENT_RESPONSE_HEADER],
    )

    # ---------- Free routes ----------

    @app.get("/")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "agent": AGENT_NAME,
            "version": AGENT_VERSION,
            "network": config.network,
            "a2a": f"{GUIDE_PATH} (x402 paid - agent-to-agent)",
            "capabilities": CAPABILITIES,
        }

    @app.get("/agents/discover")
    async def discover_agents() -> Response:
        if registry is None or config.registry_address is None:
            return _error(503, "Registry discovery is not configured")

        try:
            result = await registry.walk(config.registry_address)
        except NetworkError as e:
            logger.error(f"Agent discovery failed: {e}")
            return _error(500, str(e))

        return JSONResponse({
            "success": True,
            "registry": result.registry_address,
            "network": config.network,
            "agents": len(result.entries),
            "agentsList": [e.model_dump(by_alias=True) for e in result.entries],
            "skipped": result.skipped_ids,
        })

    @app.get("/api/market")
    async def market_overview() -> dict[str, Any]:
        price = await market.get_avalanche_price()
        return {
            "success": True,
            "timestamp": _now(),
            "avax": {"priceUsd": price.usd, "change24h": price.usd_24h_change} if price else None,
        }

    @app.get("/api/defi")
    async def defi_overview() -> dict[str, Any]:
        metrics = await market.get_avalanche_metrics()
        return {
            "success": True,
            "timestamp": _now(),
            "totalTVL": metrics.total_tvl,
            "totalTVLFormatted": format_tvl(metrics.total_tvl),
            "protocolCount": metrics.protocol_count,
            "topProtocols": [
                {
                    "name": p.name,
                    "tvl": p.tvl,
                    "tvlFormatted": format_tvl(p.tvl),
                    "category": p.category,
                }
                for p in metrics.top_protocols
            ],
        }

    @app.get("/api/avax-defi")
    async def avax_defi() -> dict[str, Any]:
        protocols = await market.get_avalanche_defi_protocols()
        return {
            "success": True,
            "timestamp": _now(),
            "count": len(protocols),
            "protocols": [p.model_dump() for p in protocols],
        }

    @app.get("/api/token/{address}")
    async def token_info(address: str) -> Response:
        if not ADDRESS_RE.match(address):
            return _error(400, "Invalid address format. Expected 0x followed by 40 hex characters.")

        pairs, search = await asyncio.gather(
            market.get_dex_pairs(address),
            market.search_token(address),
        )
        top = pairs[0] if pairs else None
        return JSONResponse({
            "success": True,
            "timestamp": _now(),
            "address": address,
            "dex": {
                "name": top.base_token.name,
                "symbol": top.base_token.symbol,
                "priceUsd": top.price_usd,
                "volume24h": top.volume.h24,
                "liquidity": top.liquidity.usd,
                "fdv": top.fdv,
                "dexId": top.dex_id,
                "pairAddress": top.pair_address,
            } if top else None,
            "pairsCount": len(pairs),
            "coingecko": search[0].model_dump() if search else None,
        })

    @app.get("/api/pairs/{address}")
    async def token_pairs(address: str) -> Response:
        if not ADDRESS_RE.match(address):
            return _error(400, "Invalid address format. Expected 0x followed by 40 hex characters.")

        pairs = await market.get_dex_pairs(address)
        return JSONResponse({
            "success": True,
            "timestamp": _now(),
            "address": address,
            "pairsCount": len(pairs),
            "pairs": [
                {
                    "dex": p.dex_id,
                    "pair": f"{p.base_token.symbol}/{p.quote_token.symbol}",
                    "priceUsd": p.price_usd,
                    "volume24h": p.volume.h24,
                    "liquidity": p.liquidity.usd,
                    "pairAddress": p.pair_address,
                }
                for p in pairs[:20]
            ],
        })

    @app.get("/api/top-pairs")
    async def top_pairs() -> dict[str, Any]:
        pairs = await market.get_avalanche_top_pairs()
        return {
            "success": True,
            "timestamp": _now(),
            "count": len(pairs),
            "pairs": [
                {
                    "dex": p.dex_id,
                    "pair": f"{p.base_token.symbol}/{p.quote_token.symbol}",
                    "priceUsd": p.price_usd,
                    "volume24h": p.volume.h24,
                    "liquidity": p.liquidity.usd,
                    "fdv": p.fdv,
                    "pairAddress": p.pair_address,
                    "tradeUrl": f"https://dexscreener.com/avalanche/{p.pair_address}",
                }
                for p in pairs
            ],
        }

    @app.get("/api/l1s")
    async def avalanche_l1s() -> dict[str, Any]:
        subnets = await market.get_avalanche_l1s()
        l1s = []
        for s in subnets:
            chain = s.blockchains[0] if s.blockchains else None
            name = chain.blockchain_name if chain else "Unknown"
            explorer_slug = re.sub(r"\s+", "-", name.lower()) if chain else "c-chain"
            l1s.append({
                "name": name,
                "subnetId": s.subnet_id,
                "blockchainId": chain.blockchain_id if chain else "",
                "evmChainId": chain.evm_chain_id if chain else None,
                "isL1": s.is_l1,
                "chainsCount": len(s.blockchains),
                "createdAt": datetime.fromtimestamp(s.create_block_timestamp, timezone.utc).isoformat(),
                "explorerUrl": f"https://subnets.avax.network/{explorer_slug}",
                "hasValidatorManager": s.l1_validator_manager_details is not None,
            })
        return {"success": True, "timestamp": _now(), "count": len(l1s), "l1s": l1s}

    # ---------- MCP (JSON-RPC over POST) ----------

    @app.post("/mcp")
    async def mcp_route(request: Request) -> Response:
        try:
            body = await request.json()
            return JSONResponse(await tools.handle_request(body))
        except Exception as e:
            logger.error(f"MCP request failed: {e}")
            return JSONResponse(internal_error(), status_code=500)

    # ---------- Paid routes (agent-to-agent) ----------

    @app.post(GUIDE_PATH)
    async def guide_route(request: Request) -> Response:
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be JSON")

        if not isinstance(body, dict) or not body.get("question"):
            return _error(400, "Field 'question' is required")

        if guide is None:
            return _error(503, "Guide service is not configured")

        try:
            answer = await guide.answer(
                body["question"],
                topic=body.get("topic"),
                level=body.get("level") or "beginner",
                context=body.get("context"),
            )
        except ValidationError as e:
            return _error(400, str(e))

        return JSONResponse({
            "success": True,
            "agent": AGENT_NAME,
            "timestamp": _now(),
            **answer,
        })

    return app
