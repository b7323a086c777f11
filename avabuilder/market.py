"""
AvaBuilder Agent - Market Data

Free third-party APIs for Avalanche market data:
- DeFiLlama: TVL, protocols
- CoinGecko: prices, token search
- DEX Screener: trading pairs
- Glacier: L1s / subnets

Every accessor consults its TTLCache before going to the network. Upstream
failures are logged and degrade to empty results; they never reach routes
as exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional, TypeVar

import httpx
import pydantic

from .cache import TTLCache
from .types import (
    AvalancheDeFiProtocol,
    AvalancheMetrics,
    AvalancheSubnet,
    CacheTTLConfig,
    ChainTVL,
    DeFiLlamaProtocol,
    DexPair,
    ProtocolSummary,
    TokenPrice,
    TokenSearchResult,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=pydantic.BaseModel)

DEFILLAMA_URL = "https://api.llama.fi"
COINGECKO_URL = "https://api.coingecko.com/api/v3"
DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex"
GLACIER_URL = "https://glacier-api.avax.network/v1"

AVAX_COINGECKO_ID = "avalanche-2"
AVALANCHE_CHAIN = "Avalanche"
DEXSCREENER_CHAIN = "avalanche"
EXCLUDED_CATEGORIES = ("CEX", "Chain")

TOP_PAIR_TOKENS = [
    "0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",  # WAVAX
    "0xB97EF9Ef8734C71904D8002F8b6Bc66Dd9c48a6E",  # USDC
    "0x6e84a6216eA6dACC71eE8E6b0a5B7322EEbC0fDd",  # JOE
    "0x2b2C81e08f1Af8835a78Bb2A90AE924ACE0eA4bE",  # sAVAX
]

GLACIER_PAGE_SIZE = 100
GLACIER_MAX_PAGES = 10


def _slug(name: str) -> str:
    return re.sub(r"\s+", "-", name.lower())


def _parse_list(model: type[M], items: Any) -> list[M]:
    """Validate a JSON array item by item, dropping malformed items."""
    if not isinstance(items, list):
        return []

    parsed = []
    for item in items:
        try:
            parsed.append(model.model_validate(item))
        except pydantic.ValidationError:
            logger.debug(f"Dropping malformed {model.__name__} item")
    return parsed


class MarketData:
    """Cached accessors for upstream market data."""

    def __init__(
        self,
        ttl: CacheTTLConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        ttl = ttl or CacheTTLConfig()
        self._client = client or httpx.AsyncClient()
        self._owns_client = client is None

        self.tvl_cache: TTLCache[float] = TTLCache(ttl.tvl, name="tvl")
        self.protocols_cache: TTLCache[list[DeFiLlamaProtocol]] = TTLCache(ttl.protocols, name="protocols")
        self.price_cache: TTLCache[TokenPrice] = TTLCache(ttl.price, name="price")
        self.dex_cache: TTLCache[list[DexPair]] = TTLCache(ttl.dex, name="dex")
        self.glacier_cache: TTLCache[list[Any]] = TTLCache(ttl.glacier, name="glacier")

    @property
    def caches(self) -> list[TTLCache[Any]]:
        return [
            self.tvl_cache,
            self.protocols_cache,
            self.price_cache,
            self.dex_cache,
            self.glacier_cache,
        ]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(
        self,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        timeout: float = 10.0,
        label: str,
    ) -> Any:
        """GET and decode JSON; None on any failure."""
        try:
            response = await self._client.get(url, params=params, timeout=timeout)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching {label}: {e}")
            return None

        if not response.is_success:
            logger.debug(f"{label} returned HTTP {response.status_code}")
            return None

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Invalid JSON from {label}: {e}")
            return None

    # ========== DeFiLlama ==========

    async def get_avalanche_tvl(self) -> float:
        cached = self.tvl_cache.get("avalanche-tvl")
        if cached is not None:
            return cached

        data = await self._get_json(f"{DEFILLAMA_URL}/v2/chains", timeout=15.0, label="Avalanche TVL")
        if data is None:
            return 0.0

        chains = _parse_list(ChainTVL, data)
        avalanche = next((c for c in chains if c.name.lower() == "avalanche"), None)
        tvl = avalanche.tvl if avalanche else 0.0
        self.tvl_cache.set("avalanche-tvl", tvl)
        return tvl

    async def _get_protocols(self) -> Optional[list[DeFiLlamaProtocol]]:
        data = await self._get_json(f"{DEFILLAMA_URL}/protocols", timeout=15.0, label="DeFiLlama protocols")
        if data is None:
            return None
        return _parse_list(DeFiLlamaProtocol, data)

    async def get_avalanche_protocols(self) -> list[DeFiLlamaProtocol]:
        cached = self.protocols_cache.get("avalanche-protocols")
        if cached is not None:
            return cached

        protocols = await self._get_protocols()
        if protocols is None:
            return []

        avax_protocols = [p for p in protocols if AVALANCHE_CHAIN in p.chains]
        self.protocols_cache.set("avalanche-protocols", avax_protocols)
        return avax_protocols

    async def get_avalanche_metrics(self) -> AvalancheMetrics:
        """Total TVL and top 10 protocols, fetched concurrently."""
        tvl, protocols = await asyncio.gather(
            self.get_avalanche_tvl(),
            self.get_avalanche_protocols(),
        )

        top = sorted(
            (p for p in protocols if (p.category or "") not in EXCLUDED_CATEGORIES),
            key=lambda p: p.tvl or 0,
            reverse=True,
        )[:10]

        return AvalancheMetrics(
            total_tvl=tvl,
            protocol_count=len(protocols),
            top_protocols=[
                ProtocolSummary(name=p.name, tvl=p.tvl or 0, category=p.category)
                for p in top
            ],
        )

    async def get_avalanche_defi_protocols(self) -> list[AvalancheDeFiProtocol]:
        """Top 50 Avalanche DeFi protocols by Avalanche-chain TVL."""
        cache_key = "avax-defi-protocols"
        cached = self.glacier_cache.get(cache_key)
        if cached is not None:
            return cached

        protocols = await self._get_protocols()
        if protocols is None:
            return []

        def chain_tvl(p: DeFiLlamaProtocol) -> float:
            return p.chain_tvls.get(AVALANCHE_CHAIN) or p.tvl or 0

        avax_only = sorted(
            (
                p for p in protocols
                if AVALANCHE_CHAIN in p.chains and (p.category or "") not in EXCLUDED_CATEGORIES
            ),
            key=chain_tvl,
            reverse=True,
        )[:50]

        result = [
            AvalancheDeFiProtocol(
                name=p.name,
                tvl=chain_tvl(p),
                category=p.category or "Other",
                change_1d=p.change_1d,
                change_7d=p.change_7d,
                logo=f"https://icons.llama.fi/icons/protocols/{_slug(p.name)}",
                url=f"https://defillama.com/protocol/{_slug(p.name)}",
            )
            for p in avax_only
        ]

        self.glacier_cache.set(cache_key, result)
        return result

    # ========== CoinGecko (free tier, 30 req/min) ==========

    async def get_token_price(self, token_id: str) -> Optional[TokenPrice]:
        cache_key = f"cg-price:{token_id}"
        cached = self.price_cache.get(cache_key)
        if cached is not None:
            return cached

        data = await self._get_json(
            f"{COINGECKO_URL}/simple/price",
            params={"ids": token_id, "vs_currencies": "usd", "include_24hr_change": "true"},
            label="CoinGecko price",
        )
        if not isinstance(data, dict) or token_id not in data:
            return None

        try:
            price = TokenPrice.model_validate(data[token_id])
        except pydantic.ValidationError:
            logger.error(f"Unexpected CoinGecko price payload for {token_id}")
            return None

        self.price_cache.set(cache_key, price)
        return price

    async def get_avalanche_price(self) -> Optional[TokenPrice]:
        return await self.get_token_price(AVAX_COINGECKO_ID)

    async def search_token(self, query: str) -> list[TokenSearchResult]:
        data = await self._get_json(
            f"{COINGECKO_URL}/search",
            params={"query": query},
            label="CoinGecko search",
        )
        if not isinstance(data, dict):
            return []
        return _parse_list(TokenSearchResult, data.get("coins"))[:10]

    # ========== DEX Screener (free, no key) ==========

    async def _fetch_pairs(self, token_address: str) -> Optional[list[DexPair]]:
        """Avalanche pairs for a token; None when the upstream call failed."""
        data = await self._get_json(
            f"{DEXSCREENER_URL}/tokens/{token_address}",
            label="DEX Screener pairs",
        )
        if not isinstance(data, dict):
            return None
        pairs = _parse_list(DexPair, data.get("pairs"))
        return [p for p in pairs if p.chain_id == DEXSCREENER_CHAIN]

    async def get_dex_pairs(self, token_address: str) -> list[DexPair]:
        cache_key = f"dex-pairs:{token_address}"
        cached = self.dex_cache.get(cache_key)
        if cached is not None:
            return cached

        pairs = await self._fetch_pairs(token_address)
        if pairs is None:
            # Failures are not cached so the next call retries upstream
            return []
        self.dex_cache.set(cache_key, pairs)
        return pairs

    async def get_avalanche_top_pairs(self) -> list[DexPair]:
        """Top 30 Avalanche pairs by 24h volume across the major tokens."""
        cache_key = "avax-top-pairs"
        cached = self.dex_cache.get(cache_key)
        if cached is not None:
            return cached

        results = await asyncio.gather(*(self._fetch_pairs(t) for t in TOP_PAIR_TOKENS))

        seen: set[str] = set()
        all_pairs: list[DexPair] = []
        if all(pairs is None for pairs in results):
            return []

        for pairs in results:
            for pair in pairs or []:
                if pair.pair_address not in seen:
                    seen.add(pair.pair_address)
                    all_pairs.append(pair)

        top = sorted(all_pairs, key=lambda p: p.volume.h24, reverse=True)[:30]
        self.dex_cache.set(cache_key, top)
        return top

    # ========== Glacier / AvaCloud Data API ==========

    async def get_avalanche_l1s(self) -> list[AvalancheSubnet]:
        cache_key = "avalanche-subnets-all"
        cached = self.glacier_cache.get(cache_key)
        if cached is not None:
            return cached

        subnets: list[AvalancheSubnet] = []
        page_token: Optional[str] = None

        for _ in range(GLACIER_MAX_PAGES):
            params = {"pageSize": str(GLACIER_PAGE_SIZE), "sortOrder": "desc"}
            if page_token:
                params["pageToken"] = page_token

            data = await self._get_json(
                f"{GLACIER_URL}/networks/mainnet/subnets",
                params=params,
                timeout=15.0,
                label="Glacier subnets",
            )
            if not isinstance(data, dict):
                break

            subnets.extend(_parse_list(AvalancheSubnet, data.get("subnets")))
            page_token = data.get("nextPageToken")
            if not page_token:
                break

        self.glacier_cache.set(cache_key, subnets)
        return subnets
