"""
Market Data Tests

Tests for cached upstream accessors using a mocked HTTP transport.
"""

from __future__ import annotations

import httpx
import pytest

from avabuilder.market import MarketData, TOP_PAIR_TOKENS


# =========================================================================
# TEST FIXTURES
# =========================================================================

CHAINS = [
    {"name": "Ethereum", "tvl": 60_000_000_000},
    {"name": "Avalanche", "tvl": 1_500_000_000, "tokenSymbol": "AVAX"},
]

PROTOCOLS = [
    {
        "name": "Benqi Lending",
        "chains": ["Avalanche"],
        "tvl": 500_000_000,
        "category": "Lending",
        "chainTvls": {"Avalanche": 480_000_000, "Avalanche-borrowed": {"tvl": []}},
        "change_1d": 1.5,
    },
    {
        "name": "Trader Joe",
        "chains": ["Avalanche", "Arbitrum"],
        "tvl": 300_000_000,
        "category": "Dexes",
        "chainTvls": {"Avalanche": 100_000_000},
    },
    {"name": "Binance CEX", "chains": ["Avalanche"], "tvl": 9_000_000_000, "category": "CEX"},
    {"name": "Uniswap", "chains": ["Ethereum"], "tvl": 5_000_000_000, "category": "Dexes"},
    {"chains": ["Avalanche"]},
]


def make_pair(pair_address: str, volume: float, chain_id: str = "avalanche") -> dict:
    return {
        "chainId": chain_id,
        "dexId": "traderjoe",
        "pairAddress": pair_address,
        "baseToken": {"address": TOP_PAIR_TOKENS[0], "name": "Wrapped AVAX", "symbol": "WAVAX"},
        "quoteToken": {"address": TOP_PAIR_TOKENS[1], "name": "USD Coin", "symbol": "USDC"},
        "priceUsd": "24.50",
        "volume": {"h24": volume},
        "liquidity": {"usd": 1_000_000},
    }


class Upstream:
    """Routes mocked requests and counts them per path."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: dict[str, int] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1

        if self.fail:
            return httpx.Response(503, text="unavailable")

        if path == "/v2/chains":
            return httpx.Response(200, json=CHAINS)
        if path == "/protocols":
            return httpx.Response(200, json=PROTOCOLS)
        if path == "/api/v3/simple/price":
            token_id = request.url.params["ids"]
            return httpx.Response(200, json={token_id: {"usd": 24.5, "usd_24h_change": -1.2}})
        if path == "/api/v3/search":
            return httpx.Response(200, json={"coins": [
                {"id": "avalanche-2", "name": "Avalanche", "symbol": "AVAX", "market_cap_rank": 12},
            ]})
        if path.startswith("/latest/dex/tokens/"):
            token = path.rsplit("/", 1)[1]
            index = TOP_PAIR_TOKENS.index(token) if token in TOP_PAIR_TOKENS else 9
            return httpx.Response(200, json={"pairs": [
                make_pair("0xshared", 1_000_000),
                make_pair(f"0xpair{index}", 10_000 * (index + 1)),
                make_pair(f"0xeth{index}", 99_000_000, chain_id="ethereum"),
            ]})
        if path == "/v1/networks/mainnet/subnets":
            if "pageToken" not in request.url.params:
                return httpx.Response(200, json={
                    "subnets": [{"subnetId": "s1", "isL1": True, "blockchains": [
                        {"blockchainId": "b1", "blockchainName": "Dexalot", "evmChainId": 432204},
                    ]}],
                    "nextPageToken": "page-2",
                })
            return httpx.Response(200, json={"subnets": [{"subnetId": "s2"}]})

        return httpx.Response(404)


def make_market(upstream: Upstream) -> MarketData:
    return MarketData(client=httpx.AsyncClient(transport=httpx.MockTransport(upstream)))


# =========================================================================
# DEFILLAMA
# =========================================================================

class TestDeFiLlama:

    @pytest.mark.asyncio
    async def test_avalanche_tvl(self):
        market = make_market(Upstream())
        assert await market.get_avalanche_tvl() == 1_500_000_000

    @pytest.mark.asyncio
    async def test_tvl_cached(self):
        upstream = Upstream()
        market = make_market(upstream)

        await market.get_avalanche_tvl()
        await market.get_avalanche_tvl()

        assert upstream.calls["/v2/chains"] == 1

    @pytest.mark.asyncio
    async def test_tvl_upstream_failure(self):
        market = make_market(Upstream(fail=True))

        assert await market.get_avalanche_tvl() == 0.0
        assert len(market.tvl_cache) == 0

    @pytest.mark.asyncio
    async def test_protocols_filtered_to_avalanche(self):
        protocols = await make_market(Upstream()).get_avalanche_protocols()

        assert [p.name for p in protocols] == ["Benqi Lending", "Trader Joe", "Binance CEX"]

    @pytest.mark.asyncio
    async def test_metrics_exclude_cex(self):
        metrics = await make_market(Upstream()).get_avalanche_metrics()

        assert metrics.total_tvl == 1_500_000_000
        assert metrics.protocol_count == 3
        assert [p.name for p in metrics.top_protocols] == ["Benqi Lending", "Trader Joe"]

    @pytest.mark.asyncio
    async def test_defi_protocols_use_chain_tvl(self):
        protocols = await make_market(Upstream()).get_avalanche_defi_protocols()

        assert [(p.name, p.tvl) for p in protocols] == [
            ("Benqi Lending", 480_000_000),
            ("Trader Joe", 100_000_000),
        ]
        assert protocols[0].url == "https://defillama.com/protocol/benqi-lending"
        assert protocols[1].category == "Dexes"


# =========================================================================
# COINGECKO
# =========================================================================

class TestCoinGecko:

    @pytest.mark.asyncio
    async def test_avalanche_price(self):
        upstream = Upstream()
        market = make_market(upstream)

        price = await market.get_avalanche_price()
        await market.get_avalanche_price()

        assert price.usd == 24.5
        assert price.usd_24h_change == -1.2
        assert upstream.calls["/api/v3/simple/price"] == 1

    @pytest.mark.asyncio
    async def test_price_failure(self):
        assert await make_market(Upstream(fail=True)).get_token_price("avalanche-2") is None

    @pytest.mark.asyncio
    async def test_search(self):
        results = await make_market(Upstream()).search_token("avax")

        assert results[0].id == "avalanche-2"
        assert results[0].market_cap_rank == 12


# =========================================================================
# DEX SCREENER
# =========================================================================

class TestDexScreener:

    @pytest.mark.asyncio
    async def test_pairs_filtered_to_avalanche(self):
        pairs = await make_market(Upstream()).get_dex_pairs(TOP_PAIR_TOKENS[0])

        assert {p.chain_id for p in pairs} == {"avalanche"}
        assert len(pairs) == 2

    @pytest.mark.asyncio
    async def test_top_pairs_deduplicated_and_sorted(self):
        upstream = Upstream()
        market = make_market(upstream)

        pairs = await market.get_avalanche_top_pairs()
        await market.get_avalanche_top_pairs()

        addresses = [p.pair_address for p in pairs]
        assert addresses.count("0xshared") == 1
        assert addresses[0] == "0xshared"
        volumes = [p.volume.h24 for p in pairs]
        assert volumes == sorted(volumes, reverse=True)
        assert len(pairs) == 1 + len(TOP_PAIR_TOKENS)
        assert sum(v for k, v in upstream.calls.items() if k.startswith("/latest")) == len(TOP_PAIR_TOKENS)

    @pytest.mark.asyncio
    async def test_pairs_failure(self):
        assert await make_market(Upstream(fail=True)).get_dex_pairs(TOP_PAIR_TOKENS[0]) == []

    @pytest.mark.asyncio
    async def test_pairs_failure_is_not_cached(self):
        upstream = Upstream(fail=True)
        market = make_market(upstream)
        token = TOP_PAIR_TOKENS[0]

        assert await market.get_dex_pairs(token) == []
        upstream.fail = False
        pairs = await market.get_dex_pairs(token)

        assert len(pairs) == 2
        assert upstream.calls[f"/latest/dex/tokens/{token}"] == 2

    @pytest.mark.asyncio
    async def test_top_pairs_failure_is_not_cached(self):
        upstream = Upstream(fail=True)
        market = make_market(upstream)

        assert await market.get_avalanche_top_pairs() == []
        upstream.fail = False

        assert len(await market.get_avalanche_top_pairs()) == 1 + len(TOP_PAIR_TOKENS)

    @pytest.mark.asyncio
    async def test_null_volume_and_liquidity_are_kept(self):
        pair = make_pair("0xnew", 0)
        pair["volume"] = None
        pair["liquidity"] = None

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"pairs": [pair]})

        market = MarketData(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        pairs = await market.get_dex_pairs(TOP_PAIR_TOKENS[0])

        assert len(pairs) == 1
        assert pairs[0].liquidity.usd == 0
        assert pairs[0].volume.h24 == 0


# =========================================================================
# GLACIER
# =========================================================================

class TestGlacier:

    @pytest.mark.asyncio
    async def test_l1s_paginated(self):
        upstream = Upstream()
        market = make_market(upstream)

        subnets = await market.get_avalanche_l1s()

        assert [s.subnet_id for s in subnets] == ["s1", "s2"]
        assert subnets[0].blockchains[0].blockchain_name == "Dexalot"
        assert subnets[0].is_l1
        assert upstream.calls["/v1/networks/mainnet/subnets"] == 2

    @pytest.mark.asyncio
    async def test_caches_are_exposed(self):
        market = make_market(Upstream())
        assert len(market.caches) == 5
