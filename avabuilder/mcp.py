"""
AvaBuilder Agent MCP Tools

Model Context Protocol surface over the free market-data accessors.
Served as JSON-RPC 2.0 on POST /mcp (initialize, tools/list, tools/call).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable

from .errors import ValidationError
from .market import MarketData
from .types import ADDRESS_RE, ToolDefinition

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "AvaBuilder Agent MCP"
SERVER_VERSION = "2.1.0"

# JSON-RPC error codes
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

NO_ARGUMENTS: dict[str, Any] = {"type": "object", "properties": {}, "required": []}


# Type for tool handlers
ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


class RegisteredTool:
    """A tool registered with the server."""

    def __init__(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        self.definition = definition
        self.handler = handler


class MarketToolServer:
    """
    MCP tool server for Avalanche market data.

    Tool handlers return JSON-serializable results; the server wraps them
    as MCP text content. A handler raising ValidationError produces an
    `isError` result instead of a JSON-RPC error.
    """

    def __init__(self, market: MarketData) -> None:
        self.market = market
        self._tools: dict[str, RegisteredTool] = {}
        self._register_market_tools()

    def register_tool(
        self,
        name: str,
        description: str,
        input_schema: dict[str, Any],
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = RegisteredTool(
            definition=ToolDefinition(name=name, description=description, input_schema=input_schema),
            handler=handler,
        )

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def handle_list_tools(self) -> list[dict[str, Any]]:
        return [tool.definition.to_wire() for tool in self._tools.values()]

    async def handle_call_tool(
        self,
        name: str,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Run a tool and wrap its result as MCP content.

        Args:
            name: Tool name
            arguments: Tool arguments

        Returns:
            {"content": [{"type": "text", "text": <JSON result>}]}
        """
        tool = self._tools.get(name)
        if tool is None:
            return self._build_error_response(f"Unknown tool: {name}")

        try:
            result = await tool.handler(arguments)
        except ValidationError as e:
            return self._build_error_response(str(e))

        return {"content": [{"type": "text", "text": json.dumps(result)}]}

    async def handle_request(self, body: Any) -> dict[str, Any]:
        """
        Dispatch one JSON-RPC request.

        Raises:
            ValidationError: body is not a JSON-RPC request object
        """
        if not isinstance(body, dict):
            raise ValidationError("JSON-RPC request must be an object")

        method = body.get("method")
        request_id = body.get("id")
        params = body.get("params") or {}

        if method == "initialize":
            return _rpc_result(request_id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
            })

        if method == "tools/list":
            return _rpc_result(request_id, {"tools": await self.handle_list_tools()})

        if method == "tools/call":
            name = params.get("name")
            if not self.has_tool(name):
                return _rpc_error(request_id, METHOD_NOT_FOUND, f"Tool not found: {name}")
            arguments = params.get("arguments") or {}
            logger.debug(f"MCP tool call: {name}")
            return _rpc_result(request_id, await self.handle_call_tool(name, arguments))

        return _rpc_error(request_id, METHOD_NOT_FOUND, f"Method not supported: {method}")

    def _build_error_response(self, message: str) -> dict[str, Any]:
        return {"content": [{"type": "text", "text": message}], "isError": True}

    # ========== Market tools ==========

    def _register_market_tools(self) -> None:
        self.register_tool(
            "get_avax_price",
            "Get current AVAX price and 24h change from CoinGecko",
            NO_ARGUMENTS,
            self._avax_price,
        )
        self.register_tool(
            "get_avalanche_tvl",
            "Get Avalanche total TVL and top 10 DeFi protocols (excluding CEXs)",
            NO_ARGUMENTS,
            self._avalanche_tvl,
        )
        self.register_tool(
            "get_avalanche_defi",
            "Get top 50 Avalanche-native DeFi protocols sorted by TVL",
            NO_ARGUMENTS,
            self._avalanche_defi,
        )
        self.register_tool(
            "get_token_info",
            "Get DEX trading data for a token on Avalanche by contract address",
            {
                "type": "object",
                "properties": {"address": {"type": "string", "description": "Token contract address (0x...)"}},
                "required": ["address"],
            },
            self._token_info,
        )
        self.register_tool(
            "get_top_pairs",
            "Get top 30 trading pairs on Avalanche DEXs by 24h volume",
            NO_ARGUMENTS,
            self._top_pairs,
        )
        self.register_tool(
            "get_avalanche_l1s",
            "Get all Avalanche L1 blockchains (subnets) from Glacier API",
            NO_ARGUMENTS,
            self._avalanche_l1s,
        )

    async def _avax_price(self, arguments: dict[str, Any]) -> dict[str, Any]:
        price = await self.market.get_avalanche_price()
        if price is None:
            return {"error": "Price unavailable"}
        return {"priceUsd": price.usd, "change24h": price.usd_24h_change}

    async def _avalanche_tvl(self, arguments: dict[str, Any]) -> dict[str, Any]:
        metrics = await self.market.get_avalanche_metrics()
        return {
            "totalTVL": metrics.total_tvl,
            "protocolCount": metrics.protocol_count,
            "topProtocols": [p.model_dump() for p in metrics.top_protocols],
        }

    async def _avalanche_defi(self, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        protocols = await self.market.get_avalanche_defi_protocols()
        return [p.model_dump() for p in protocols]

    async def _token_info(self, arguments: dict[str, Any]) -> dict[str, Any]:
        address = arguments.get("address")
        if not isinstance(address, str) or not ADDRESS_RE.match(address):
            raise ValidationError("Invalid address format")

        pairs = await self.market.get_dex_pairs(address)
        if not pairs:
            return {"error": "No DEX data found"}

        top = pairs[0]
        return {
            "name": top.base_token.name,
            "symbol": top.base_token.symbol,
            "priceUsd": top.price_usd,
            "volume24h": top.volume.h24,
            "liquidity": top.liquidity.usd,
            "pairs": len(pairs),
        }

    async def _top_pairs(self, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        pairs = await self.market.get_avalanche_top_pairs()
        return [
            {
                "pair": f"{p.base_token.symbol}/{p.quote_token.symbol}",
                "dex": p.dex_id,
                "priceUsd": p.price_usd,
                "volume24h": p.volume.h24,
            }
            for p in pairs
        ]

    async def _avalanche_l1s(self, arguments: dict[str, Any]) -> dict[str, Any]:
        subnets = await self.market.get_avalanche_l1s()
        return {
            "count": len(subnets),
            "l1s": [
                {
                    "subnetId": s.subnet_id,
                    "isL1": s.is_l1,
                    "name": s.blockchains[0].blockchain_name if s.blockchains else "Unknown",
                }
                for s in subnets[:50]
            ],
        }


def _rpc_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def internal_error() -> dict[str, Any]:
    """Response body for a request that could not be processed at all."""
    return _rpc_error(None, INTERNAL_ERROR, "Internal error")
