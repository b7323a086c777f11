"""
AvaBuilder Agent CLI

Command-line interface for serving the agent and for paying other agents.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Mapping

import pydantic

from . import __version__
from .chain import AssetReader, RegistryReader
from .errors import AgentError
from .transport import FacilitatorClient, PaidClient
from .types import AgentConfig

logger = logging.getLogger(__name__)

# env var -> config field
ENV_FIELDS = {
    "FACILITATOR_URL": "facilitator_url",
    "USDC_CONTRACT": "asset_address",
    "ASSET_NAME": "asset_name",
    "ASSET_VERSION": "asset_version",
    "ASSET_DECIMALS": "asset_decimals",
    "X402_NETWORK": "network",
    "X402_CHAIN_ID": "chain_id",
    "X402_RECIPIENT": "recipient_address",
    "X402_PRIVATE_KEY": "private_key",
    "X402_AUTH_TTL_SECONDS": "authorization_ttl_seconds",
    "X402_TIMEOUT_SECONDS": "request_timeout_seconds",
    "WALLET_ADDRESS": "wallet_address",
    "GUIDE_PRICE": "guide_price",
    "AVALANCHE_RPC_URL": "rpc_url",
    "REGISTRY_ADDRESS": "registry_address",
    "RATE_LIMIT_MAX": "rate_limit_max_requests",
    "RATE_LIMIT_WINDOW_SECONDS": "rate_limit_window_seconds",
    "HOST": "host",
    "PORT": "port",
}

CACHE_TTL_NAMES = ("price", "dex", "protocols", "tvl", "glacier", "registry")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def load_config(
    config_path: str | None,
    environ: Mapping[str, str] | None = None,
) -> AgentConfig:
    """
    Load configuration from file, then environment.

    Raises:
        ValueError: file missing or configuration invalid
    """
    env = os.environ if environ is None else environ
    config_dict: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ValueError(f"Config file not found: {config_path}")
        with open(path) as f:
            config_dict = json.load(f)

    for var, field in ENV_FIELDS.items():
        if var in env:
            config_dict[field] = env[var]

    ttl = dict(config_dict.get("cache_ttl") or {})
    for name in CACHE_TTL_NAMES:
        var = f"CACHE_TTL_{name.upper()}_SECONDS"
        if var in env:
            ttl[name] = env[var]
    if ttl:
        config_dict["cache_ttl"] = ttl

    try:
        return AgentConfig(**config_dict)
    except pydantic.ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


# =============================================================================
# COMMANDS
# =============================================================================

def run_server(config: AgentConfig) -> None:
    """Run the HTTP server until interrupted."""
    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


async def call_endpoint(
    config: AgentConfig,
    url: str,
    method: str,
    data: Any,
    amount: Decimal,
) -> Any:
    client = PaidClient.from_config(config)
    try:
        return await client.call_protected_endpoint(url, method, data, amount)
    finally:
        await client.close()


async def discover(config: AgentConfig, limit: int) -> dict[str, Any]:
    if not config.rpc_url or not config.registry_address:
        raise ValueError("rpc_url and registry_address are required for discovery")

    reader = RegistryReader.from_rpc(config.rpc_url)
    result = await reader.walk(config.registry_address, limit)
    return {
        "registry": result.registry_address,
        "totalSupply": result.total_supply,
        "agents": [e.model_dump(by_alias=True) for e in result.entries],
        "skipped": result.skipped_ids,
    }


async def balance(config: AgentConfig, holder: str) -> dict[str, Any]:
    if not config.rpc_url:
        raise ValueError("rpc_url is required for balance reads")

    reader = AssetReader.from_rpc(config.rpc_url)
    result = await reader.balance(config.asset_address, holder)
    return result.model_dump()


async def check_facilitator(config: AgentConfig) -> dict[str, Any]:
    facilitator = FacilitatorClient(config.facilitator_url)
    try:
        healthy = await facilitator.health()
    finally:
        await facilitator.close()
    return {"facilitator": config.facilitator_url, "healthy": healthy}


def _parse_amount(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {value!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="avabuilder",
        description="AvaBuilder Agent - paid agent-to-agent endpoints on Avalanche",
    )

    parser.add_argument(
        "--config", "-c",
        help="Path to JSON configuration file",
        default=None,
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"avabuilder-agent {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the agent HTTP server")

    call = sub.add_parser("call", help="Pay for and call another agent's endpoint")
    call.add_argument("url", help="Protected endpoint URL")
    call.add_argument("--method", default="POST")
    call.add_argument("--data", default="{}", help="JSON request body")
    call.add_argument("--amount", type=_parse_amount, default=Decimal("0.01"), help="Amount in USDC")

    disc = sub.add_parser("discover", help="List agents in the registry")
    disc.add_argument("--limit", type=int, default=10)

    bal = sub.add_parser("balance", help="Read the configured asset balance of an address")
    bal.add_argument("holder", help="Holder address")

    sub.add_parser("facilitator", help="Check that the facilitator is reachable")

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ValueError as e:
        logging.error(str(e))
        sys.exit(1)

    if args.command == "serve":
        run_server(config)
        return

    try:
        if args.command == "call":
            result = asyncio.run(call_endpoint(config, args.url, args.method, json.loads(args.data), args.amount))
        elif args.command == "discover":
            result = asyncio.run(discover(config, args.limit))
        elif args.command == "balance":
            result = asyncio.run(balance(config, args.holder))
        else:
            result = asyncio.run(check_facilitator(config))
    except (AgentError, ValueError) as e:
        logging.error(str(e))
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
