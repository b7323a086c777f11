"""
AvaBuilder Agent - On-chain Reads

Read-only calls over JSON-RPC: agent discovery through an ERC-721 style
registry (ERC-8004) and fungible asset metadata/balances. Nothing here sends
a transaction.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol

import pydantic
from web3 import AsyncHTTPProvider, AsyncWeb3

from .cache import TTLCache
from .errors import NetworkError, RegistryUnavailable, ValidationError
from .types import (
    AssetMetadataResult,
    RegistryEntry,
    RegistryReadResult,
    checksum_address,
)

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_LIMIT = 10
RPC_TIMEOUT_SECONDS = 15

REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "tokenURI",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "ownerOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "name",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


# =============================================================================
# CONTRACT ADAPTERS
# =============================================================================

class RegistryContract(Protocol):
    async def total_supply(self) -> int: ...

    async def token_uri(self, token_id: int) -> str: ...

    async def owner_of(self, token_id: int) -> str: ...


class AssetContract(Protocol):
    async def name(self) -> str: ...

    async def symbol(self) -> str: ...

    async def decimals(self) -> int: ...

    async def balance_of(self, holder: str) -> int: ...


class Web3RegistryContract:
    """Registry reads through web3."""

    def __init__(self, w3: AsyncWeb3, address: str) -> None:
        self._contract = w3.eth.contract(address=checksum_address(address), abi=REGISTRY_ABI)

    async def total_supply(self) -> int:
        return await self._contract.functions.totalSupply().call()

    async def token_uri(self, token_id: int) -> str:
        return await self._contract.functions.tokenURI(token_id).call()

    async def owner_of(self, token_id: int) -> str:
        return await self._contract.functions.ownerOf(token_id).call()


class Web3AssetContract:
    """ERC-20 reads through web3."""

    def __init__(self, w3: AsyncWeb3, address: str) -> None:
        self._contract = w3.eth.contract(address=checksum_address(address), abi=ERC20_ABI)

    async def name(self) -> str:
        return await self._contract.functions.name().call()

    async def symbol(self) -> str:
        return await self._contract.functions.symbol().call()

    async def decimals(self) -> int:
        return await self._contract.functions.decimals().call()

    async def balance_of(self, holder: str) -> int:
        return await self._contract.functions.balanceOf(checksum_address(holder)).call()


class Web3Contracts:
    """Builds contract adapters sharing one JSON-RPC provider."""

    def __init__(self, rpc_url: str, timeout: float = RPC_TIMEOUT_SECONDS) -> None:
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    def registry(self, address: str) -> Web3RegistryContract:
        return Web3RegistryContract(self.w3, address)

    def asset(self, address: str) -> Web3AssetContract:
        return Web3AssetContract(self.w3, address)


# =============================================================================
# REGISTRY READER
# =============================================================================

class RegistryReader:
    """
    Discovers peer agents by walking the registry's most recent ids downward.

    Each call is a fresh best-effort snapshot: ids burned after the count
    was read are skipped, so the result may be shorter than `limit`.
    """

    def __init__(
        self,
        contract_factory: Callable[[str], RegistryContract],
        cache: Optional[TTLCache[RegistryReadResult]] = None,
    ) -> None:
        self._contract_factory = contract_factory
        self._cache = cache

    @classmethod
    def from_rpc(
        cls,
        rpc_url: str,
        cache: Optional[TTLCache[RegistryReadResult]] = None,
    ) -> "RegistryReader":
        return cls(Web3Contracts(rpc_url).registry, cache)

    async def walk(
        self,
        registry_address: str,
        limit: int = DEFAULT_DISCOVERY_LIMIT,
    ) -> RegistryReadResult:
        """
        Read up to `limit` of the most recent registry entries.

        Raises:
            ValidationError: bad address or limit
            RegistryUnavailable: the enumeration count could not be read
        """
        try:
            address = checksum_address(registry_address)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if limit <= 0:
            raise ValidationError("limit must be positive")

        cache_key = f"{address}:{limit}"
        if self._cache is not None:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        contract = self._contract_factory(address)

        try:
            total = int(await contract.total_supply())
        except Exception as e:
            raise RegistryUnavailable(f"Cannot read registry {address}: {e}") from e

        entries: list[RegistryEntry] = []
        skipped: list[int] = []

        for token_id in range(total, max(total - limit, 0), -1):
            entry = await self._read_entry(contract, token_id)
            if entry is None:
                skipped.append(token_id)
            else:
                entries.append(entry)

        if skipped:
            logger.info(f"Registry {address}: skipped unreadable ids {skipped}")

        result = RegistryReadResult(
            registry_address=address,
            total_supply=total,
            entries=entries,
            skipped_ids=skipped,
        )

        if self._cache is not None:
            self._cache.set(cache_key, result)

        return result

    async def discover(
        self,
        registry_address: str,
        limit: int = DEFAULT_DISCOVERY_LIMIT,
    ) -> list[RegistryEntry]:
        """Registered agents, newest first."""
        result = await self.walk(registry_address, limit)
        return result.entries

    async def _read_entry(
        self,
        contract: RegistryContract,
        token_id: int,
    ) -> Optional[RegistryEntry]:
        uri, owner = await asyncio.gather(
            contract.token_uri(token_id),
            contract.owner_of(token_id),
            return_exceptions=True,
        )

        # Burned or removed ids revert; skip the id, not the walk
        for value in (uri, owner):
            if isinstance(value, Exception):
                logger.debug(f"Registry id {token_id} unreadable: {value}")
                return None

        try:
            return RegistryEntry(id=token_id, metadata_locator=uri, owner_address=owner)
        except pydantic.ValidationError as e:
            logger.debug(f"Registry id {token_id} returned invalid data: {e.error_count()} errors")
            return None


# =============================================================================
# ASSET READER
# =============================================================================

class AssetReader:
    """Fungible asset metadata, cached; balances always read fresh."""

    def __init__(
        self,
        contract_factory: Callable[[str], AssetContract],
        cache: Optional[TTLCache[AssetMetadataResult]] = None,
    ) -> None:
        self._contract_factory = contract_factory
        self._cache = cache

    @classmethod
    def from_rpc(
        cls,
        rpc_url: str,
        cache: Optional[TTLCache[AssetMetadataResult]] = None,
    ) -> "AssetReader":
        return cls(Web3Contracts(rpc_url).asset, cache)

    async def metadata(self, asset_address: str) -> AssetMetadataResult:
        """
        Read name, symbol and decimals.

        Raises:
            ValidationError: bad address
            NetworkError: the contract could not be read
        """
        try:
            address = checksum_address(asset_address)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if self._cache is not None:
            cached = self._cache.get(address)
            if cached is not None:
                return cached

        contract = self._contract_factory(address)
        try:
            name, symbol, decimals = await asyncio.gather(
                contract.name(),
                contract.symbol(),
                contract.decimals(),
            )
            result = AssetMetadataResult(
                address=address,
                name=name,
                symbol=symbol,
                decimals=int(decimals),
            )
        except pydantic.ValidationError as e:
            raise NetworkError(f"Asset {address} returned invalid metadata") from e
        except Exception as e:
            raise NetworkError(f"Cannot read asset {address}: {e}") from e

        if self._cache is not None:
            self._cache.set(address, result)

        return result

    async def balance(self, asset_address: str, holder: str) -> AssetMetadataResult:
        """Metadata plus the holder's balance in smallest units."""
        meta = await self.metadata(asset_address)
        try:
            holder_address = checksum_address(holder)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        contract = self._contract_factory(meta.address)
        try:
            balance = int(await contract.balance_of(holder_address))
        except Exception as e:
            raise NetworkError(f"Cannot read balance of {holder_address}: {e}") from e

        return meta.model_copy(update={"holder": holder_address, "balance": balance})
