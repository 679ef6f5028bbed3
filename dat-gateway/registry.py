"""
DAT registry contracts: read-only access to the two ERC-721 token contracts.

Wraps a web3 ``AsyncContract`` and translates every web3/RPC failure into the
gateway error taxonomy at one boundary:

- a contract revert (``ContractLogicError``) is ``TokenNotFound``
- anything else, including an RPC timeout, is ``UpstreamUnavailable``
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from enum import Enum
from typing import Any

from pydantic import BaseModel
from web3 import AsyncWeb3, Web3
from web3.exceptions import ContractLogicError

from errors import InvalidRegistry, TokenNotFound, UpstreamUnavailable

logger = logging.getLogger("dat-gateway.registry")

RPC_TIMEOUT_SECONDS = float(os.environ.get("RPC_TIMEOUT_SECONDS", "15"))


class Registry(str, Enum):
    OFFICIAL = "official"
    COMMUNITY = "user"


_REGISTRY_ALIASES = {
    "official": Registry.OFFICIAL,
    "user": Registry.COMMUNITY,
    "community": Registry.COMMUNITY,
}


def parse_registry(value: str | None) -> Registry:
    """Map a wire name (``official``, ``user`` or ``community``) to a Registry."""
    registry = _REGISTRY_ALIASES.get((value or "").strip().lower())
    if registry is None:
        raise InvalidRegistry()
    return registry


# ---------------------------------------------------------------------------
# ABI
# ---------------------------------------------------------------------------

# Minimal read-only ABI shared by both DAT contracts.
DAT_MIN_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "ownerOf",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "type": "function",
        "name": "tokenURI",
        "stateMutability": "view",
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "type": "function",
        "name": "totalSupply",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "datMetadata",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "name", "type": "string"},
            {"name": "description", "type": "string"},
            {"name": "price", "type": "uint256"},
        ],
    },
]

_METADATA_FIELDS = ("name", "description", "price")


def load_abi(path: str | None) -> list[dict[str, Any]]:
    """Load an ABI from a JSON file, or fall back to the built-in minimal ABI.

    Accepts either a bare ABI list or a Hardhat artifact (``{"abi": [...]}``).
    """
    if not path:
        return DAT_MIN_ABI
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if isinstance(data, dict):
        data = data.get("abi", [])
    if not isinstance(data, list):
        raise ValueError(f"ABI file {path} does not contain an ABI list")
    return data


def _find_function(abi: list[dict[str, Any]], name: str) -> dict[str, Any] | None:
    for item in abi:
        if item.get("type", "function") == "function" and item.get("name") == name:
            return item
    return None


def _metadata_output_names(abi: list[dict[str, Any]]) -> list[str]:
    fn = _find_function(abi, "datMetadata")
    if not fn:
        return list(_METADATA_FIELDS)
    outputs = fn.get("outputs", [])
    if len(outputs) == 1 and outputs[0].get("type") == "tuple":
        outputs = outputs[0].get("components", [])
    names = [o.get("name", "") for o in outputs]
    if not all(names):
        return list(_METADATA_FIELDS)
    return names


class TokenMetadata(BaseModel):
    name: str
    description: str
    price_wei: int

    @property
    def price(self) -> float:
        """Price in the network's native unit."""
        return float(Web3.from_wei(self.price_wei, "ether"))


# ---------------------------------------------------------------------------
# Contract adapter
# ---------------------------------------------------------------------------


class RegistryContract:
    """Read-only view of one DAT registry contract."""

    def __init__(self, registry: Registry, contract: Any, timeout: float = RPC_TIMEOUT_SECONDS):
        self.registry = registry
        self._contract = contract
        self.timeout = timeout
        abi = list(getattr(contract, "abi", None) or DAT_MIN_ABI)
        self.supports_index = _find_function(abi, "tokenByIndex") is not None
        self._metadata_names = _metadata_output_names(abi)

    @property
    def address(self) -> str:
        return getattr(self._contract, "address", "")

    async def _call(self, fn_name: str, *args: Any, on_revert: type = TokenNotFound) -> Any:
        try:
            # web3 validates arguments against the ABI when the call is built.
            fn = getattr(self._contract.functions, fn_name)(*args)
            return await asyncio.wait_for(fn.call(), timeout=self.timeout)
        except ContractLogicError as exc:
            logger.info("%s.%s%s reverted: %s", self.registry.value, fn_name, args, exc)
            raise on_revert() from exc
        except asyncio.TimeoutError as exc:
            logger.warning(
                "%s.%s%s timed out after %.1fs", self.registry.value, fn_name, args, self.timeout,
            )
            raise UpstreamUnavailable() from exc
        except Exception as exc:
            logger.warning("%s.%s%s failed: %s", self.registry.value, fn_name, args, exc)
            raise UpstreamUnavailable() from exc

    async def owner_of(self, token_id: int) -> str:
        return str(await self._call("ownerOf", token_id))

    async def token_uri(self, token_id: int) -> str:
        return str(await self._call("tokenURI", token_id))

    async def total_supply(self) -> int:
        # A revert here means the contract is unusable, not that a token is missing.
        return int(await self._call("totalSupply", on_revert=UpstreamUnavailable))

    async def token_by_index(self, index: int) -> int:
        return int(await self._call("tokenByIndex", index))

    async def metadata(self, token_id: int) -> TokenMetadata:
        raw = await self._call("datMetadata", token_id)
        return self._decode_metadata(raw)

    def _decode_metadata(self, raw: Any) -> TokenMetadata:
        if isinstance(raw, dict):
            values = raw
        else:
            seq = list(raw)
            if len(seq) == 1 and isinstance(seq[0], (list, tuple)):
                seq = list(seq[0])
            values = dict(zip(self._metadata_names, seq))
        try:
            return TokenMetadata(
                name=str(values["name"]),
                description=str(values["description"]),
                price_wei=int(values["price"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("%s.datMetadata returned an unexpected shape: %r", self.registry.value, raw)
            raise UpstreamUnavailable() from exc


def build_registry_contract(
    w3: AsyncWeb3,
    registry: Registry,
    address: str,
    abi_path: str | None = None,
    timeout: float = RPC_TIMEOUT_SECONDS,
) -> RegistryContract:
    """Bind a registry to its deployed contract address on ``w3``."""
    if not address:
        raise RuntimeError(f"No contract address configured for the {registry.value} registry")
    contract = w3.eth.contract(
        address=AsyncWeb3.to_checksum_address(address),
        abi=load_abi(abi_path),
    )
    logger.info("Registry %s bound to %s", registry.value, contract.address)
    return RegistryContract(registry, contract, timeout=timeout)
