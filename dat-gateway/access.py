"""
Ownership verification for gated dataset access.

A caller may fetch a DAT's underlying file only if the registry contract
reports them as the token's current owner. Ownership is read fresh from the
chain on every request and never cached.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from errors import InvalidTokenId, MissingClaimant
from registry import Registry, RegistryContract, parse_registry

logger = logging.getLogger("dat-gateway.access")

IPFS_SCHEME = "ipfs://"
MAX_TOKEN_ID = 2**256 - 1  # uint256


class AccessGrant:
    """Outcome of one ownership check."""

    def __init__(self, allowed: bool, data_url: str = "", token_uri: str = ""):
        self.allowed = allowed
        self.data_url = data_url
        self.token_uri = token_uri


def gateway_url(gateway_base: str, token_uri: str) -> str:
    """Resolve an ``ipfs://`` content URI to an HTTP gateway URL."""
    cid = token_uri[len(IPFS_SCHEME):] if token_uri.startswith(IPFS_SCHEME) else token_uri
    return f"{gateway_base}{cid}"


def parse_token_id(value: int | str) -> int:
    try:
        token_id = int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidTokenId() from None
    if not 1 <= token_id <= MAX_TOKEN_ID:
        raise InvalidTokenId()
    return token_id


class OwnershipVerifier:
    """Checks on-chain ownership and releases the content gateway URL."""

    def __init__(self, contracts: Mapping[Registry, RegistryContract], gateway_base: str):
        self._contracts = dict(contracts)
        self.gateway_base = gateway_base if gateway_base.endswith("/") else gateway_base + "/"

    async def verify_and_resolve(
        self,
        registry: Registry | str,
        token_id: int | str,
        claimant_address: str | None,
    ) -> AccessGrant:
        """Return an AccessGrant for ``claimant_address`` on ``(registry, token_id)``.

        Input is validated before any contract call is made. Raises
        ``InvalidRegistry``, ``MissingClaimant`` or ``InvalidTokenId`` for bad
        input, ``TokenNotFound`` if ``ownerOf`` reverts and
        ``UpstreamUnavailable`` for any other RPC failure.
        """
        if not isinstance(registry, Registry):
            registry = parse_registry(registry)
        claimant = (claimant_address or "").strip()
        if not claimant:
            raise MissingClaimant()
        token_id = parse_token_id(token_id)

        contract = self._contracts[registry]
        owner = await contract.owner_of(token_id)

        if owner.lower() != claimant.lower():
            logger.info(
                "Access denied: %s#%d owned by %s, requested by %s",
                registry.value, token_id, owner, claimant,
            )
            return AccessGrant(allowed=False)

        token_uri = await contract.token_uri(token_id)
        logger.info("Access granted: %s#%d to %s", registry.value, token_id, claimant)
        return AccessGrant(
            allowed=True,
            data_url=gateway_url(self.gateway_base, token_uri),
            token_uri=token_uri,
        )
