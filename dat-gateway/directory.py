"""
DAT Directory: aggregated listing of every token across both registries.

Full enumeration is expensive (two reads per token), so the aggregated list
is held in a process-wide snapshot for ``DIRECTORY_CACHE_TTL_SECONDS``.

Listing is best-effort: a token whose owner or metadata cannot be read is
dropped and logged. Only a failed ``totalSupply`` read fails the whole
refresh, in which case the previous snapshot is kept but not served.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from errors import GatewayError
from registry import Registry, RegistryContract

logger = logging.getLogger("dat-gateway.directory")

DIRECTORY_CACHE_TTL_SECONDS = float(os.environ.get("DIRECTORY_CACHE_TTL_SECONDS", "60"))

SOURCE_CACHE = "cache"
SOURCE_FRESH = "fresh"


class DatEntry(BaseModel):
    id: int
    type: str
    name: str
    description: str
    price: float
    owner: str


class _Snapshot:
    __slots__ = ("entries", "fetched_at")

    def __init__(self, entries: list[DatEntry], fetched_at: float):
        self.entries = entries
        self.fetched_at = fetched_at


class DirectoryCache:
    """Time-boxed cache over a full enumeration of the registries.

    Refreshes are single-flight: while an enumeration is running, every
    caller that needs fresh data awaits that same enumeration.
    """

    def __init__(
        self,
        contracts: Iterable[RegistryContract],
        ttl_seconds: float = DIRECTORY_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._contracts = list(contracts)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[_Snapshot] = None
        self._inflight: Optional[asyncio.Future] = None

    # -- introspection -----------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._snapshot.entries) if self._snapshot else 0

    def age_seconds(self) -> Optional[float]:
        if self._snapshot is None:
            return None
        return self._clock() - self._snapshot.fetched_at

    def _is_fresh(self, snapshot: Optional[_Snapshot]) -> bool:
        return (
            snapshot is not None
            and bool(snapshot.entries)
            and self._clock() - snapshot.fetched_at < self.ttl_seconds
        )

    # -- public API --------------------------------------------------------

    async def list_all(self, force_refresh: bool = False) -> tuple[list[DatEntry], str]:
        """Return ``(entries, source)`` where source is ``"cache"`` or ``"fresh"``.

        Raises ``UpstreamUnavailable`` if the enumeration itself fails.
        """
        snapshot = self._snapshot
        if not force_refresh and self._is_fresh(snapshot):
            logger.debug("Directory cache hit (%d entries)", len(snapshot.entries))
            return snapshot.entries, SOURCE_CACHE

        if self._inflight is None:
            task = asyncio.ensure_future(self._refresh())
            task.add_done_callback(self._clear_inflight)
            self._inflight = task
        else:
            logger.debug("Joining in-flight directory refresh")

        # Cancelling one waiter leaves the shared refresh running.
        entries = await asyncio.shield(self._inflight)
        return entries, SOURCE_FRESH

    def _clear_inflight(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("Directory refresh failed: %s", task.exception())

    # -- enumeration -------------------------------------------------------

    async def _refresh(self) -> list[DatEntry]:
        started = self._clock()
        per_registry = await asyncio.gather(
            *(self._enumerate(contract) for contract in self._contracts)
        )
        entries = [entry for batch in per_registry for entry in batch]
        self._snapshot = _Snapshot(entries, self._clock())
        logger.info(
            "Directory refreshed: %d entries (%s) in %.2fs",
            len(entries),
            ", ".join(f"{c.registry.value}={len(b)}" for c, b in zip(self._contracts, per_registry)),
            self._clock() - started,
        )
        return entries

    async def _enumerate(self, contract: RegistryContract) -> list[DatEntry]:
        supply = await contract.total_supply()
        token_ids = await self._token_ids(contract, supply)
        results = await asyncio.gather(*(self._fetch_entry(contract, tid) for tid in token_ids))
        return [entry for entry in results if entry is not None]

    async def _token_ids(self, contract: RegistryContract, supply: int) -> list[int]:
        if not contract.supports_index:
            return list(range(1, supply + 1))

        async def by_index(index: int) -> Optional[int]:
            try:
                return await contract.token_by_index(index)
            except GatewayError as exc:
                logger.warning("Could not read %s tokenByIndex(%d): %s", contract.registry.value, index, exc)
                return None

        ids = await asyncio.gather(*(by_index(i) for i in range(supply)))
        return [tid for tid in ids if tid is not None]

    async def _fetch_entry(self, contract: RegistryContract, token_id: int) -> Optional[DatEntry]:
        try:
            owner, metadata = await asyncio.gather(
                contract.owner_of(token_id),
                contract.metadata(token_id),
            )
        except GatewayError as exc:
            logger.warning("Could not fetch %s DAT %d: %s", contract.registry.value, token_id, exc)
            return None
        return DatEntry(
            id=token_id,
            type=contract.registry.value,
            name=metadata.name,
            description=metadata.description,
            price=metadata.price,
            owner=owner,
        )


# ---------------------------------------------------------------------------
# Presentation helpers (applied to a returned list, never to the cache)
# ---------------------------------------------------------------------------

SORT_KEYS: dict[str, tuple[Callable[[DatEntry], object], bool]] = {
    "date-desc": (lambda d: d.id, True),
    "date-asc": (lambda d: d.id, False),
    "price-desc": (lambda d: d.price, True),
    "price-asc": (lambda d: d.price, False),
    "name-asc": (lambda d: d.name.lower(), False),
    "name-desc": (lambda d: d.name.lower(), True),
}


def filter_entries(
    entries: Iterable[DatEntry],
    registry: Optional[Registry] = None,
    owner: Optional[str] = None,
    query: Optional[str] = None,
) -> list[DatEntry]:
    owner = owner.lower() if owner else None
    query = query.lower() if query else None
    result = []
    for entry in entries:
        if registry is not None and entry.type != registry.value:
            continue
        if owner and entry.owner.lower() != owner:
            continue
        if query and query not in entry.name.lower() and query not in entry.description.lower():
            continue
        result.append(entry)
    return result


def sort_entries(entries: Iterable[DatEntry], sort: str) -> list[DatEntry]:
    key, reverse = SORT_KEYS[sort]
    return sorted(entries, key=key, reverse=reverse)
