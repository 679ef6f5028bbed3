"""
DAT Directory Routes
=====================
Browse every Data Asset Token minted on the official and community registries.

GET /api/dats?forceRefresh=false

Served from the directory cache (60s TTL). Filters and sorting are applied
to the returned list only; the cached snapshot is never modified.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from directory import SORT_KEYS, DirectoryCache, filter_entries, sort_entries
from errors import InvalidQuery, InvalidRegistry
from registry import parse_registry

logger = logging.getLogger("dat-gateway.dats")

router = APIRouter(prefix="/api", tags=["dats"])


@router.get("/dats")
async def list_dats(
    request: Request,
    force_refresh: Optional[str] = Query(default=None, alias="forceRefresh", description="Only 'true' forces a refresh"),
    registry_type: str = Query(default="all", alias="type", description="official, user (community) or all"),
    owner: Optional[str] = Query(default=None, description="Only DATs held by this address"),
    q: Optional[str] = Query(default=None, description="Search name and description"),
    sort: Optional[str] = Query(default=None, description=f"One of: {', '.join(SORT_KEYS)}"),
):
    """List all DATs across both registries."""
    if sort is not None and sort not in SORT_KEYS:
        raise InvalidQuery(f"Invalid sort '{sort}'. Valid: {', '.join(SORT_KEYS)}")
    registry = None
    if registry_type.strip().lower() != "all":
        try:
            registry = parse_registry(registry_type)
        except InvalidRegistry:
            raise InvalidQuery(f"Invalid type '{registry_type}'. Valid: all, official, user") from None

    directory: DirectoryCache = request.state.directory
    forced = (force_refresh or "").strip().lower() == "true"
    entries, source = await directory.list_all(force_refresh=forced)

    if registry is not None or owner or q:
        entries = filter_entries(entries, registry=registry, owner=owner, query=q)
    if sort:
        entries = sort_entries(entries, sort)

    return {
        "success": True,
        "dats": [entry.model_dump() for entry in entries],
        "source": source,
    }
