"""
Gated Data Access Routes
=========================
Release the IPFS gateway URL of a DAT's dataset file to its current owner.

GET /api/data/{registry}/{token_id}?userAddress=0x...

Ownership is checked against the registry contract on every call.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from access import OwnershipVerifier
from errors import NotOwner

logger = logging.getLogger("dat-gateway.data")

router = APIRouter(prefix="/api/data", tags=["data"])


@router.get("/{registry}/{token_id}")
async def get_data_access(
    registry: str,
    token_id: str,
    request: Request,
    user_address: Optional[str] = Query(default=None, alias="userAddress"),
):
    """Verify that ``userAddress`` owns the token and return its data URL.

    ``registry`` is ``official`` or ``user`` (``community`` is accepted too).
    """
    verifier: OwnershipVerifier = request.state.verifier
    grant = await verifier.verify_and_resolve(registry, token_id, user_address)
    if not grant.allowed:
        raise NotOwner()

    return {
        "success": True,
        "message": "Ownership verified.",
        "dataUrl": grant.data_url,
        "tokenURI": grant.token_uri,
    }
