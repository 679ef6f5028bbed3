"""
DAT Gateway - FastAPI data-access gateway for the Data Asset Token marketplace.

Releases IPFS gateway URLs for dataset files to the on-chain owner of the
corresponding Data Asset Token, and serves a cached directory of every DAT
minted on the official and community registry contracts.

Minting and purchases are signed in the browser against the contracts
directly; this service only performs read-only contract calls.
"""

import os
import logging
from contextlib import asynccontextmanager

import aiohttp
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from web3 import AsyncWeb3

from access import OwnershipVerifier
from directory import DIRECTORY_CACHE_TTL_SECONDS, DirectoryCache
from errors import GatewayError
from registry import RPC_TIMEOUT_SECONDS, Registry, build_registry_contract
from routes.data import router as data_router
from routes.dats import router as dats_router

logger = logging.getLogger("dat-gateway")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

RPC_URL = os.environ.get("RPC_URL", "https://testnet.lazai.network")
OFFICIAL_CONTRACT_ADDRESS = os.environ.get(
    "OFFICIAL_CONTRACT_ADDRESS", os.environ.get("VITE_CONTRACT_ADDRESS", "")
)
USER_CONTRACT_ADDRESS = os.environ.get(
    "USER_CONTRACT_ADDRESS", os.environ.get("VITE_USER_CONTRACT_ADDRESS", "")
)
# Optional ABI / Hardhat artifact paths; empty uses the built-in minimal ABI
OFFICIAL_CONTRACT_ABI = os.environ.get("OFFICIAL_CONTRACT_ABI", "")
USER_CONTRACT_ABI = os.environ.get("USER_CONTRACT_ABI", "")

IPFS_GATEWAY_URL = os.environ.get("IPFS_GATEWAY_URL", "https://gateway.pinata.cloud/ipfs/")

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "*").split(",")
    if origin.strip()
]

# ---------------------------------------------------------------------------
# Shared gateway components (initialised at startup)
# ---------------------------------------------------------------------------

w3: AsyncWeb3 | None = None
verifier: OwnershipVerifier | None = None
directory: DirectoryCache | None = None


def get_verifier() -> OwnershipVerifier:
    """Return the shared ownership verifier."""
    if verifier is None:
        raise RuntimeError("Ownership verifier not initialised. Server may still be starting.")
    return verifier


def get_directory() -> DirectoryCache:
    """Return the shared DAT directory cache."""
    if directory is None:
        raise RuntimeError("Directory cache not initialised. Server may still be starting.")
    return directory


# ---------------------------------------------------------------------------
# Application lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bind both registry contracts on startup, close the RPC session on shutdown."""
    global w3, verifier, directory
    logger.info("Connecting to RPC endpoint %s", RPC_URL)
    w3 = AsyncWeb3(
        AsyncWeb3.AsyncHTTPProvider(
            RPC_URL,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=RPC_TIMEOUT_SECONDS)},
        )
    )

    contracts = {
        Registry.OFFICIAL: build_registry_contract(
            w3, Registry.OFFICIAL, OFFICIAL_CONTRACT_ADDRESS, OFFICIAL_CONTRACT_ABI,
        ),
        Registry.COMMUNITY: build_registry_contract(
            w3, Registry.COMMUNITY, USER_CONTRACT_ADDRESS, USER_CONTRACT_ABI,
        ),
    }
    verifier = OwnershipVerifier(contracts, IPFS_GATEWAY_URL)
    directory = DirectoryCache(contracts.values(), ttl_seconds=DIRECTORY_CACHE_TTL_SECONDS)

    logger.info(
        "DAT Gateway ready. gateway=%s cache_ttl=%ss rpc_timeout=%ss",
        IPFS_GATEWAY_URL, DIRECTORY_CACHE_TTL_SECONDS, RPC_TIMEOUT_SECONDS,
    )
    yield

    logger.info("Shutting down DAT Gateway")
    await w3.provider.disconnect()


app = FastAPI(
    title="DAT Gateway",
    description=(
        "Data-access gateway for the Data Asset Token marketplace. "
        "Verifies on-chain DAT ownership before releasing IPFS gateway URLs "
        "and serves a cached directory of all official and community DATs."
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials="*" not in ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def attach_components(request: Request, call_next):
    """Inject the shared verifier and directory into request state for route handlers."""
    request.state.verifier = get_verifier()
    request.state.directory = get_directory()
    response: Response = await call_next(request)
    return response


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

app.include_router(data_router)
app.include_router(dats_router)


@app.get("/health", tags=["health"])
async def health(request: Request):
    """Service health check. Never touches the RPC endpoint."""
    cache: DirectoryCache = request.state.directory
    age = cache.age_seconds()
    return {
        "status": "ok",
        "service": "dat-gateway",
        "version": VERSION,
        "rpc_url": RPC_URL,
        "registries": [r.value for r in Registry],
        "directory": {
            "entries": cache.size,
            "age_seconds": round(age, 1) if age is not None else None,
            "ttl_seconds": cache.ttl_seconds,
        },
    }


@app.get("/", tags=["health"])
async def root():
    return {
        "service": "DAT Gateway",
        "version": VERSION,
        "description": "On-chain ownership gate and directory for Data Asset Tokens",
        "docs": "/docs",
        "endpoints": [
            "GET /api/dats?forceRefresh={true|false}&type=&owner=&q=&sort=",
            "GET /api/data/{official|user}/{tokenId}?userAddress={address}",
            "GET /health",
        ],
        "ipfs_gateway": IPFS_GATEWAY_URL,
    }
