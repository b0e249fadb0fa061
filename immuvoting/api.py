"""
ImmuVoting - REST API.

FastAPI server exposing voter registration, ballot casting and the
public proofs third-party auditors check the election against.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from immuvoting import __version__, config
from immuvoting.checkpoint import FileCheckpointCache, MemoryCheckpointCache
from immuvoting.client import LedgerClient
from immuvoting.exceptions import (
    AlreadyExistsError,
    CorruptedDataError,
    NotFoundError,
    PreconditionFailed,
    StoreError,
    TransientStoreError,
    ValidationError,
    WriteConflict,
)
from immuvoting.routes import ledger as ledger_router
from immuvoting.routes import voting as voting_router
from immuvoting.signing import CheckpointSigner, load_public_key
from immuvoting.store.sqlite import SQLiteLedgerStore
from immuvoting.verified import VerifiedReadEngine
from immuvoting.voting import VotingWorkflow

logger = logging.getLogger("uvicorn.error")

RETRY_AFTER_SECONDS = 1


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the ledger and wire client, checkpoint cache and workflow."""
    db_path = config.DB_PATH  # Read at runtime, not import time
    logger.info("Starting lifespan with DB_PATH: %s", db_path)

    signer = CheckpointSigner.from_hex(config.SIGNING_KEY) if config.SIGNING_KEY else None
    if signer is not None:
        public_key = signer.public_key()
    elif config.PUBLIC_KEY:
        public_key = load_public_key(config.PUBLIC_KEY)
    else:
        public_key = None

    client = LedgerClient(SQLiteLedgerStore(db_path, signer=signer), timeout=config.STORE_TIMEOUT)
    await client.connect()

    if config.STATE_DIR:
        cache = FileCheckpointCache(config.STATE_DIR, await client.identity())
    else:
        cache = MemoryCheckpointCache()
    engine = VerifiedReadEngine(client, cache, public_key=public_key)

    app.state.client = client
    app.state.engine = engine
    app.state.workflow = VotingWorkflow(
        client,
        engine=engine,
        candidates=config.CANDIDATES,
        verified_reads=config.VERIFIED_READS,
        scan_page_size=config.SCAN_PAGE_SIZE,
    )

    try:
        yield
    finally:
        await client.close()
        app.state.client = None
        app.state.engine = None
        app.state.workflow = None


app = FastAPI(
    title="ImmuVoting",
    description="Voter registration and ballot casting on a tamper-evident ledger.",
    version=__version__,
    lifespan=lifespan,
)


# ─── Middleware ──────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


# ─── Exception Handlers ──────────────────────────────────────────────


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "violations": exc.violations})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    violations = [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": ", ".join(violations), "violations": violations})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(AlreadyExistsError)
async def already_exists_handler(request: Request, exc: AlreadyExistsError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(WriteConflict)
async def write_conflict_handler(request: Request, exc: WriteConflict) -> JSONResponse:
    logger.warning("Write conflict: %s", exc)
    return JSONResponse(status_code=409, content={"detail": "concurrent update, try again"})


@app.exception_handler(PreconditionFailed)
async def precondition_handler(request: Request, exc: PreconditionFailed) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(TransientStoreError)
async def transient_error_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.warning("Transient ledger error: %s", exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "Ledger temporarily unavailable"},
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(CorruptedDataError)
async def corrupted_data_handler(request: Request, exc: CorruptedDataError) -> JSONResponse:
    logger.error("Ledger verification failed: %s", exc)
    return JSONResponse(
        status_code=502,
        content={"detail": f"Ledger verification failed: {exc}"},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Ledger error: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "Internal ledger error"})


@app.exception_handler(Exception)
async def universal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "An unexpected server error occurred."})


# ─── Routes ──────────────────────────────────────────────────────────


@app.get("/", tags=["health"])
async def root_node() -> dict:
    return {"service": "immuvoting", "version": __version__}


app.include_router(voting_router.router)
app.include_router(ledger_router.router)
