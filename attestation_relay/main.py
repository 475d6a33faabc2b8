"""
Attestation Relay - FDC attestation gateway

Main application entry point.

Fetches a real-world fact, checks it against the action's rule, has the
verifier encode it, pays the hub to attest it, and records the outcome
on the user-action ledger.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import router
from .config import RelayConfig
from .core.chain import ChainSubmitter
from .core.encoder import AttestationRequestEncoder
from .core.errors import ConfigurationError
from .core.orchestrator import AttestationOrchestrator
from .core.proofs import ProofClient
from .core.predicate import PredicateEvaluator
from .core.registry import build_registry
from .db.store import InMemoryRecordStore
from .observability import (
    setup_logging,
    get_logger,
    RequestContextMiddleware,
    check_health,
    get_metrics,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def build_orchestrator(
    config: RelayConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AttestationOrchestrator:
    """
    Wire the production orchestrator from configuration.

    Raises:
        ConfigurationError: If the configuration is invalid
    """
    config.validate()
    registry = build_registry(config, http_client)
    return AttestationOrchestrator(
        config=config,
        registry=registry,
        evaluator=PredicateEvaluator(registry.rules()),
        encoder=AttestationRequestEncoder(
            config.verifier_base_url,
            config.verifier_api_key,
            client=http_client,
            timeout=config.verifier_timeout,
        ),
        submitter=ChainSubmitter.from_config(config),
        store=InMemoryRecordStore(limit=config.record_history_limit),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    http_client = None

    # Startup: build the orchestrator unless one was injected
    if getattr(app.state, "orchestrator", None) is None:
        config = RelayConfig.from_env()
        try:
            http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.fact_timeout))
            app.state.orchestrator = build_orchestrator(config, http_client)
        except ConfigurationError as e:
            logger.critical("Relay configuration invalid", problems=e.problems or [str(e)])
            if http_client is not None:
                await http_client.aclose()
            raise
        app.state.record_store = app.state.orchestrator.store

        try:
            app.state.proof_client = ProofClient.from_config(config, http_client)
        except ConfigurationError as e:
            logger.info("Proof lookups disabled", problems=e.problems)
            app.state.proof_client = None

    orchestrator = app.state.orchestrator
    logger.info(
        "Application startup complete",
        config=orchestrator.config.redacted(),
        submitter=orchestrator.submitter.address if orchestrator.submitter else None,
    )

    yield

    # Shutdown: close the shared HTTP client
    if http_client is not None:
        await http_client.aclose()
        logger.info("HTTP client closed")

    logger.info("Application shutdown complete")


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def create_app(
    orchestrator: Optional[AttestationOrchestrator] = None,
    proof_client: Optional[ProofClient] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Passing an orchestrator skips environment loading; tests use this to
    inject fakes.
    """
    app = FastAPI(
        title="Attestation Relay",
        description="""
## FDC Attestation Relay

Verifies real-world facts for a user action and relays them on-chain.

### Pipeline

```
fetch fact -> check rule -> verifier prepareRequest -> hub requestAttestation -> ledger recordVerifiedAction
```

### Outcomes

- **200**: recorded; `txHash` is the hub request, `recordTxHash` the ledger record
- **422**: fact fetched but the condition is not met (`value` is the observation)
- **400**: unsupported action type or malformed body
- **409**: the same user/action is already being processed
- **500/502/503**: technical failure, tagged with `reason`

Once a hub request's voting round is captured, `GET /attestations/{id}/proof`
returns its finalised Merkle proof from the DA layer.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    if orchestrator is not None:
        app.state.orchestrator = orchestrator
        app.state.record_store = orchestrator.store
        app.state.proof_client = proof_client

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # 422 is reserved for unmet conditions
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"error": f"{field}: {message}" if field else message},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "attestation-relay"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(request: Request):
        """
        Detailed health check.

        Checks:
        - Service liveness
        - Configuration validity
        - Chain RPC connectivity

        Returns 200 if healthy, 503 if unhealthy.
        """
        orchestrator = request.app.state.orchestrator
        health_status = check_health(
            config=orchestrator.config,
            submitter=orchestrator.submitter,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
                "in_flight": len(orchestrator.in_flight),
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics():
        """
        Get application metrics.

        Returns counters and latency percentiles.
        """
        return get_metrics().get_summary()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "attestation_relay.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
