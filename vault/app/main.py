import asyncio
import sys
import logging
import httpx

from contextlib import asynccontextmanager
from importlib.metadata import version, PackageNotFoundError

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from vault.app.api.correlation import CorrelationIdMiddleware
from vault.app.api.routes import router as records_router
from vault.app.core.config import Settings, get_settings
from vault.app.core.credentials import resolve_mode

logger = logging.getLogger("vault.main")


def get_app_version() -> str:
    """
    Resolve application version deterministically.

    Falls back to the source-tree version when not installed.
    """
    try:
        return version("nullifier-vault")
    except PackageNotFoundError:
        return "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Guarantees:
    - Fail-fast startup if configuration is malformed
    - Pre-allocated shared transport for the pinning service
    - No credential is pinned at startup; mode is resolved per request
    """
    logger.info(
        "vault_startup_begin",
        extra={
            "service": "vault",
            "version": get_app_version(),
        },
    )

    # ------------------------------------------------------------------
    # Validate configuration once (FAIL FAST). Requests re-read it.
    # ------------------------------------------------------------------
    try:
        settings = Settings()
    except Exception:
        logger.exception("invalid_vault_configuration")
        raise

    logger.info(
        "vault_storage_mode",
        extra={"mode": resolve_mode(settings).value},
    )

    # ------------------------------------------------------------------
    # Persistent HTTP client for the pinning service and gateway.
    # ------------------------------------------------------------------
    app.state.http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(
            timeout=settings.http_timeout_seconds,
            connect=10.0,
        ),
        limits=httpx.Limits(
            max_keepalive_connections=20,
            max_connections=50,
        ),
        headers={
            "User-Agent": f"nullifier-vault/{get_app_version()}",
        },
    )
    app.state.mapping_lock = asyncio.Lock()

    try:
        yield
    finally:
        logger.info("vault_shutdown_begin")

        # Idempotent shutdown
        try:
            await app.state.http_client.aclose()
        except Exception:
            logger.warning("http_client_shutdown_failed")


def create_app() -> FastAPI:
    """
    Application factory for the nullifier verification vault.
    """
    app = FastAPI(
        title="Nullifier Vault",
        description=(
            "Nullifier-indexed verification record store "
            "backed by a content-addressed pinning service."
        ),
        version=get_app_version(),
        docs_url="/docs",
        redoc_url=None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Internal service; CORS enforced at ingress / mesh layer
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(records_router)

    @app.get(
        "/healthz",
        tags=["Monitoring"],
        summary="Liveness and readiness probe",
    )
    async def health_check(settings: Settings = Depends(get_settings)):
        """
        Verifies that the runtime is alive and reports the storage mode
        the next request would use.

        NOTE:
        - Does NOT call the pinning service
        """
        return ORJSONResponse(
            content={
                "status": "ok",
                "service": "vault",
                "version": app.version,
                "runtime": f"python {sys.version.split()[0]}",
                "storage_mode": resolve_mode(settings).value,
            }
        )

    return app


app = create_app()
