import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated, List, Optional

from fastapi import FastAPI, Response, Request, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import get_settings
from app.errors import MalformedTimestamp, SourceError, StoreError
from app.logging_utils import setup_logging, RequestLoggingMiddleware
from app.metrics import get_metrics, get_metrics_content_type, set_modem_count, set_stored_message_count
from app.modem import DBusModemSource, ModemSource
from app.poller import SmsPoller
from app.schemas import ApiResponse, MessageResponse, ModemResponse
from app.storage import MessageStore
from app.utils import parse_timestamp


settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: open the store, connect to the modem manager, start polling
    - Shutdown: stop polling between cycles, release what startup opened
    """
    logger.info("Starting Samson SMS Daemon")

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = MessageStore(settings.DATABASE_URL)
    store: MessageStore = app.state.store

    owns_source = app.state.source is None
    try:
        store.init_db()
        if owns_source:
            app.state.source = await DBusModemSource.connect()
            logger.info("Connected to ModemManager")
    except Exception:
        if owns_store:
            store.dispose()
            app.state.store = None
        raise
    source: ModemSource = app.state.source

    poller = SmsPoller(source, store, app.state.poll_interval or settings.POLL_INTERVAL)
    app.state.poller = poller
    poller.start()

    try:
        yield
    finally:
        logger.info("Initiating graceful shutdown...")
        await poller.stop()
        if owns_source:
            await source.close()
        if owns_store:
            store.dispose()
        logger.info("Samson SMS Daemon stopped")


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_source(request: Request) -> ModemSource:
    return request.app.state.source


# =============================================================================
# Error Handlers
# =============================================================================

def _envelope(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ApiResponse.fail(error).model_dump(exclude_none=True),
    )


async def malformed_timestamp_handler(request: Request, exc: MalformedTimestamp) -> JSONResponse:
    return _envelope(
        status.HTTP_400_BAD_REQUEST,
        f"Invalid 'after' timestamp format. Expected RFC3339: {exc}",
    )


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    logger.error(f"Database error: {exc}")
    return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Database error: {exc}")


async def source_error_handler(request: Request, exc: SourceError) -> JSONResponse:
    logger.error(f"Modem manager error: {exc}")
    return _envelope(status.HTTP_500_INTERNAL_SERVER_ERROR, f"Failed to get modems: {exc}")


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(status.HTTP_400_BAD_REQUEST, f"Invalid request: {exc.errors()}")


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _envelope(exc.status_code, str(exc.detail))


# =============================================================================
# Messages Routes
# =============================================================================

AfterParam = Annotated[
    Optional[str],
    Query(description="Only messages strictly after this RFC3339 timestamp"),
]


def _query_messages(store: MessageStore, device_identity: Optional[str], after: Optional[str]) -> ApiResponse[List[MessageResponse]]:
    after_ts = parse_timestamp(after) if after is not None else None

    messages = store.query(device_identity=device_identity, after=after_ts)
    logger.debug(f"Returning {len(messages)} messages (device={device_identity}, after={after_ts})")

    return ApiResponse.ok([MessageResponse.from_stored(m) for m in messages])


def list_device_messages(
    device_identity: str,
    after: AfterParam = None,
    store: MessageStore = Depends(get_store),
) -> ApiResponse[List[MessageResponse]]:
    """
    List messages received by one modem, oldest first.

    Query Parameters:
        - after: exclusive lower bound on the message timestamp (RFC3339;
          offsets like "+01" are accepted)
    """
    return _query_messages(store, device_identity, after)


def list_all_messages(
    after: AfterParam = None,
    store: MessageStore = Depends(get_store),
) -> ApiResponse[List[MessageResponse]]:
    """List messages from every modem, oldest first."""
    return _query_messages(store, None, after)


# =============================================================================
# Modem, Health and Metrics Routes
# =============================================================================

async def list_modems(source: ModemSource = Depends(get_source)) -> ApiResponse[List[ModemResponse]]:
    """Modems currently visible to the modem manager."""
    modems = await source.list_modems()
    return ApiResponse.ok([ModemResponse.from_identity(m) for m in modems])


async def health_live() -> ApiResponse[str]:
    """
    Liveness check - always returns 200 once the daemon is running.
    Independent of store and modem health.
    """
    return ApiResponse.ok("OK")


def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> ApiResponse[str]:
    """
    Readiness check - returns 200 only if the DB is reachable and the
    schema is applied, 503 otherwise.
    """
    if not store.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return ApiResponse.fail("Database not reachable or schema not applied")
    return ApiResponse.ok("OK")


async def metrics(
    source: ModemSource = Depends(get_source),
    store: MessageStore = Depends(get_store),
) -> Response:
    """
    Expose Prometheus-style metrics.

    The modem_count gauge is refreshed on every scrape and reads 0 when
    the modem manager cannot be reached. stored_messages keeps its last
    value when the store cannot be counted.
    """
    try:
        modems = await source.list_modems()
        set_modem_count(len(modems))
    except SourceError as e:
        logger.warning(f"Failed to count modems for metrics: {e}")
        set_modem_count(0)

    try:
        set_stored_message_count(await asyncio.to_thread(store.count))
    except StoreError as e:
        logger.warning(f"Failed to count stored messages for metrics: {e}")

    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application
# =============================================================================

def create_app(
    store: Optional[MessageStore] = None,
    source: Optional[ModemSource] = None,
    poll_interval: Optional[float] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    store and source default to ones built from settings at startup;
    pass them in to use existing handles.
    """
    app = FastAPI(
        title="Samson SMS Daemon",
        description="Stores SMS messages received by ModemManager modems",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.source = source
    app.state.poll_interval = poll_interval
    app.state.poller = None

    app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(MalformedTimestamp, malformed_timestamp_handler)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(SourceError, source_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    exclude_none = {"response_model_exclude_none": True}
    app.add_api_route("/messages", list_all_messages, methods=["GET"], **exclude_none)
    app.add_api_route("/messages/{device_identity}", list_device_messages, methods=["GET"], **exclude_none)
    app.add_api_route("/modems", list_modems, methods=["GET"], **exclude_none)
    app.add_api_route("/health", health_live, methods=["GET"], **exclude_none)
    app.add_api_route("/health/live", health_live, methods=["GET"], **exclude_none)
    app.add_api_route("/health/ready", health_ready, methods=["GET"], **exclude_none)
    app.add_api_route("/metrics", metrics, methods=["GET"])

    return app


app = create_app()
