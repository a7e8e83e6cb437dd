# backend/carshare/main.py
import asyncio
from contextlib import asynccontextmanager
import contextlib
import logging
from typing import AsyncGenerator, Optional

from fastapi import FastAPI

from .api.dependencies import build_booking_service, build_reconciler
from .core.config import is_running_tests, settings
from .database import init_db
from .errors import register_error_handlers
from .routes import health, prometheus
from .routes.v1 import bookings as bookings_v1
from .routes.health import API_VERSION
from .services.booking_service import BookingService
from .services.payment_reconciler import PaymentReconciler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

API_TITLE = "Carshare Booking API"
API_DESCRIPTION = "Peer-to-peer vehicle rental bookings: requests, payment holds and rentals"


async def _run_background_jobs(
    service: BookingService, reconciler: PaymentReconciler, interval_seconds: int
) -> None:
    """Expire stale requests and retry failed payment operations on a fixed interval."""
    while True:
        try:
            await service.expire_stale_requests()
            await reconciler.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Background booking jobs failed: %s", e, exc_info=True)
        await asyncio.sleep(interval_seconds)


def create_app(
    booking_service: Optional[BookingService] = None,
    *,
    start_background_jobs: Optional[bool] = None,
) -> FastAPI:
    """
    Build the API application.

    Without an explicit ``booking_service`` the lifespan creates the tables
    and wires the SQLAlchemy and Stripe backed service.
    """
    if start_background_jobs is None:
        start_background_jobs = settings.background_jobs_enabled and not is_running_tests()

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("%s starting up (environment=%s)", API_TITLE, settings.environment)
        service = booking_service
        if service is None:
            init_db()
            service = build_booking_service()
        app.state.booking_service = service

        jobs_task: asyncio.Task[None] | None = None
        if start_background_jobs:
            jobs_task = asyncio.create_task(
                _run_background_jobs(
                    service, build_reconciler(service), settings.background_jobs_interval_seconds
                )
            )
            logger.info(
                "Background booking jobs every %ss", settings.background_jobs_interval_seconds
            )

        yield

        logger.info("%s shutting down...", API_TITLE)
        if jobs_task is not None:
            jobs_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await jobs_task
        await service.drain_background_tasks()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    register_error_handlers(app)
    if booking_service is not None:
        # usable before the lifespan runs (plain TestClient without a context manager)
        app.state.booking_service = booking_service

    app.include_router(bookings_v1.router, prefix="/api/v1/bookings")
    app.include_router(health.router)
    app.include_router(prometheus.router)
    return app


app = create_app()
