"""FastAPI application factory"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from bnpl_scheduler.api.middleware import MetricsMiddleware, RequestIDMiddleware
from bnpl_scheduler.api.v1 import early_payment, installments, payment_methods, schedules
from bnpl_scheduler.config import settings
from bnpl_scheduler.infrastructure.clients.gateway import GatewayClient
from bnpl_scheduler.infrastructure.clients.notifications import NotificationClient
from bnpl_scheduler.infrastructure.database.session import get_session_factory
from bnpl_scheduler.infrastructure.observability.logging import setup_logging
from bnpl_scheduler.services.batch import BatchProcessor
from bnpl_scheduler.services.notifications import NotificationDispatcher
from bnpl_scheduler.services.ticker import PaymentTicker

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the payment ticker for the lifetime of the app when enabled"""
    ticker = None
    if settings.enable_ticker:
        session_factory = get_session_factory()
        processor = BatchProcessor(session_factory, GatewayClient())
        app.state.batch_processor = processor
        ticker = PaymentTicker(processor, NotificationDispatcher(session_factory, NotificationClient()))
        ticker.start()

    yield

    if ticker is not None:
        await ticker.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="BNPL Installment Scheduler",
        description="Installment scheduling, processing and retry service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(schedules.router, prefix="/v1", tags=["schedules"])
    app.include_router(installments.router, prefix="/v1", tags=["installments"])
    app.include_router(early_payment.router, prefix="/v1", tags=["early-payment"])
    app.include_router(payment_methods.router, prefix="/v1", tags=["payment-methods"])

    return app


app = create_app()
