"""
FastAPI Webhook Server for carrier callbacks
Receives redirection resolution and delivery scan webhooks; the response never
contains the real destination, which travels only through the carrier gateway.
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import Optional

from config import Config
from models import IncidentType
from services.collaborators import (
    InMemoryUserDirectory,
    LoggingCarrierGateway,
    LoggingNotificationDispatcher,
)
from services.redirection_engine import RedirectionEngine
from services.trade_security_service import TradeSecurityService
from services.webhook_security_service import CarrierWebhookSecurity
from utils.exception_handler import (
    TradeSecurityError,
    ValidationError,
    InvalidTransitionError,
    TradeNotFoundError,
    RedirectionNotFoundError,
    RedirectionExpiredError,
    AddressIntegrityError,
    ConcurrentModificationError,
    TradeCompletionError,
)

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (RedirectionNotFoundError, 404),
    (TradeNotFoundError, 404),
    (RedirectionExpiredError, 410),
    (AddressIntegrityError, 409),
    (InvalidTransitionError, 409),
    (ConcurrentModificationError, 409),
    (ValidationError, 422),
    (TradeCompletionError, 500),
)


@dataclass
class WebhookServices:
    redirection_engine: RedirectionEngine
    trade_service: TradeSecurityService


def build_default_services() -> WebhookServices:
    """Wire the services against the configured database and logging collaborators"""
    from database import SessionLocal, create_tables

    create_tables()
    directory = InMemoryUserDirectory()
    engine = RedirectionEngine(SessionLocal, carrier_gateway=LoggingCarrierGateway())
    trade_service = TradeSecurityService(
        SessionLocal,
        directory,
        notifier=LoggingNotificationDispatcher(),
        redirection_engine=engine,
    )
    return WebhookServices(redirection_engine=engine, trade_service=trade_service)


def _status_code_for(error: TradeSecurityError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 400


def create_app(services: Optional[WebhookServices] = None, run_scheduler: bool = True) -> FastAPI:
    """
    Build the webhook application. Injected services are used as-is; otherwise
    the defaults are built and the expiry scheduler started at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if getattr(app.state, "services", None) is None:
            Config.log_environment_config()
            app.state.services = build_default_services()
        if run_scheduler:
            from jobs.scheduler import TradeSecurityScheduler

            scheduler = TradeSecurityScheduler(app.state.services.redirection_engine)
            scheduler.start()

        yield

        if scheduler is not None:
            scheduler.shutdown()
        logger.info("🔄 Webhook server shutting down...")

    app = FastAPI(
        title="CADOK Carrier Webhook Server",
        description="Redirection resolution and delivery scans for anonymized parcels",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(TradeSecurityError)
    async def trade_security_error_handler(request: Request, exc: TradeSecurityError):
        status_code = _status_code_for(exc)
        body = {"error": type(exc).__name__, "detail": exc.message}
        if isinstance(exc, InvalidTransitionError):
            body["current_state"] = exc.current_state
        if isinstance(exc, AddressIntegrityError):
            body["detail"] = "Redirection is held for manual review"
        logger.warning(f"⚠️ WEBHOOK_REJECTED: {request.url.path} -> {status_code} {type(exc).__name__}")
        return JSONResponse(status_code=status_code, content=body)

    async def _authenticate(request: Request, code: str) -> None:
        body = await request.body()
        signature = request.headers.get(Config.CARRIER_SIGNATURE_HEADER)
        result = CarrierWebhookSecurity.validate_carrier_webhook(body, signature)
        if not result["valid"]:
            engine = app.state.services.redirection_engine
            await run_in_threadpool(
                engine.audit_logger.record_incident,
                IncidentType.INVALID_WEBHOOK_SIGNATURE,
                {"path": request.url.path, "error": result["error"]},
                code,
                None,
                "medium",
            )
            raise HTTPException(status_code=401, detail=result["error"])

    @app.get("/health")
    async def health_check():
        from database import check_connection

        services = app.state.services
        if services is None:
            return JSONResponse(
                content={"status": "starting", "services_ready": False},
                status_code=503,
            )

        database_ok = await run_in_threadpool(check_connection, services.redirection_engine.session_factory)
        return JSONResponse(
            content={
                "status": "healthy" if database_ok else "degraded",
                "environment": Config.CURRENT_ENVIRONMENT,
                "services_ready": True,
                "database": "ok" if database_ok else "unreachable",
                "resolved_address_cache": services.redirection_engine.address_cache.get_stats(),
            },
            status_code=200 if database_ok else 503,
        )

    @app.post("/redirection/{code}/resolve")
    async def resolve_redirection_webhook(code: str, request: Request):
        """Carrier scanned a parcel bearing `code` and needs its real destination"""
        start_time = time.time()
        await _authenticate(request, code)

        engine = app.state.services.redirection_engine
        resolved = await run_in_threadpool(engine.resolve_redirection, code)

        processing_ms = (time.time() - start_time) * 1000
        logger.info(
            f"✅ RESOLVE_WEBHOOK: {code} first={resolved.first_resolution} in {processing_ms:.1f}ms"
        )
        return {
            "status": "resolved" if resolved.first_resolution else "already_resolved",
            "redirection_code": code,
            "trade_id": resolved.trade_id,
            "direction": resolved.direction.value,
            "carrier_notified": resolved.first_resolution,
        }

    @app.post("/redirection/{code}/delivered")
    async def delivery_scan_webhook(code: str, request: Request):
        """Carrier delivered the parcel bearing `code` to its real destination"""
        await _authenticate(request, code)

        trade_service = app.state.services.trade_service
        summary = await run_in_threadpool(trade_service.confirm_delivery_by_carrier, code)
        logger.info(f"✅ DELIVERY_WEBHOOK: {code} trade={summary.trade_id} status={summary.status.value}")
        return {
            "status": "recorded",
            "redirection_code": code,
            "trade_id": summary.trade_id,
            "trade_status": summary.status.value,
        }

    return app


app = create_app()
