"""
FastAPI Webhook Server for the gig payment ledger
Receives gateway webhooks and checkout confirmations, runs the expiry sweep
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import Config
from database import Database
from jobs.negotiation_expiry import schedule_negotiation_expiry
from services.application_tracker import ApplicationTracker
from services.escrow_orchestrator import EscrowOrchestrator, PaymentContext
from services.event_bus import EventBus
from services.negotiation_engine import NegotiationEngine
from services.payment_gateway import PaymentGateway, RazorpayGateway
from services.wallet_service import WalletService
from services.webhook_security_service import WebhookSecurityService
from utils.error_handler import ErrorResponseBuilder, LedgerError

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler needs, wired once per process"""
    db: Database
    event_bus: EventBus
    gateway: PaymentGateway
    wallets: WalletService
    negotiations: NegotiationEngine
    applications: ApplicationTracker
    escrow: EscrowOrchestrator
    webhook_secret: str

    @classmethod
    def build(
        cls,
        db: Optional[Database] = None,
        gateway: Optional[PaymentGateway] = None,
        event_bus: Optional[EventBus] = None,
        webhook_secret: Optional[str] = None,
    ) -> "ServiceContainer":
        db = db or Database()
        gateway = gateway or RazorpayGateway()
        event_bus = event_bus or EventBus()
        wallets = WalletService(db, event_bus, gateway)
        applications = ApplicationTracker(db, event_bus)
        return cls(
            db=db,
            event_bus=event_bus,
            gateway=gateway,
            wallets=wallets,
            negotiations=NegotiationEngine(db, event_bus),
            applications=applications,
            escrow=EscrowOrchestrator(db, event_bus, gateway, wallets, applications),
            webhook_secret=webhook_secret if webhook_secret is not None else Config.GATEWAY_WEBHOOK_SECRET,
        )


class CaptureConfirmation(BaseModel):
    gateway_order_id: str
    signature: str
    gateway_payment_id: Optional[str] = None


def _payment_body(context: PaymentContext) -> dict:
    return {
        "payment_id": context.payment_id,
        "conversation_id": context.conversation_id,
        "status": context.status.value,
        "amount": context.amount,
        "platform_fee": context.platform_fee,
        "commission": context.commission,
        "total_payable": context.total_payable,
        "currency": context.currency,
        "gateway_order_id": context.gateway_order_id,
    }


def create_app(container: Optional[ServiceContainer] = None, run_scheduler: bool = True) -> FastAPI:
    """Build the ASGI app; tests pass a pre-wired container and skip the scheduler"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = container or ServiceContainer.build()
        app.state.services = services

        logger.info("🔧 Webhook server starting...")
        await services.db.create_tables()

        scheduler = None
        if run_scheduler:
            scheduler = AsyncIOScheduler(timezone="UTC")
            schedule_negotiation_expiry(scheduler, services.negotiations)
            scheduler.start()
            logger.info("⏰ Scheduler started")

        yield

        logger.info("🔄 Webhook server shutting down...")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await services.gateway.close()
        await services.db.dispose()

    app = FastAPI(
        title="Gig Ledger Webhook Server",
        description="Gateway webhooks and checkout confirmation for escrow payments",
        lifespan=lifespan,
    )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        error = ErrorResponseBuilder.from_exception(exc)
        status_code = ErrorResponseBuilder.http_status(error)
        logger.warning(f"⚠️ {request.method} {request.url.path} → {status_code} {type(exc).__name__}: {exc}")
        return JSONResponse(status_code=status_code, content=ErrorResponseBuilder.to_response_body(error))

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        services: ServiceContainer = request.app.state.services
        database_ok = await services.db.test_connection()
        return JSONResponse(
            content={
                "status": "healthy" if database_ok else "degraded",
                "service": "gig-ledger-webhooks",
                "database": database_ok,
                "environment": Config.CURRENT_ENVIRONMENT,
            },
            status_code=200 if database_ok else 503,
        )

    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request):
        """Payment gateway webhook: authorized, captured, order.paid, failed"""
        services: ServiceContainer = request.app.state.services
        body = await request.body()

        check = WebhookSecurityService.validate_gateway_webhook(request, body, services.webhook_secret)
        if not check["valid"]:
            status_code = 413 if check["error"] == "Payload too large" else 401
            return JSONResponse(status_code=status_code, content={"success": False, "error": check["error"]})

        result = await services.escrow.handle_webhook(body, check["signature"])
        return {
            "success": True,
            "event": result.event,
            "action": result.action.value,
            "payment_id": result.payment.payment_id if result.payment else None,
        }

    @app.post("/payments/confirm")
    async def confirm_payment(request: Request, confirmation: CaptureConfirmation):
        """Checkout callback carrying the gateway's capture signature"""
        services: ServiceContainer = request.app.state.services
        context = await services.escrow.confirm_capture(
            confirmation.gateway_order_id,
            confirmation.signature,
            confirmation.gateway_payment_id,
        )
        return {"success": True, "payment": _payment_body(context)}

    return app
