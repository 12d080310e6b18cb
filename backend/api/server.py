"""
Stripe Order Reconciliation Server
==================================
FastAPI server with:
- Stripe webhook endpoint (signature gate, event dispatch)
- Payment form submission endpoint
- Read-only order lookups
- Health monitoring

pip install fastapi uvicorn pydantic stripe structlog asyncpg httpx
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
import uvicorn
import structlog

from database import (
    Database,
    PostgresCustomerStore,
    PostgresMessageLog,
    PostgresOrderStore,
    PostgresPaymentFormStore,
)
from pipeline.errors import PaymentValidationError
from pipeline.gateway import PaymentGateway
from pipeline.settings import PaymentSettings
from schemas.orders import OrderStatus, PaymentSubmission


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


config = ServerConfig()
VERSION = "1.0.0"


# Configure structured logging
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=True) if config.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, config.LOG_LEVEL, logging.INFO)
    ),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger().bind(component="server")


def build_postgres_gateway(settings: PaymentSettings) -> PaymentGateway:
    return PaymentGateway(
        settings=settings,
        order_store=PostgresOrderStore(),
        customer_store=PostgresCustomerStore(),
        message_log=PostgresMessageLog(),
        form_store=PostgresPaymentFormStore(),
    )


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    test_mode: bool
    signature_verification: bool
    database_connected: bool
    supported_events: List[str]


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(gateway: Optional[PaymentGateway] = None) -> FastAPI:
    """
    Build the FastAPI app.

    With no ``gateway`` the lifespan connects to PostgreSQL and builds one
    from the environment; tests inject an in-memory gateway instead.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV)

        owns_gateway = app.state.gateway is None
        if owns_gateway:
            await Database.initialize()
            app.state.gateway = build_postgres_gateway(PaymentSettings.from_env())
            app.state.database = True

        yield

        # Cleanup
        logger.info("server_shutting_down")
        await app.state.gateway.close()
        if owns_gateway:
            await Database.close()

    app = FastAPI(
        title="Stripe Order Reconciliation",
        description="Stripe payments, orders and webhook reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.database = False
    app.state.started_at = datetime.now(timezone.utc)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(PaymentValidationError)
    async def payment_validation_error(request: Request, exc: PaymentValidationError):
        logger.warning("payment_rejected", errors=exc.messages)
        return JSONResponse(status_code=400, content={"success": False, "errors": exc.messages})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}"
            for error in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"success": False, "errors": errors})

    # =========================================================================
    # HEALTH ENDPOINTS
    # =========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check(gateway: PaymentGateway = Depends(get_gateway)):
        """Health check endpoint"""
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            test_mode=gateway.settings.test_mode,
            signature_verification=gateway.settings.active_webhook_secret is not None,
            database_connected=app.state.database and await Database.is_ready(),
            supported_events=gateway.dispatcher.supported_events,
        )

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        if app.state.database and not await Database.is_ready():
            return JSONResponse(status_code=503, content={"ready": False})
        return {"ready": True}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # =========================================================================
    # STRIPE ENDPOINTS
    # =========================================================================

    @app.post("/stripe/webhook")
    async def stripe_webhook(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        """
        Stripe webhook handler. 400 with an empty body when the signature
        or payload is rejected, 200 otherwise.
        """
        payload = await request.body()
        status_code, body = await gateway.process_webhook(payload, request.headers.get("stripe-signature"))
        if body is None:
            return Response(status_code=status_code)
        return JSONResponse(status_code=status_code, content=body)

    @app.post("/stripe/payments")
    async def submit_payment(submission: PaymentSubmission, gateway: PaymentGateway = Depends(get_gateway)):
        """Charge or subscribe for a posted payment form"""
        order = await gateway.process_payment(submission)
        if order is None:
            return JSONResponse(
                status_code=402,
                content={"success": False, "errors": ["Payment could not be completed"]},
            )
        return {"success": True, "order": order.model_dump(mode="json")}

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.get("/orders")
    async def list_orders(status: Optional[OrderStatus] = None, gateway: PaymentGateway = Depends(get_gateway)):
        orders = await gateway.list_orders(status)
        return {"orders": [order.model_dump(mode="json") for order in orders], "count": len(orders)}

    @app.get("/orders/{number}")
    async def get_order(number: str, gateway: PaymentGateway = Depends(get_gateway)) -> Dict[str, Any]:
        order = await gateway.get_order(number)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order.model_dump(mode="json")

    @app.get("/orders/{number}/messages")
    async def get_order_messages(number: str, gateway: PaymentGateway = Depends(get_gateway)):
        messages = await gateway.get_messages(number)
        if messages is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return {"messages": [message.model_dump(mode="json") for message in messages]}

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
