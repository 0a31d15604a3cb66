"""
P2P Lending API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .agreements import router as agreements_router
from .loan_requests import router as requests_router
from .payments import router as payments_router, methods_router as payment_methods_router
from .notifications import router as notifications_router, dashboard_router
from .dependencies import set_lending_system
from .. import __version__
from ..config import get_config
from ..system import LendingSystem


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    if system is not None:
        set_lending_system(system)

    app = FastAPI(
        title="LendIt P2P Lending API",
        description="Peer-to-peer loan requests, offers, acceptance and multi-method settlement",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(agreements_router, prefix="/agreements", tags=["Agreements"])
    app.include_router(requests_router, prefix="/requests", tags=["Loan Requests"])
    app.include_router(payments_router, prefix="/payments", tags=["Payments"])
    app.include_router(payment_methods_router, prefix="/payment-methods", tags=["Payment Methods"])
    app.include_router(notifications_router, prefix="/notifications", tags=["Notifications"])
    app.include_router(dashboard_router, prefix="/dashboard", tags=["Dashboard"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "lendit_api",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    cfg = get_config()
    uvicorn.run(
        "core_lending.api:create_app",
        factory=True,
        host=host or cfg.api_host,
        port=port or cfg.api_port,
        reload=debug,
        log_level=cfg.log_level.lower()
    )
