"""
Union Ledger API Application Factory
"""

import uvicorn
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .loans import router as loans_router
from .imports import router as imports_router
from .dependencies import get_system
from .errors import register_error_handlers
from ..system import LedgerSystem


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Union Ledger API",
        description="Credit union account ledger and loan amortization engine",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/transactions", tags=["Transactions"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(imports_router, prefix="/imports", tags=["Imports"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "union_ledger_api",
            "version": __version__
        }

    @app.get("/audit/integrity", tags=["Audit"])
    def verify_audit_integrity(system: LedgerSystem = Depends(get_system)):
        """Verify the audit hash chain end to end"""
        return system.audit_trail.verify_integrity()

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "union_ledger.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
