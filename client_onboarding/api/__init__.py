"""
Client Onboarding API Application Factory
"""

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from .workflows import router as workflows_router
from .documents import router as documents_router
from .identity import router as identity_router
from .account_setup import router as account_setup_router
from .compliance import router as compliance_router
from .progress import router as progress_router
from .analytics import router as analytics_router
from .clients import router as clients_router
from .admin import router as admin_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Client Onboarding API",
        description="Client onboarding orchestration: documents, identity, compliance, account setup and progress",
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

    # Workflow-scoped routers share the /onboarding prefix
    app.include_router(workflows_router, prefix="/onboarding", tags=["Workflows"])
    app.include_router(documents_router, prefix="/onboarding", tags=["Documents"])
    app.include_router(identity_router, prefix="/onboarding", tags=["Identity Verification"])
    app.include_router(account_setup_router, prefix="/onboarding", tags=["Account Setup"])
    app.include_router(compliance_router, prefix="/onboarding", tags=["Compliance"])
    app.include_router(progress_router, prefix="/onboarding", tags=["Progress"])
    app.include_router(analytics_router, prefix="/onboarding/analytics", tags=["Analytics"])
    app.include_router(clients_router, prefix="/onboarding/client", tags=["Client"])
    app.include_router(admin_router, prefix="/onboarding/admin", tags=["Admin"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "client_onboarding_api",
            "version": __version__
        }

    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "Client Onboarding API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "workflows": "/onboarding/workflows",
                "analytics": "/onboarding/analytics",
                "client": "/onboarding/client/{client_id}",
                "admin": "/onboarding/admin",
            }
        }

    return app


app = create_app()


def run_server(host: str = "0.0.0.0", port: int = 8095, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "client_onboarding.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )
