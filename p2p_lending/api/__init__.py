"""
P2P Lending API Application Factory
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .dependencies import LendingSystem
from .users import router as users_router
from .loans import router as loans_router
from .admin import router as admin_router
from .. import __version__
from ..exceptions import LendingError, CollaboratorError


logger = logging.getLogger("p2p_lending.api")


def create_app(system: Optional[LendingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application around a lending system"""
    app = FastAPI(
        title="P2P Lending API",
        description="Peer-to-peer micro-loan lifecycle, ledger and repayment scheduler",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LendingSystem()

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValueError)
    async def validation_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        if isinstance(exc, LookupError):
            return JSONResponse(status_code=404, content={"detail": str(exc)})
        if isinstance(exc, CollaboratorError) or not isinstance(exc, ValueError):
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
            return JSONResponse(status_code=500, content={"detail": str(exc)})
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # Include routers
    app.include_router(users_router, prefix="/users", tags=["Users"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(admin_router, prefix="/admin", tags=["Admin"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "p2p_lending_api",
            "version": __version__
        }

    # Root endpoint
    @app.get("/")
    async def get_api_info():
        """Get API information"""
        return {
            "name": "P2P Lending API",
            "version": __version__,
            "endpoints": {
                "docs": "/docs",
                "health": "/health",
                "users": "/users",
                "loans": "/loans",
                "admin": "/admin",
            }
        }

    return app


def run_server(host: str = "0.0.0.0", port: int = 8090, debug: bool = False):
    """Run the FastAPI server"""
    import uvicorn
    from ..config import get_config
    from ..logging_config import setup_logging

    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(
        "p2p_lending.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=debug,
        log_level=config.log_level.lower()
    )
