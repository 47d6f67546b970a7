"""
Main Web Application for the Crop Outbreak Alerting System

This module serves as the entry point for the web application, integrating:
- FastAPI web framework
- API routes for reports, clusters and regional alerts
- WebSocket connections for live alert views
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api_routes import api_router, ws_router
from integration import OutbreakAlertSystem, SystemConfig

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def create_app(system: Optional[OutbreakAlertSystem] = None) -> FastAPI:
    """Create the FastAPI application

    Args:
        system: System instance to serve; built from the environment when omitted
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.system = system or OutbreakAlertSystem(SystemConfig.from_env())
        await app.state.system.start()
        logger.info("System started successfully")
        yield
        await app.state.system.stop()
        logger.info("System shut down successfully")

    app = FastAPI(
        title="Crop Outbreak Alerting System",
        description="Crowd-sourced crop disease outbreak clustering and alerting",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify exact domains
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(api_router)
    app.include_router(ws_router)

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        system = getattr(request.app.state, "system", None)
        if not system:
            return {"status": "initializing"}

        return {
            "status": "healthy",
            "version": "1.0.0",
            "system_status": system.get_system_status(),
        }

    return app


app = create_app()

# Run the application
if __name__ == "__main__":
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        log_level="info"
    )
