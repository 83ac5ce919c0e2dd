"""
FastAPI application factory.
Creates and configures the main FastAPI application instance.
"""

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config.settings import settings
from app.core.logging import setup_logging
from app.api.routes import (
    crm_webhook_routes, cron_routes, trigger_routes, gateway_webhook_routes, queue_routes, conversation_routes
)
from app.db.database import init_db

# Set up logging
setup_logging()


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: The configured application instance
    """

    app = FastAPI(
        title="Chatsetter API",
        description="CRM triggers and automated WhatsApp conversations",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """
        Initialize the database and the LLM client when the application starts.
        """
        logger = logging.getLogger(__name__)

        try:
            logger.info("🚀 Starting service and database initialization...")

            await init_db()

            if settings.openai_api_key:
                from app.services.llm_service import openai_llm_service
                await openai_llm_service.initialize()
                logger.info("✅ LLM service ready")
            else:
                logger.warning("No OPENAI_API_KEY configured - AI replies will fail")

            if not settings.messaging_api_url:
                logger.warning("No MESSAGING_API_URL configured - messages cannot be sent")

            logger.info("✅ Service and database initialization completed")
        except Exception as e:
            # Log error but don't prevent server startup
            logger.error(f"❌ Failed to initialize services during startup: {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger = logging.getLogger(__name__)
        logger.info("All resources cleaned up")

    # Include routers
    app.include_router(crm_webhook_routes.router)
    app.include_router(cron_routes.router)
    app.include_router(trigger_routes.router)
    app.include_router(gateway_webhook_routes.router)
    app.include_router(queue_routes.router)
    app.include_router(conversation_routes.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


# Create the application instance
app = create_app()
