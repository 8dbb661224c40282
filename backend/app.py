import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.core.settings import get_settings
from backend.infrastructure import configure_model_gateway
from backend.routes import health, workflow

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Invoice Agent Workflow API", version="0.1.0")

    if settings.google_api_key:
        from backend.infrastructure.gemini import GeminiModelGateway

        gateway = GeminiModelGateway(
            settings.google_api_key,
            model=settings.gemini_model,
            max_retries=settings.gemini_max_retries,
        )
        configure_model_gateway(gateway)
        logger.info("Gemini gateway configured with model %s", settings.gemini_model)
    else:
        logger.warning("GOOGLE_API_KEY not configured; workflow runs will be rejected")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Workflow-Id"],
    )

    app.include_router(workflow.router, prefix="/api")
    app.include_router(health.router, prefix="/api")

    @app.get("/", include_in_schema=False)
    async def root() -> JSONResponse:
        """Provide a lightweight landing page for container checks."""
        return JSONResponse(
            {
                "message": "Invoice Agent Workflow API",
                "docs": "/docs",
                "health": "/api/health",
            }
        )

    return app


app = create_app()
