import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from medtriage.api.patients import router as patients_router
from medtriage.api.routes import router as prediction_router
from medtriage.core.config import Settings, get_settings
from medtriage.core.errors import TriageError
from medtriage.core.logging_config import configure_logging
from medtriage.services.container import ServiceContainer, build_services

logger = logging.getLogger(__name__)


def _error_body(message: str, exc: Exception, settings: Settings) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    if settings.is_development:
        body["error"] = str(exc)
    return body


def create_app(settings: Optional[Settings] = None, services: Optional[ServiceContainer] = None) -> FastAPI:
    """Application factory.

    Tests pass their own ``settings`` and ``services``; a deployment relies on
    the environment / ``.env`` defaults.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description=(
            "Research-only backend for medical image triage (pneumonia, brain tumor, tuberculosis).\n\n"
            "This service is not a medical device and must not be used for real clinical decisions."
        ),
    )
    application.state.services = services or build_services(settings)

    # For a real deployment you should replace "*" with the concrete frontend URL(s).
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(TriageError)
    async def handle_triage_error(request: Request, exc: TriageError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc, settings))

    @application.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        content = {"success": False, "message": "Validation failed", "errors": jsonable_encoder(exc.errors())}
        return JSONResponse(status_code=400, content=content)

    @application.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_body("Internal server error", exc, settings))

    # Endpoints live under /api/prediction/... and /api/patients/...
    application.include_router(prediction_router, prefix=settings.api_prefix)
    application.include_router(patients_router, prefix=settings.api_prefix)

    @application.get("/", tags=["health"])
    async def health_check() -> dict:
        """Simple health-check endpoint used by the frontend and tests."""
        return {
            "status": "ok",
            "message": "MedTriage backend is running (research-only, not for clinical use).",
            "backend": settings.classifier_backend,
        }

    return application


app = create_app()
