import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from incidentdesk import __version__
from incidentdesk.api.v1.api import router as api_router
from incidentdesk.config import Settings, get_settings
from incidentdesk.container import ServiceContainer
from incidentdesk.core.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, container: ServiceContainer | None = None) -> FastAPI:
    """
    Composition root.

    A prebuilt container (tests) is used as-is and left open at shutdown;
    otherwise one is built from settings at startup and closed at shutdown.
    """
    settings = settings or (container.settings if container else get_settings())
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = container is None
        app.state.container = container or ServiceContainer.build(settings)
        app.state.container.prepare_storage()
        logger.info("Incident desk started (environment=%s)", settings.ENVIRONMENT)
        try:
            yield
        finally:
            if owned:
                app.state.container.close()

    app = FastAPI(title="Incident Desk API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else "Invalid request."
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": message})

    # Health check route
    @app.get("/health")
    def health_check():
        return {"status": "ok"}

    # Include v1 routers
    app.include_router(api_router, prefix="/api/v1")

    return app
