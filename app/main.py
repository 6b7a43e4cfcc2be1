import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import api_router
from app.core.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.logging import setup_logging
from app.db import models  # noqa: F401
from app.db.base import Base
from app.db.session import SessionLocal, engine
from app.middleware.request_context import RequestContextMiddleware
from app.services.container import ServiceContainer

settings = get_settings()
setup_logging(logging.DEBUG if settings.DEBUG else logging.INFO)
logger = logging.getLogger(__name__)

# Never debug=True: Starlette then skips the ServerError handler. DEBUG only sets log level.
app = FastAPI(title=settings.APP_NAME)
app.include_router(api_router, prefix=settings.API_PREFIX)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)
register_exception_handlers(app)


@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)
    app.state.services = ServiceContainer.from_settings(settings, SessionLocal)
    logger.info("%s started environment=%s", settings.APP_NAME, settings.ENVIRONMENT)


@app.on_event("shutdown")
def on_shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        services.close()
        app.state.services = None


def run() -> None:
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.BACKEND_HOST,
        port=settings.BACKEND_PORT,
        log_level="debug" if settings.DEBUG else "info",
        # TokenVault serializes refreshes with an in-process lock.
        workers=1,
    )
