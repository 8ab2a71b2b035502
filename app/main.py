from fastapi import FastAPI

from app.surplus.api import api_router
from app.surplus.core.config import settings
from app.surplus.core.errors import setup_exception_handlers
from app.surplus.core.logging import configure_logging
from app.surplus.middleware.observability import ObservabilityMiddleware
from app.surplus.middleware.trace import TraceIdMiddleware


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=settings.APP_NAME)
    app.add_middleware(TraceIdMiddleware)
    app.add_middleware(ObservabilityMiddleware)
    setup_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
