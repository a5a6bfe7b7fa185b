from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.core.config import get_settings
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.rate_limit import CrmMutationRateLimitMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel


settings = get_settings()
configure_logging(settings)
logger = logging.getLogger("leadflow.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("system.started", extra={"status": settings.app_env})
    yield
    logger.info("system.stopped", extra={"status": settings.app_env})


app = FastAPI(title=settings.app_name, version=settings.app_version, debug=settings.app_debug, lifespan=lifespan)
# Added last runs first: correlation id, then request logging, then the rate limiter.
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel(settings)
if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
