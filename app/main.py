import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from app.api.alerts import router as alerts_router
from app.api.entities import router as entities_router
from app.api.obligations import router as obligations_router
from app.api.queues import router as queues_router
from app.api.scheduler import router as scheduler_router
from app.api.workflows import router as workflows_router
from app.config import settings
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.observability import ObservabilityMiddleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("%s API starting", settings.brand_name)
    yield
    logger.info("%s API stopped", settings.brand_name)


app = FastAPI(title="Compliance Orchestration API", lifespan=lifespan)

configure_logging()
app.add_middleware(ObservabilityMiddleware)
register_error_handlers(app)


def _include_api_router(router, dependencies=None):
    app.include_router(router, dependencies=dependencies)
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)


_include_api_router(entities_router)
_include_api_router(obligations_router)
_include_api_router(workflows_router)
_include_api_router(queues_router)
_include_api_router(alerts_router)
_include_api_router(scheduler_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
