from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette_exporter import PrometheusMiddleware, handle_metrics
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from forum.api import auth
from forum.core import config
from forum.core.database import init_db
from forum.core.logging import setup_logging, setup_sentry, setup_tracing
from forum.core.security import require_roles

setup_logging()
setup_sentry()
provider = setup_tracing("auth-service")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Auth service started")
    yield


app = FastAPI(title="Auth Service API", lifespan=lifespan)
FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)

app.add_middleware(PrometheusMiddleware, app_name="auth_service")


@app.get("/healthz")
def _ping():
    return {"status": "ok"}


app.include_router(auth.router, prefix="/api/auth", tags=["Authentication"])

app.add_route(
    "/metrics/raw",
    handle_metrics,
    methods=["GET"],
    include_in_schema=False,
)


@app.get("/metrics", dependencies=[require_roles("admin")])
async def metrics(request: Request):
    """
    Return the metrics in a format that can be scraped by Prometheus.
    """
    return handle_metrics(request)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
