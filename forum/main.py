from contextlib import asynccontextmanager
import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette_exporter import PrometheusMiddleware, handle_metrics
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from forum.api import chat
from forum.core import config
from forum.core.database import SessionLocal, init_db
from forum.core.logging import setup_logging, setup_sentry, setup_tracing
from forum.core.security import require_roles
from forum.services.message_store import ChatService, MessageStore
from forum.services.registry import ConnectionRegistry
from forum.services.sweeper import start_sweeper
from forum.services.token_verifier import TokenVerifier

setup_logging()
setup_sentry()
provider = setup_tracing("forum-service")
HTTPXClientInstrumentor().instrument()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    sweeper = start_sweeper(ChatService(app.state.message_store))
    logger.info("Forum service started", extra={"auth_service_url": config.AUTH_SERVICE_URL})
    try:
        yield
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await app.state.token_verifier.aclose()
        logger.info("Forum service stopped")


app = FastAPI(title="Forum Service API", lifespan=lifespan)
FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)

# single-process chat state, injected into handlers through forum.api.deps
app.state.registry = ConnectionRegistry()
app.state.message_store = MessageStore(SessionLocal)
app.state.token_verifier = TokenVerifier()

app.add_middleware(PrometheusMiddleware, app_name="forum_service")


@app.get("/health")
def _ping():
    return {"status": "ok"}


app.include_router(chat.router)

app.add_route(
    "/metrics/raw",
    handle_metrics,
    methods=["GET"],
    include_in_schema=False,
)


@app.get("/metrics", dependencies=[require_roles("admin")])
async def metrics(request: Request):
    """Prometheus exposition, admin only."""
    return handle_metrics(request)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)
