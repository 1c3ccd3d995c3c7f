import logging

import sentry_sdk
from pythonjsonlogger import jsonlogger
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.logging import LoggingInstrumentor

from forum.core import config

_configured = False


def setup_logging(level: int = logging.INFO) -> None:
    """JSON logs on the root logger. Safe to call from both service entrypoints."""
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler()
    formatter = jsonlogger.JsonFormatter(
        '%(asctime)s %(levelname)s %(name)s %(message)s'
    )
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    _configured = True


def setup_sentry() -> None:
    sentry_logging = LoggingIntegration(
        level=logging.INFO,
        event_level=logging.ERROR,
    )
    sentry_sdk.init(
        dsn=config.SENTRY_DSN,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            sentry_logging,
        ],
        traces_sample_rate=1.0,
        environment=config.ENVIRONMENT,
        release=config.RELEASE,
        send_default_pii=False,
    )


def setup_tracing(service_name: str) -> TracerProvider:
    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "deployment.environment": config.ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)

    # export only when a collector is configured
    if config.OTLP_ENDPOINT:
        exporter = OTLPSpanExporter(endpoint=f"{config.OTLP_ENDPOINT.rstrip('/')}/v1/traces")
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    LoggingInstrumentor().instrument(set_logging_format=False)
    return provider
