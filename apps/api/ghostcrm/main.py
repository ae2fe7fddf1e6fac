from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from ghostcrm.api.errors import register_error_handlers
from ghostcrm.api.routes import router as api_router
from ghostcrm.core.config import get_settings
from ghostcrm.core.context import RequestContextMiddleware
from ghostcrm.core.events import TelecomEvent, event_bus
from ghostcrm.logging import configure_logging
from ghostcrm.middleware.correlation_id import CorrelationIdMiddleware
from ghostcrm.middleware.rate_limit import OutboundMessageRateLimitMiddleware
from ghostcrm.middleware.request_logging import RequestLoggingMiddleware
from ghostcrm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("ghostcrm.lifecycle")
_subscriptions_registered = False

_message_event_types = [
    "message.sent",
    "message.failed",
    "message.received",
]


def _on_system_started(event: TelecomEvent) -> None:
    logger.info("system_event", extra={"status": event.envelope.get("service")})


def _on_message_event(event: TelecomEvent) -> None:
    logger.debug(
        event.event_type,
        extra={
            "message_id": event.message_id,
            "organization_id": event.organization_id,
            "provider": event.envelope.get("provider"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _message_event_types:
            event_bus.subscribe(event_name, _on_message_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="GhostCRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(OutboundMessageRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
register_error_handlers(app)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
