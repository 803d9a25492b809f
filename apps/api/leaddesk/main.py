from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leaddesk.api.routes import router as api_router
from leaddesk.core.config import get_settings
from leaddesk.core.context import RequestContextMiddleware
from leaddesk.core.database import get_db, get_sessionmaker
from leaddesk.core.events import InternalEvent, event_bus
from leaddesk.crm.notifications import LeadNotificationSubscriber
from leaddesk.logging import configure_logging
from leaddesk.middleware.correlation_id import CorrelationIdMiddleware
from leaddesk.middleware.rate_limit import RateLimitMiddleware
from leaddesk.middleware.request_logging import RequestLoggingMiddleware
from leaddesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _event_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = get_sessionmaker()()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


notification_subscriber = LeadNotificationSubscriber(_event_session_scope)


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="LeadDesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

notification_subscriber.register(event_bus)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
