from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.workflows.dispatcher import get_event_dispatcher
from app.workflows.producers import TRIGGER_TOPICS, event_from_envelope


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _workflow_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
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


def _resolve_dispatcher():
    provider = app.dependency_overrides.get(get_event_dispatcher, get_event_dispatcher)
    return provider()


def _on_workflow_trigger_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    mode = get_settings().workflow_dispatch_mode.lower()
    try:
        if mode == "celery":
            from app.core.celery_app import dispatch_event_task

            dispatch_event_task.delay(event.payload)
            return
        if mode != "inline":
            return
        with _workflow_session_scope() as session:
            _resolve_dispatcher().dispatch(session, event_from_envelope(event.payload))
    except Exception as exc:
        logger.exception("workflow_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for topic in TRIGGER_TOPICS.values():
            event_bus.subscribe(topic, _on_workflow_trigger_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
