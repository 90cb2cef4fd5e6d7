from celery import Celery
from celery.schedules import crontab

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery("onboardhub_api", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.beat_schedule = {
    "scan-due-dates-daily": {
        "task": "app.tasks.scan_due_dates",
        "schedule": crontab(hour=6, minute=0),
    },
}


@celery_app.task(name="app.tasks.scan_due_dates")
def scan_due_dates_task() -> dict[str, int]:
    from app.core.database import SessionLocal
    from app.workflows.dispatcher import get_event_dispatcher
    from app.workflows.producers import scan_due_dates

    with SessionLocal() as session:
        result = scan_due_dates(session, get_event_dispatcher())
    return {
        "scanned_workflows": result.scanned_workflows,
        "tasks_found": result.tasks_found,
        "triggered_count": result.triggered_count,
    }


@celery_app.task(name="app.tasks.dispatch_event")
def dispatch_event_task(envelope: dict) -> dict:
    from app.core.database import SessionLocal
    from app.workflows.dispatcher import get_event_dispatcher
    from app.workflows.producers import event_from_envelope

    with SessionLocal() as session:
        result = get_event_dispatcher().dispatch(session, event_from_envelope(envelope))
    return result.model_dump(mode="json")
