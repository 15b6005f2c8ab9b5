# app/crud/webhook_event.py
from datetime import datetime
from sqlalchemy.orm import Session

from app.models.webhook_event import WebhookEvent

def create_event(db: Session, event_type: str, upstream_event_id: str | None, payload: dict) -> WebhookEvent:
    """Stores the raw event and commits right away so it survives a failed handler."""
    event = WebhookEvent(
        event_type=event_type,
        upstream_event_id=upstream_event_id,
        payload=payload,
        processed=False,
    )
    db.add(event)
    db.commit()
    db.refresh(event)
    return event

def mark_processed(db: Session, event_id: int, processed_at: datetime) -> None:
    db.query(WebhookEvent).filter(WebhookEvent.id == event_id).update(
        {"processed": True, "processed_at": processed_at, "error_message": None},
        synchronize_session=False
    )
    db.commit()

def mark_failed(db: Session, event_id: int, error_message: str) -> None:
    db.query(WebhookEvent).filter(WebhookEvent.id == event_id).update(
        {"error_message": error_message, "retry_count": WebhookEvent.retry_count + 1},
        synchronize_session=False
    )
    db.commit()
