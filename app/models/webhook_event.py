# app/models/webhook_event.py
from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Text, func
from app.db.session import Base

class WebhookEvent(Base):
    """Every inbound event is stored before it is processed."""
    __tablename__ = "webhook_events"
    id = Column(Integer, primary_key=True, index=True)

    event_type = Column(String, nullable=False, index=True)
    upstream_event_id = Column(String, nullable=True, index=True)
    payload = Column(JSON, nullable=False)

    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
