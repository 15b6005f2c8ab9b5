# app/routers/webhooks.py

import logging
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.core.exceptions import IngestionOutcome, LedgerError
from app.dependencies import get_db, get_ledger
from app.schemas.webhook import WebhookEnvelope, WebhookResponse
from app.services import webhook_events as webhook_service
from app.services.ledger import LedgerRepository
from app.tasks_registry import run_member_ranking_update

logger = logging.getLogger(__name__)

# Mounted in main.py with the /internal/webhooks prefix
router = APIRouter()


@router.post("/events", response_model=WebhookResponse)
async def commerce_event_webhook(
    envelope: WebhookEnvelope,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    ledger: LedgerRepository = Depends(get_ledger)
):
    """
    Single entry point for commerce-platform events.
    Delivery is at-least-once; replays answer 'duplicate_ignored'.
    """
    logger.info(f"Webhook received: action={envelope.action} id={envelope.id}")
    try:
        response, ledger_result = await webhook_service.process_event(db, ledger, envelope)
    except LedgerError:
        # Mapped to 4xx by the handlers in main.py
        raise
    except Exception:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error during webhook processing"
        )

    # Ranks follow the counters outside the ingestion request
    if ledger_result and ledger_result.outcome == IngestionOutcome.PROCESSED.value:
        background_tasks.add_task(
            run_member_ranking_update,
            ledger_result.commission.referrer_member_id,
            ledger_result.previous_lifetime_earnings,
            ledger_result.previous_total_referred,
        )
    return response
