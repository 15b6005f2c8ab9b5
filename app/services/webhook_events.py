# app/services/webhook_events.py

"""
Routing of inbound commerce-platform events to the ledger.

Each event is stored in webhook_events before it is handled, and marked
processed or failed afterwards, so the audit trail survives handler errors.
"""

import logging
from typing import Callable, Dict, Tuple
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from app.core.exceptions import IngestionOutcome, InvalidPayload, LedgerError, NotFound
from app.crud import member as crud_member
from app.crud import webhook_event as crud_webhook_event
from app.schemas.ledger import LedgerResult
from app.schemas.webhook import (
    PaymentEventData, RefundEventData, SignupEventData, WebhookEnvelope, WebhookResponse
)
from app.services import commission as commission_service
from app.services import conversion as conversion_service
from app.services.ledger import PAYMENT_TYPES, LedgerRepository
from app.utils.dates import utcnow

logger = logging.getLogger(__name__)

SIGNUP_ACTIONS = {"membership.went_valid", "signup.created"}
PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_REFUNDED = "payment.refunded"

HandlerResult = Tuple[WebhookResponse, LedgerResult | None]


def _parse(model: type[BaseModel], envelope: WebhookEnvelope) -> BaseModel:
    try:
        return model.model_validate(envelope.data)
    except ValidationError as e:
        raise InvalidPayload(
            f"Invalid data for '{envelope.action}' event",
            details={"errors": e.errors(include_url=False, include_context=False)}
        )


async def handle_signup(db: Session, ledger: LedgerRepository, envelope: WebhookEnvelope) -> HandlerResult:
    data: SignupEventData = _parse(SignupEventData, envelope)
    sale_amount = None
    if data.sale_amount is not None:
        sale_amount = commission_service.validate_sale_amount(data.sale_amount)

    result = conversion_service.register_signup(
        db,
        membership_id=data.membership_id,
        user_id=data.user_id,
        company_id=data.company_id,
        company_name=data.company_name,
        product_url=data.product_url,
        username=data.username,
        email=data.email,
        referred_by=data.referred_by,
        created_at=data.created_at,
        sale_amount=sale_amount,
    )
    return WebhookResponse(
        status=result.outcome, member_id=result.member_id, referral_code=result.referral_code
    ), None


async def handle_payment(db: Session, ledger: LedgerRepository, envelope: WebhookEnvelope) -> HandlerResult:
    data: PaymentEventData = _parse(PaymentEventData, envelope)
    # Reject a bad amount before anything is created for this payment
    sale_amount = commission_service.validate_sale_amount(data.sale_amount)

    paying_member = crud_member.get_member_by_membership_id(db, data.membership_id)
    if not paying_member:
        if not data.company_id:
            raise NotFound(
                f"Unknown membership {data.membership_id} and no company to create it in",
                details={"membership_id": data.membership_id}
            )
        # Payment arrived before the signup event
        logger.info(f"Payment {data.id} for unknown membership {data.membership_id}; creating the member first.")
        conversion_service.register_signup(
            db,
            membership_id=data.membership_id,
            user_id=data.user_id or data.membership_id,
            company_id=data.company_id,
            username=data.username,
            email=data.email,
            referred_by=data.referred_by,
            created_at=data.created_at,
            sale_amount=sale_amount,
        )
        paying_member = crud_member.get_member_by_membership_id(db, data.membership_id)

    if not paying_member.referred_by:
        logger.info(f"Payment {data.id} from organic member {paying_member.id}. No commission.")
        return WebhookResponse(
            status=IngestionOutcome.SKIPPED.value, member_id=paying_member.id, message="Member was not referred"
        ), None

    referrer = crud_member.get_member_by_referral_code(db, code=paying_member.referred_by)
    if not referrer:
        logger.warning(f"Referrer code {paying_member.referred_by} of member {paying_member.id} no longer resolves. Skipping payment {data.id}.")
        return WebhookResponse(
            status=IngestionOutcome.SKIPPED.value, member_id=paying_member.id, message="Referrer not found"
        ), None

    payment_type = data.payment_type if data.payment_type in PAYMENT_TYPES else None
    result = await ledger.record_commission(
        upstream_payment_id=data.id,
        upstream_membership_id=data.membership_id,
        sale_amount=sale_amount,
        payment_type=payment_type,
        referrer_member_id=referrer.id,
        creator_id=paying_member.creator_id,
        created_at=data.created_at,
    )
    return WebhookResponse(
        status=result.outcome,
        member_id=referrer.id,
        commission_id=result.commission.id,
    ), result


async def handle_refund(db: Session, ledger: LedgerRepository, envelope: WebhookEnvelope) -> HandlerResult:
    data: RefundEventData = _parse(RefundEventData, envelope)
    result = await ledger.reverse_commission(
        data.payment_id,
        reason=data.reason,
        refund_amount=data.amount,
        upstream_refund_id=data.id or envelope.id,
    )
    return WebhookResponse(
        status=result.outcome,
        member_id=result.commission.referrer_member_id,
        commission_id=result.commission.id,
    ), result


HANDLERS: Dict[str, Callable] = {
    **{action: handle_signup for action in SIGNUP_ACTIONS},
    PAYMENT_SUCCEEDED: handle_payment,
    PAYMENT_REFUNDED: handle_refund,
}


async def process_event(db: Session, ledger: LedgerRepository, envelope: WebhookEnvelope) -> HandlerResult:
    """
    Logs the event, dispatches it by action and records the result.
    Ledger errors are re-raised for the HTTP layer to map; anything else is
    recorded on the event and re-raised so upstream redelivers.
    """
    event = crud_webhook_event.create_event(db, envelope.action, envelope.id, envelope.model_dump(mode="json"))
    handler = HANDLERS.get(envelope.action)

    if handler is None:
        logger.info(f"Ignoring webhook action '{envelope.action}' (event {event.id}).")
        crud_webhook_event.mark_processed(db, event.id, processed_at=utcnow())
        return WebhookResponse(status=IngestionOutcome.IGNORED.value, event_id=event.id), None

    try:
        response, ledger_result = await handler(db, ledger, envelope)
    except LedgerError as e:
        db.rollback()
        logger.warning(f"Webhook event {event.id} ({envelope.action}) rejected: {e.message}")
        crud_webhook_event.mark_failed(db, event.id, f"{e.error_code}: {e.message}")
        raise
    except Exception as e:
        db.rollback()
        logger.error(f"Error while processing webhook event {event.id} ({envelope.action})", exc_info=True)
        crud_webhook_event.mark_failed(db, event.id, repr(e))
        raise

    crud_webhook_event.mark_processed(db, event.id, processed_at=utcnow())
    response.event_id = event.id
    logger.info(f"Webhook event {event.id} ({envelope.action}) handled: {response.status}")
    return response, ledger_result
