# app/schemas/webhook.py
from datetime import datetime
from typing import Any, Dict
from pydantic import BaseModel, Field


class WebhookEnvelope(BaseModel):
    action: str
    id: str | None = None
    data: Dict[str, Any] = Field(default_factory=dict)


class SignupEventData(BaseModel):
    membership_id: str
    user_id: str
    company_id: str
    company_name: str | None = None
    product_url: str | None = None
    username: str | None = None
    email: str | None = None
    referred_by: str | None = None
    created_at: datetime | None = None
    # Amount checks happen in the calculator, not here
    sale_amount: Any = None


class PaymentEventData(BaseModel):
    id: str
    membership_id: str
    # Amount checks happen in the calculator, not here
    sale_amount: Any
    company_id: str | None = None
    user_id: str | None = None
    username: str | None = None
    email: str | None = None
    payment_type: str | None = None
    referred_by: str | None = None
    created_at: datetime | None = None


class RefundEventData(BaseModel):
    id: str | None = None
    payment_id: str
    amount: Any = None
    reason: str | None = None


class WebhookResponse(BaseModel):
    status: str
    event_id: int | None = None
    message: str | None = None
    member_id: int | None = None
    referral_code: str | None = None
    commission_id: int | None = None
