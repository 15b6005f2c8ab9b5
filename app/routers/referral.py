# app/routers/referral.py

import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.limiter import limiter
from app.crud import member as crud_member
from app.dependencies import get_db
from app.services import attribution as attribution_service
from app.services.referral_code import is_valid_referral_code

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/r/{code}", include_in_schema=False)
@limiter.limit(settings.CLICK_RATE_LIMIT)
def referral_link_redirect(request: Request, code: str, fp: str | None = None, db: Session = Depends(get_db)):
    """
    Shareable referral link. Records a click, drops the attribution cookie
    and sends the visitor on to the community's product page.
    """
    code = code.strip().upper()
    fallback = settings.DEFAULT_REDIRECT_URL
    if not is_valid_referral_code(code):
        logger.info(f"Malformed referral code in link: '{code}'")
        return RedirectResponse(url=f"{fallback}?error=invalid_code", status_code=302)

    member = crud_member.get_member_by_referral_code(db, code=code)
    if not member:
        logger.info(f"Referral link used with unknown code {code}")
        return RedirectResponse(url=f"{fallback}?error=invalid_code", status_code=302)

    raw_origin = attribution_service.extract_real_origin(request.headers)
    if raw_origin is None and request.client:
        raw_origin = request.client.host
    fingerprint = fp or attribution_service.generate_fingerprint(request.headers.get("user-agent"), raw_origin)

    attribution_service.record_click(db, code, fingerprint=fingerprint, raw_origin=raw_origin)

    target = member.creator.product_url if member.creator and member.creator.product_url else fallback
    response = RedirectResponse(url=target, status_code=302)
    response.set_cookie(
        key=settings.REFERRAL_COOKIE_NAME,
        value=code,
        max_age=settings.ATTRIBUTION_WINDOW_DAYS * 24 * 3600,
        httponly=True,
        samesite="lax",
    )
    return response
