# dentalcrm/routers/public.py
# Unauthenticated endpoints behind the landing page. Both are rate limited per client IP.

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas, models
from ..config import get_settings
from ..database import SessionLocal, get_db
from ..limiter import limiter, public_rate_limit
from ..services import pricing
from ..services.email_service import get_email_service

import logging

logger = logging.getLogger(__name__)

DEFAULT_UTM_SOURCE = "aescrm_landing"
DEFAULT_UTM_MEDIUM = "waitlist_form"
DEFAULT_UTM_CAMPAIGN = "pre_launch_waitlist"

router = APIRouter(prefix="/public", tags=["Public"])


async def _send_waitlist_emails(lead_id: int, practice_size: str = None, message: str = None):
    # Runs after the response with its own session
    db = SessionLocal()
    try:
        lead = crud.get_lead(db, lead_id)
        if lead:
            email_service = get_email_service()
            await email_service.send_waitlist_notification(db, lead, practice_size, message)
            await email_service.send_waitlist_welcome(db, lead)
    finally:
        db.close()


@router.post("/waitlist", response_model=schemas.WaitlistResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(public_rate_limit)
def join_waitlist(
    request: Request, signup: schemas.WaitlistRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)
):
    """Record a waitlist signup as a website lead and send the two notification emails."""
    notes = "\n".join(
        part for part in (
            f"Practice size: {signup.practice_size}" if signup.practice_size else None,
            signup.message,
        ) if part
    ) or None
    lead = crud.create_lead(db, schemas.LeadCreate(
        first_name=signup.first_name,
        last_name=signup.last_name,
        email=signup.email,
        phone=signup.phone,
        practice_name=signup.practice_name,
        source=models.LeadSource.website,
        status=models.LeadStatus.new,
        notes=notes,
        marketing_consent=signup.marketing_consent,
        utm_source=signup.utm_source or DEFAULT_UTM_SOURCE,
        utm_medium=signup.utm_medium or DEFAULT_UTM_MEDIUM,
        utm_campaign=signup.utm_campaign or DEFAULT_UTM_CAMPAIGN,
    ))
    logger.info(f"Waitlist signup {lead.lead_number}")

    background_tasks.add_task(_send_waitlist_emails, lead.id, signup.practice_size, signup.message)

    return {"lead_number": lead.lead_number, "message": "You're on the waitlist. We'll be in touch soon."}

@router.post("/tenants/signup", response_model=schemas.TenantSignupResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(public_rate_limit)
def tenant_signup(request: Request, signup: schemas.TenantSignupRequest, db: Session = Depends(get_db)):
    """Register a practice. It stays in pending_approval until a super admin activates it."""
    schedule = pricing.PricingSchedule.from_settings(get_settings())
    quote = pricing.calculate_pricing(signup.user_count, 1, schedule)
    client = crud.create_client(db, signup, installation_fee=quote.installation_fee, monthly_cost=quote.total_monthly_cost)
    return {
        "id": client.id,
        "status": client.status,
        "subscription_tier": client.subscription_tier,
        "quote": quote,
    }
