# dentalcrm/routers/pricing.py
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import crud, security, models
from ..config import get_settings
from ..database import get_db
from ..services import pricing

router = APIRouter(prefix="/pricing", tags=["Pricing"])


def get_schedule() -> pricing.PricingSchedule:
    return pricing.PricingSchedule.from_settings(get_settings())


@router.get("/quote", response_model=pricing.PricingQuote)
def quote(
    user_count: int = Query(2),
    months: int = Query(1),
    schedule: pricing.PricingSchedule = Depends(get_schedule),
):
    """Price for a number of seats over a number of months. Values below one count as one."""
    return pricing.calculate_pricing(user_count, months, schedule)

@router.get("/tiers", response_model=List[pricing.PricingTier])
def tiers(schedule: pricing.PricingSchedule = Depends(get_schedule)):
    return pricing.get_pricing_tiers(schedule)

@router.get("/recommendation", response_model=pricing.PricingRecommendation)
def recommendation(practice_size: str = "1-2 providers"):
    return pricing.get_pricing_recommendation(practice_size)

@router.get("/roi", response_model=pricing.RoiEstimate)
def roi(
    user_count: int = Query(2),
    monthly_savings: float = Query(..., ge=0),
    schedule: pricing.PricingSchedule = Depends(get_schedule),
):
    return pricing.calculate_roi(user_count, monthly_savings, schedule)

@router.get("/clients/{client_id}/summary")
def client_summary(
    client_id: int,
    db: Session = Depends(get_db),
    schedule: pricing.PricingSchedule = Depends(get_schedule),
    current_user: models.User = Depends(security.require_role("super_admin")),
):
    client = crud.get_client(db, client_id)
    if client is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return pricing.get_client_pricing_summary(client.name, client.total_users, schedule)
