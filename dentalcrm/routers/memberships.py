# dentalcrm/routers/memberships.py
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db
from ..services.audit_service import audit_service, request_context

import logging

logger = logging.getLogger(__name__)

MEMBERSHIP_STAFF = tuple(dict.fromkeys(security.MANAGEMENT + security.MARKETING))

router = APIRouter(
    tags=["Memberships"],
    dependencies=[Depends(security.require_role(*MEMBERSHIP_STAFF))],
    responses={404: {"description": "Not found"}},
)

manage_roles = security.require_role(*security.MANAGEMENT)


# --- Applications ---
@router.get("/membership-applications", response_model=List[schemas.MembershipApplicationResponse])
def read_applications(
    status_filter: Optional[models.ApplicationStatus] = Query(None, alias="status"),
    practice_location_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return crud.get_membership_applications(
        db, status=status_filter.value if status_filter else None, practice_location_id=practice_location_id
    )

@router.get("/membership-applications/{application_id}", response_model=schemas.MembershipApplicationResponse)
def read_application(application_id: int, db: Session = Depends(get_db)):
    application = crud.get_membership_application(db, application_id)
    if application is None:
        raise HTTPException(status_code=404, detail="Membership application not found")
    return application

@router.post("/membership-applications", response_model=schemas.MembershipApplicationResponse, status_code=status.HTTP_201_CREATED)
def create_application(application: schemas.MembershipApplicationCreate, db: Session = Depends(get_db)):
    return crud.create_membership_application(db, application)

@router.patch("/membership-applications/{application_id}/status", response_model=schemas.MembershipApplicationResponse)
def update_application_status(
    request: Request,
    application_id: int,
    update: schemas.ApplicationStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(manage_roles),
):
    """Move an application through review. Approving it also opens the membership."""
    application = crud.set_application_status(db, application_id, update, processed_by_id=current_user.id)
    audit_service.log_security_event(
        f"membership_application_{update.status.value}", "membership_application", application_id, "low",
        {"membership_id": application.membership.id if application.membership else None},
        user=current_user, **request_context(request)
    )
    return application

@router.delete("/membership-applications/{application_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_application(application_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(manage_roles)):
    crud.delete_membership_application(db, application_id)


# --- Plans ---
@router.get("/membership-plans", response_model=List[schemas.MembershipPlanResponse])
def read_plans(include_inactive: bool = False, db: Session = Depends(get_db)):
    return crud.get_membership_plans(db, include_inactive=include_inactive)

@router.post("/membership-plans", response_model=schemas.MembershipPlanResponse, status_code=status.HTTP_201_CREATED)
def create_plan(plan: schemas.MembershipPlanCreate, db: Session = Depends(get_db), current_user: models.User = Depends(manage_roles)):
    return crud.create_membership_plan(db, plan)

@router.put("/membership-plans/{plan_id}", response_model=schemas.MembershipPlanResponse)
def update_plan(
    plan_id: int,
    update: schemas.MembershipPlanUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(manage_roles),
):
    return crud.update_membership_plan(db, plan_id, update)


# --- Memberships ---
@router.get("/memberships", response_model=List[schemas.MembershipResponse])
def read_memberships(
    status_filter: Optional[models.MembershipStatus] = Query(None, alias="status"),
    practice_location_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    return crud.get_memberships(
        db, status=status_filter.value if status_filter else None, practice_location_id=practice_location_id
    )

@router.get("/memberships/analytics/overview", response_model=schemas.MembershipOverview)
def read_overview(practice_location_id: Optional[int] = None, db: Session = Depends(get_db)):
    return crud.get_membership_overview(db, practice_location_id=practice_location_id)

@router.get("/memberships/analytics/trends", response_model=List[schemas.TrendPoint])
def read_trends(
    days: int = Query(30, ge=1, le=365),
    practice_location_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    """Memberships created per day over the last `days` days."""
    return crud.get_membership_trends(db, days=days, practice_location_id=practice_location_id)

@router.post("/memberships/from-application", response_model=schemas.MembershipResponse)
def create_membership_from_application(
    payload: schemas.FromApplicationRequest,
    response: Response,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(manage_roles),
):
    """Open the membership for an approved application.

    Repeating the call returns the membership already created (200 instead of 201).
    """
    membership, created = crud.create_membership_from_application(db, payload.application_id)
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    if created:
        logger.info(f"Membership {membership.membership_number} created from application {payload.application_id}")
    return membership

@router.get("/memberships/{membership_id}", response_model=schemas.MembershipResponse)
def read_membership(membership_id: int, db: Session = Depends(get_db)):
    membership = crud.get_membership(db, membership_id)
    if membership is None:
        raise HTTPException(status_code=404, detail="Membership not found")
    return membership

@router.patch("/memberships/{membership_id}/status", response_model=schemas.MembershipResponse)
def update_membership_status(
    membership_id: int,
    update: schemas.MembershipStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(manage_roles),
):
    return crud.set_membership_status(db, membership_id, update.status)

@router.post("/memberships/{membership_id}/payments", response_model=schemas.MembershipPaymentResponse, status_code=status.HTTP_201_CREATED)
def record_payment(
    membership_id: int,
    payment: schemas.MembershipPaymentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_module_permission("finance", "write")),
):
    return crud.record_membership_payment(db, membership_id, payment)
