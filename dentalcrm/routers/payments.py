# dentalcrm/routers/payments.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db
from ..services.audit_service import audit_service, request_context

router = APIRouter(
    prefix="/payments",
    tags=["Payments"],
    dependencies=[Depends(security.require_role(*security.FRONT_DESK, "manager"))],
)


@router.get("", response_model=List[schemas.PaymentResponse])
def read_payments(
    status_filter: Optional[models.PaymentStatus] = Query(None, alias="status"),
    method: Optional[models.PaymentMethod] = None,
    patient_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_module_permission("finance", "read")),
):
    return crud.get_payments(
        db,
        status=status_filter.value if status_filter else None,
        method=method.value if method else None,
        patient_id=patient_id,
    )

@router.post("", response_model=schemas.PaymentResponse, status_code=status.HTTP_201_CREATED)
def create_payment(
    request: Request,
    payment: schemas.PaymentCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_module_permission("finance", "write")),
):
    db_payment = crud.create_payment(db, payment, processed_by_id=current_user.id)
    audit_service.log_security_event(
        "payment_create", "payment", db_payment.id, "medium",
        {"amount": float(db_payment.amount), "method": db_payment.payment_method.value},
        user=current_user, **request_context(request)
    )
    return db_payment
