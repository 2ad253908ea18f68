# dentalcrm/routers/leads.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db
from ..services.audit_service import audit_service, request_context
from .patients import MAX_PAGE_SIZE, set_paging_headers

router = APIRouter(
    prefix="/leads",
    tags=["Leads"],
    dependencies=[Depends(security.require_role(*security.MARKETING))],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=schemas.LeadPage)
def read_leads(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=MAX_PAGE_SIZE),
    q: Optional[str] = None,
    status_filter: Optional[models.LeadStatus] = Query(None, alias="status"),
    source: Optional[models.LeadSource] = None,
    interest_level: Optional[models.InterestLevel] = None,
    assigned_to_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    leads, total = crud.get_leads(
        db, page=page, page_size=page_size, q=q,
        status=status_filter.value if status_filter else None,
        source=source.value if source else None,
        interest_level=interest_level.value if interest_level else None,
        assigned_to_id=assigned_to_id,
    )
    set_paging_headers(response, page, page_size, total)
    return {"data": leads, "page": page, "page_size": page_size, "total": total}

@router.get("/pipeline", response_model=schemas.LeadPipeline)
def read_pipeline(db: Session = Depends(get_db)):
    """Lead count and estimated value per stage, in pipeline order."""
    return crud.get_lead_pipeline(db)

@router.post("", response_model=schemas.LeadResponse, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    lead: schemas.LeadCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    db_lead = crud.create_lead(db, lead)
    audit_service.log_lead_access("create", db_lead.id, user=current_user, **request_context(request))
    return db_lead

@router.get("/{lead_id}", response_model=schemas.LeadResponse)
def read_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    db_lead = crud.get_lead(db, lead_id)
    if db_lead is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    audit_service.log_lead_access("view", lead_id, user=current_user, **request_context(request))
    return db_lead

@router.put("/{lead_id}", response_model=schemas.LeadResponse)
def update_lead(
    request: Request,
    lead_id: int,
    lead_update: schemas.LeadUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    updated = crud.update_lead(db, lead_id, lead_update)
    audit_service.log_lead_access("update", lead_id, user=current_user, **request_context(request))
    return updated

@router.post("/{lead_id}/withdraw-consent", response_model=schemas.LeadResponse)
def withdraw_consent(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    """Stop all marketing to this lead. The withdrawal time is kept for the record."""
    updated = crud.withdraw_lead_consent(db, lead_id)
    audit_service.log_lead_access("consent_withdrawn", lead_id, user=current_user, **request_context(request))
    return updated

@router.post("/{lead_id}/convert", response_model=schemas.LeadResponse)
def convert_lead(
    request: Request,
    lead_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    converted = crud.convert_lead(db, lead_id, created_by_id=current_user.id)
    audit_service.log_lead_access("convert", lead_id, user=current_user, **request_context(request))
    return converted
