# dentalcrm/routers/patients.py
import math
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..database import get_db
from ..services.audit_service import audit_service, request_context

MAX_PAGE_SIZE = 200

router = APIRouter(
    tags=["Patients"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

read_roles = security.require_role(*security.CLINICAL_STAFF)
write_roles = security.require_role(*security.FRONT_DESK)
delete_roles = security.require_role(*security.PRACTICE_ADMINS)


def set_paging_headers(response: Response, page: int, page_size: int, total: int) -> None:
    response.headers["X-Total-Count"] = str(total)
    response.headers["X-Page"] = str(page)
    response.headers["X-Page-Size"] = str(page_size)
    response.headers["X-Last-Page"] = str(max(math.ceil(total / page_size), 1))


@router.get("/patients", response_model=schemas.PatientPage)
def read_all_patients(
    response: Response,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=MAX_PAGE_SIZE),
    q: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    treatment_type: Optional[str] = None,
    insurance_provider: Optional[str] = None,
    sort_field: str = Query("created_at", pattern="^(created_at|last_name|first_name)$"),
    sort_dir: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    """Paged patient list with search on name, email and phone."""
    if status_filter and status_filter != "all" and status_filter not in models.PatientStatus.__members__:
        raise HTTPException(status_code=400, detail=f"Unknown patient status '{status_filter}'")
    patients, total = crud.get_patients(
        db, page=page, page_size=page_size, q=q, status=status_filter, treatment_type=treatment_type,
        insurance_provider=insurance_provider, sort_field=sort_field, sort_dir=sort_dir,
    )
    set_paging_headers(response, page, page_size, total)
    return {"data": patients, "page": page, "page_size": page_size, "total": total}

@router.get("/patients/stats", response_model=schemas.PatientStats)
def read_patient_stats(db: Session = Depends(get_db), current_user: models.User = Depends(read_roles)):
    return crud.get_patient_stats(db)

@router.post("/patients", response_model=schemas.PatientResponse, status_code=status.HTTP_201_CREATED)
def create_new_patient(
    request: Request,
    patient: schemas.PatientCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(write_roles),
):
    """
    Create a new patient record.
    """
    new_patient = crud.create_patient(db=db, patient=patient, created_by_id=current_user.id)
    audit_service.log_patient_access("create", new_patient.id, user=current_user, **request_context(request))
    return new_patient

@router.get("/patients/{patient_id}", response_model=schemas.PatientResponse)
def read_patient_details(
    request: Request,
    patient_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    db_patient = crud.get_patient(db, patient_id=patient_id)
    if db_patient is None:
        raise HTTPException(status_code=404, detail="Patient not found")
    audit_service.log_patient_access("view", patient_id, user=current_user, **request_context(request))
    return db_patient

@router.put("/patients/{patient_id}", response_model=schemas.PatientResponse)
def update_patient_details(
    request: Request,
    patient_id: int,
    patient_update: schemas.PatientUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(write_roles),
):
    updated = crud.update_patient(db, patient_id, patient_update)
    audit_service.log_patient_access("update", patient_id, user=current_user, **request_context(request))
    return updated

@router.delete("/patients/{patient_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_patient(
    request: Request,
    patient_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(delete_roles),
):
    crud.delete_patient(db, patient_id)
    audit_service.log_patient_access("delete", patient_id, user=current_user, **request_context(request))
