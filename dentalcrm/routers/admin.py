# dentalcrm/routers/admin.py
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..services import pricing
from ..services.audit_service import audit_service, request_context

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(security.require_role("super_admin"))],
)


@router.get("/kpis", response_model=schemas.AdminKpis)
def read_kpis(db: Session = Depends(get_db)):
    """Platform totals. MRR counts active clients only."""
    return crud.get_admin_kpis(db)

@router.get("/clients", response_model=List[schemas.ClientResponse])
def read_clients(status_filter: Optional[models.ClientStatus] = Query(None, alias="status"), db: Session = Depends(get_db)):
    return crud.get_clients(db, status=status_filter.value if status_filter else None)

@router.put("/clients/{client_id}/status", response_model=schemas.ClientResponse)
def update_client_status(
    request: Request,
    client_id: int,
    update: schemas.ClientStatusUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    client = crud.update_client_status(db, client_id, update.status)
    audit_service.log_security_event(
        "client_status_update", "client_organization", client_id, "high",
        {"status": update.status.value}, user=current_user, **request_context(request)
    )
    return client

@router.put("/clients/{client_id}/permissions", response_model=Dict[str, models.PermissionLevel])
def update_client_permissions(
    request: Request,
    client_id: int,
    update: schemas.ModulePermissionsUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    rows = crud.set_module_permissions(db, client_id, update.permissions)
    audit_service.log_security_event(
        "client_permissions_update", "client_organization", client_id, "high",
        {name: level.value for name, level in update.permissions.items()},
        user=current_user, **request_context(request)
    )
    return {row.module_name: row.permission_level for row in rows}

@router.get("/revenue", response_model=pricing.SystemRevenue)
def read_revenue(months: int = Query(12, ge=1, le=120), db: Session = Depends(get_db)):
    """Projected revenue over `months` for every active client."""
    clients = crud.get_clients(db, status=models.ClientStatus.active.value)
    schedule = pricing.PricingSchedule.from_settings(get_settings())
    return pricing.calculate_system_revenue([c.total_users for c in clients], months, schedule)

@router.get("/audit-logs", response_model=List[schemas.AuditLogResponse])
def read_audit_logs(
    limit: int = Query(100, ge=1, le=1000),
    risk_level: Optional[models.RiskLevel] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    user_id: Optional[int] = None,
    since: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return crud.get_audit_logs(
        db, limit=limit, risk_level=risk_level.value if risk_level else None,
        resource_type=resource_type, resource_id=resource_id, user_id=user_id, since=since,
    )

@router.get("/audit-trail/{resource_type}/{resource_id}", response_model=List[schemas.AuditLogResponse])
def read_audit_trail(resource_type: str, resource_id: str, limit: int = Query(50, ge=1, le=500), db: Session = Depends(get_db)):
    return audit_service.get_audit_trail(db, resource_type, resource_id, limit=limit)

@router.get("/security-events", response_model=List[schemas.AuditLogResponse])
def read_security_events(
    risk_level: Optional[models.RiskLevel] = None,
    hours: int = Query(24, ge=1, le=24 * 90),
    db: Session = Depends(get_db),
):
    return audit_service.get_security_events(db, risk_level=risk_level.value if risk_level else None, hours=hours)

@router.get("/suspicious-activity", response_model=schemas.SuspiciousActivityReport)
def read_suspicious_activity(db: Session = Depends(get_db)):
    return audit_service.detect_suspicious_activity(db)
