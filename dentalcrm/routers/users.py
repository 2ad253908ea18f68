# dentalcrm/routers/users.py
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..services.audit_service import audit_service, request_context

router = APIRouter(
    prefix="/users",
    tags=["Users"],
    dependencies=[Depends(security.require_role(*security.PRACTICE_ADMINS))],
)

def _same_practice(actor: models.User, target: models.User) -> bool:
    if actor.role == models.UserRole.super_admin:
        return True
    return actor.client_organization_id is not None and actor.client_organization_id == target.client_organization_id

@router.get("", response_model=List[schemas.UserResponse])
def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    org_id = None if current_user.role == models.UserRole.super_admin else current_user.client_organization_id
    if org_id is None and current_user.role != models.UserRole.super_admin:
        return [current_user]
    return crud.get_users(db, skip=skip, limit=limit, role=role, is_active=is_active, client_organization_id=org_id)

@router.post("", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    user: schemas.UserCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    if user.role == models.UserRole.super_admin and current_user.role != models.UserRole.super_admin:
        raise HTTPException(status_code=403, detail="Only a super admin can create super admins")
    org_id = user.client_organization_id
    if current_user.role != models.UserRole.super_admin:
        org_id = current_user.client_organization_id
    try:
        created = crud.create_user(
            db,
            email=user.email,
            full_name=user.full_name,
            password_hash=security.get_password_hash(user.password),
            role=user.role,
            phone=user.phone,
            client_organization_id=org_id,
        )
    except crud.ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    audit_service.log_security_event(
        "user_create", "user_profile", created.id, "medium", {"role": created.role.value},
        user=current_user, **request_context(request)
    )
    return created

@router.get("/{user_id}", response_model=schemas.UserResponse)
def read_user(user_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    user = crud.get_user(db, user_id)
    if not user or not _same_practice(current_user, user):
        raise HTTPException(status_code=404, detail="User not found")
    return user

@router.put("/{user_id}", response_model=schemas.UserResponse)
def update_user(
    request: Request,
    user_id: int,
    user_update: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    target = crud.get_user(db, user_id)
    if not target or not _same_practice(current_user, target):
        raise HTTPException(status_code=404, detail="User not found")
    if current_user.role != models.UserRole.super_admin:
        if user_update.role == models.UserRole.super_admin or target.role == models.UserRole.super_admin:
            raise HTTPException(status_code=403, detail="Only a super admin can manage super admins")
        if user_update.client_organization_id not in (None, current_user.client_organization_id):
            raise HTTPException(status_code=403, detail="Users cannot be moved to another practice")
    updated = crud.update_user(db, user_id, user_update)
    audit_service.log_security_event(
        "user_update", "user_profile", user_id, "medium", user_update.model_dump(exclude_unset=True, mode="json"),
        user=current_user, **request_context(request)
    )
    return updated
