# dentalcrm/routers/ui.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..services.audit_service import audit_service, request_context

router = APIRouter(tags=["UI"], dependencies=[Depends(security.get_current_user)])

branding_roles = security.require_role("super_admin", "practice_admin", "manager")


def merge_ui_settings(row: Optional[models.ClientUiSettings]) -> schemas.UiSettings:
    """Stored tenant values over the defaults; NULL columns keep the default."""
    merged = schemas.UiSettings()
    if row is None:
        return merged
    stored = {
        "public_footer_enabled": row.public_footer_enabled,
        "public_footer_variant": row.public_footer_variant,
        "internal_footer_enabled": row.internal_footer_enabled,
    }
    return merged.model_copy(update={k: v for k, v in stored.items() if v is not None})


@router.get("/ui/settings", response_model=schemas.UiSettings)
def read_ui_settings(db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    if not current_user.client_organization_id:
        return merge_ui_settings(None)
    return merge_ui_settings(crud.get_ui_settings(db, current_user.client_organization_id))

@router.put("/admin/ui-settings/{client_id}", response_model=schemas.UiSettings)
def update_ui_settings(
    request: Request,
    client_id: int,
    update: schemas.UiSettingsUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role("super_admin")),
):
    row = crud.upsert_ui_settings(db, client_id, update)
    audit_service.log_security_event(
        "ui_settings_update", "client_organization", client_id, "low",
        update.model_dump(mode="json"), user=current_user, **request_context(request)
    )
    return merge_ui_settings(row)

@router.get("/ui/branding", response_model=Optional[schemas.BrandingResponse])
def read_branding(db: Session = Depends(get_db), current_user: models.User = Depends(security.get_current_user)):
    if not current_user.client_organization_id:
        return None
    return crud.get_branding(db, current_user.client_organization_id)

@router.put("/ui/branding", response_model=schemas.BrandingResponse)
def update_branding(
    update: schemas.BrandingUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(branding_roles),
):
    if not current_user.client_organization_id:
        raise HTTPException(status_code=400, detail="User is not linked to a practice")
    return crud.upsert_branding(db, current_user.client_organization_id, update)

@router.get("/ui/flags", response_model=schemas.UiFlags)
def read_flags():
    settings = get_settings()
    return {
        "show_gdc_public_footer": settings.show_gdc_public_footer,
        "show_compact_internal_footer": settings.show_compact_internal_footer,
    }
