# dentalcrm/routers/health.py
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db

from sqlalchemy.orm import Session

router = APIRouter(tags=["Health Checks"])


@router.get("/health", response_model=schemas.HealthResponse)
def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc),
        "version": get_settings().app_version,
    }

@router.get("/stats", response_model=schemas.StatsResponse, tags=["Dashboard"])
def read_stats(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role(*security.ALL_STAFF)),
):
    """Dashboard totals. Revenue is null unless the practice can read the finance module."""
    stats = crud.get_stats(db)
    if not security.has_module_permission(db, current_user, "finance", "read"):
        stats["total_revenue"] = None
    return stats
