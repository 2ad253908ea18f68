# dentalcrm/services/audit_service.py
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import crud, models
from ..database import SessionLocal

AUTH_EVENT_RISK = {
    "login": models.RiskLevel.low,
    "logout": models.RiskLevel.low,
    "password_change": models.RiskLevel.medium,
    "failed_login": models.RiskLevel.high,
    "account_locked": models.RiskLevel.critical,
}

FAILED_LOGIN_WINDOW = timedelta(hours=1)
DATA_ACCESS_WINDOW = timedelta(hours=2)
UNUSUAL_ACCESS_THRESHOLD = 50
FAILED_LOGIN_ALERT = 5
DATA_ACCESS_ALERT = 100


class AuditService:
    """Writes security and data-access events to the audit_logs table.

    Events are written through a dedicated session so that an audit row
    survives a rollback of the request's own transaction. A failure to write
    an audit row is logged and never breaks the request.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self.logger = logging.getLogger("audit")

    def log_security_event(
        self,
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Any = None,
        risk_level: str = "low",
        metadata: Optional[Dict[str, Any]] = None,
        user: Optional[models.User] = None,
        user_email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        risk = models.RiskLevel(risk_level)
        self.logger.info(
            "audit event %s on %s:%s (risk %s)", action, resource_type, resource_id, risk.value
        )
        db = self.session_factory()
        try:
            db.add(models.AuditLog(
                user_id=user.id if user else None,
                user_email=user.email if user else user_email,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id) if resource_id is not None else None,
                risk_level=risk,
                event_metadata=metadata or {},
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            self.logger.error(f"Failed to save audit event '{action}': {e}")
        finally:
            db.close()

    def log_patient_access(self, action: str, patient_id: Any, user: Optional[models.User] = None, **context) -> None:
        self.log_security_event(
            action=f"patient_{action}",
            resource_type="patient_record",
            resource_id=patient_id,
            risk_level="high" if action == "delete" else "medium",
            user=user,
            **context,
        )

    def log_auth_event(self, event: str, user: Optional[models.User] = None, user_email: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None, **context) -> None:
        self.log_security_event(
            action=event,
            resource_type="authentication",
            resource_id=user.id if user else None,
            risk_level=AUTH_EVENT_RISK.get(event, models.RiskLevel.medium).value,
            metadata=metadata,
            user=user,
            user_email=user_email,
            **context,
        )

    def log_lead_access(self, action: str, lead_id: Any, user: Optional[models.User] = None, **context) -> None:
        self.log_security_event(
            action=f"lead_{action}",
            resource_type="lead",
            resource_id=lead_id,
            risk_level="low",
            user=user,
            **context,
        )

    def log_appointment_access(self, action: str, appointment_id: Any, user: Optional[models.User] = None, **context) -> None:
        self.log_security_event(
            action=f"appointment_{action}",
            resource_type="appointment",
            resource_id=appointment_id,
            risk_level="medium" if action == "delete" else "low",
            user=user,
            **context,
        )

    # ---- Queries ----

    def get_audit_trail(self, db: Session, resource_type: str, resource_id: Any, limit: int = 50) -> List[models.AuditLog]:
        return crud.get_audit_logs(db, limit=limit, resource_type=resource_type, resource_id=resource_id)

    def get_security_events(self, db: Session, risk_level: Optional[str] = None, hours: int = 24) -> List[models.AuditLog]:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        return crud.get_audit_logs(db, limit=500, risk_level=risk_level, since=since)

    def detect_suspicious_activity(self, db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)

        failed = [
            row for row in crud.get_audit_logs(db, limit=10000, resource_type="authentication", since=now - FAILED_LOGIN_WINDOW)
            if row.action == "failed_login"
        ]
        failed_by_user = Counter(row.user_email or "unknown" for row in failed)

        access = crud.get_audit_logs(db, limit=10000, resource_type="patient_record", since=now - DATA_ACCESS_WINDOW)
        access_by_user = Counter(row.user_email or "unknown" for row in access)
        unusual = sorted(user for user, count in access_by_user.items() if count > UNUSUAL_ACCESS_THRESHOLD)

        recommendations = []
        if len(failed) > FAILED_LOGIN_ALERT:
            recommendations.append({
                "type": "auth_security",
                "priority": "high",
                "message": f"{len(failed)} failed logins in the last hour. Review accounts and consider locking them.",
            })
        if len(access) > DATA_ACCESS_ALERT:
            recommendations.append({
                "type": "data_access",
                "priority": "medium",
                "message": f"{len(access)} patient record accesses in the last two hours. Review access patterns.",
            })

        return {
            "failed_logins": len(failed),
            "failed_logins_by_user": dict(failed_by_user),
            "data_access_events": len(access),
            "unusual_access_users": unusual,
            "recommendations": recommendations,
        }


def request_context(request) -> Dict[str, Optional[str]]:
    """IP and user agent of an incoming request, for audit rows."""
    if request is None:
        return {}
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


audit_service = AuditService()
