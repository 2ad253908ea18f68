# dentalcrm/client/services.py
"""
Domain services for UI code.

Every call returns a ``ServiceResult`` envelope: ``data`` on success,
``error`` (a readable message) on failure. Nothing here raises for HTTP
errors, transport errors or malformed responses, so list views can render
an inline error panel and offer a retry instead of crashing.
"""
import functools
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from ..services import pricing
from .gateway import SecureApiClient

logger = logging.getLogger(__name__)


class ServiceResult(BaseModel):
    data: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ValueError covers non-JSON bodies; RuntimeError is raised by a closed client.
REQUEST_ERRORS = (httpx.HTTPError, ValueError, RuntimeError)


def error_message(exc: Exception) -> str:
    """Server `detail` when there is one, otherwise the exception text."""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
        except ValueError:
            body = None
        detail = body.get("detail") if isinstance(body, dict) else None
        if isinstance(detail, list):
            # FastAPI validation errors
            detail = "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail)
        elif detail is not None and not isinstance(detail, str):
            detail = str(detail)
        return detail or f"Request failed with status {exc.response.status_code}"
    if isinstance(exc, ValueError):
        return f"Invalid response from server: {exc}"
    return str(exc) or exc.__class__.__name__


def enveloped(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> ServiceResult:
        try:
            return ServiceResult(data=await func(*args, **kwargs))
        except REQUEST_ERRORS as e:
            logger.error(f"{func.__qualname__} failed: {e}")
            return ServiceResult(error=error_message(e))
    return wrapper


class ResourceService:
    """CRUD over one collection path."""

    path: str = ""
    required_role: Optional[str] = None

    def __init__(self, api: SecureApiClient):
        self.api = api

    @enveloped
    async def get_all(self, filters: Optional[Dict[str, Any]] = None):
        return await self.api.get(self.path, params=filters or {}, required_role=self.required_role)

    @enveloped
    async def get_by_id(self, item_id: int):
        return await self.api.get(f"{self.path}/{item_id}", required_role=self.required_role)

    @enveloped
    async def create(self, payload: Dict[str, Any]):
        return await self.api.post(self.path, json=payload, required_role=self.required_role)

    @enveloped
    async def update(self, item_id: int, updates: Dict[str, Any]):
        return await self.api.put(f"{self.path}/{item_id}", json=updates, required_role=self.required_role)

    @enveloped
    async def delete(self, item_id: int):
        await self.api.delete(f"{self.path}/{item_id}", required_role=self.required_role)
        return True


class PatientService(ResourceService):
    path = "/patients"

    @enveloped
    async def get_stats(self):
        return await self.api.get(f"{self.path}/stats")


class AppointmentService(ResourceService):
    path = "/appointments"

    @enveloped
    async def get_calendar(self, view: str = "week", anchor: str = None, dentist_id: int = None):
        return await self.api.get(f"{self.path}/calendar", params={"view": view, "date": anchor, "dentist_id": dentist_id})

    @enveloped
    async def check_conflicts(self, dentist_id: int, appointment_date: str, start_time: str, end_time: str, exclude_id: int = None):
        return await self.api.get(f"{self.path}/conflicts", params={
            "dentist_id": dentist_id, "appointment_date": appointment_date,
            "start_time": start_time, "end_time": end_time, "exclude_id": exclude_id,
        })

    @enveloped
    async def get_availability(self, dentist_id: int, day: str, duration: int = 30):
        return await self.api.get(f"{self.path}/availability", params={"dentist_id": dentist_id, "date": day, "duration": duration})

    @enveloped
    async def get_summary(self, appointment_id: int):
        return await self.api.get(f"{self.path}/{appointment_id}/summary")

    @enveloped
    async def set_status(self, appointment_id: int, status: str, cancellation_reason: str = None):
        return await self.api.put(f"{self.path}/{appointment_id}/status", json={
            "status": status, "cancellation_reason": cancellation_reason,
        })

    @enveloped
    async def reschedule(self, appointment_id: int, appointment_date: str, start_time: str, dentist_id: int = None):
        return await self.api.post(f"{self.path}/{appointment_id}/reschedule", json={
            "appointment_date": appointment_date, "start_time": start_time, "dentist_id": dentist_id,
        })

    @enveloped
    async def collect_deposit(self, appointment_id: int, amount: float, payment_method: str = "card"):
        return await self.api.post(f"{self.path}/{appointment_id}/deposit", json={"amount": amount, "payment_method": payment_method})


class LeadService(ResourceService):
    path = "/leads"

    @enveloped
    async def get_pipeline(self):
        return await self.api.get(f"{self.path}/pipeline")

    @enveloped
    async def withdraw_consent(self, lead_id: int):
        return await self.api.post(f"{self.path}/{lead_id}/withdraw-consent")

    @enveloped
    async def convert(self, lead_id: int):
        return await self.api.post(f"{self.path}/{lead_id}/convert")


class PaymentService(ResourceService):
    path = "/payments"


class MembershipService(ResourceService):
    path = "/memberships"

    @enveloped
    async def get_plans(self):
        return await self.api.get("/membership-plans")

    @enveloped
    async def get_applications(self, filters: Optional[Dict[str, Any]] = None):
        return await self.api.get("/membership-applications", params=filters or {})

    @enveloped
    async def create_application(self, payload: Dict[str, Any]):
        return await self.api.post("/membership-applications", json=payload)

    @enveloped
    async def set_application_status(self, application_id: int, status: str, rejected_reason: str = None):
        return await self.api.patch(f"/membership-applications/{application_id}/status", json={
            "status": status, "rejected_reason": rejected_reason,
        })

    @enveloped
    async def create_from_application(self, application_id: int):
        return await self.api.post(f"{self.path}/from-application", json={"application_id": application_id})

    @enveloped
    async def set_status(self, membership_id: int, status: str):
        return await self.api.patch(f"{self.path}/{membership_id}/status", json={"status": status})

    @enveloped
    async def get_overview(self, practice_location_id: int = None):
        return await self.api.get(f"{self.path}/analytics/overview", params={"practice_location_id": practice_location_id})

    @enveloped
    async def get_trends(self, days: int = 30):
        return await self.api.get(f"{self.path}/analytics/trends", params={"days": days})


class PricingService:
    """Quotes are computed locally; the calculator is shared with the server."""

    def __init__(self, schedule: pricing.PricingSchedule = pricing.DEFAULT_SCHEDULE):
        self.schedule = schedule

    def quote(self, user_count: int, months: int = 1) -> ServiceResult:
        return ServiceResult(data=pricing.calculate_pricing(user_count, months, self.schedule))

    def tiers(self) -> ServiceResult:
        return ServiceResult(data=pricing.get_pricing_tiers(self.schedule))

    def recommendation(self, practice_size: str) -> ServiceResult:
        return ServiceResult(data=pricing.get_pricing_recommendation(practice_size))

    def roi(self, user_count: int, monthly_savings: float) -> ServiceResult:
        return ServiceResult(data=pricing.calculate_roi(user_count, monthly_savings, self.schedule))


class AuditService:
    def __init__(self, api: SecureApiClient):
        self.api = api

    @enveloped
    async def get_all(self, filters: Optional[Dict[str, Any]] = None):
        return await self.api.get("/admin/audit-logs", params=filters or {}, required_role="super_admin")

    @enveloped
    async def get_security_events(self, risk_level: str = None, hours: int = 24):
        return await self.api.get("/admin/security-events", params={"risk_level": risk_level, "hours": hours}, required_role="super_admin")

    @enveloped
    async def detect_suspicious_activity(self):
        return await self.api.get("/admin/suspicious-activity", required_role="super_admin")


class UiService:
    def __init__(self, api: SecureApiClient):
        self.api = api

    @enveloped
    async def get_settings(self):
        return await self.api.get("/ui/settings")

    @enveloped
    async def get_branding(self):
        return await self.api.get("/ui/branding")

    @enveloped
    async def update_branding(self, branding: Dict[str, Any]):
        return await self.api.put("/ui/branding", json=branding)

    @enveloped
    async def get_flags(self):
        return await self.api.get("/ui/flags")
