# dentalcrm/services/membership_lifecycle.py
"""Membership application and membership status workflows."""
import calendar
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional

from .. import models
from ..errors import InvalidTransitionError

AppStatus = models.ApplicationStatus
MemberStatus = models.MembershipStatus

APPLICATION_TRANSITIONS = {
    AppStatus.pending: frozenset({AppStatus.under_review, AppStatus.approved, AppStatus.rejected}),
    AppStatus.under_review: frozenset({AppStatus.approved, AppStatus.rejected}),
    AppStatus.approved: frozenset(),
    AppStatus.rejected: frozenset(),
}

MEMBERSHIP_TRANSITIONS = {
    MemberStatus.active: frozenset({MemberStatus.paused, MemberStatus.cancelled, MemberStatus.expired}),
    MemberStatus.paused: frozenset({MemberStatus.active, MemberStatus.cancelled}),
    MemberStatus.cancelled: frozenset(),
    MemberStatus.expired: frozenset(),
}

TIER_ORDER = {
    models.MembershipTier.basic: 0,
    models.MembershipTier.standard: 1,
    models.MembershipTier.premium: 2,
}


def add_months(d: date, months: int) -> date:
    """Calendar month arithmetic, clamped to the last day of the target month."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def ensure_application_transition(current, requested) -> None:
    current, requested = AppStatus(current), AppStatus(requested)
    if current == requested:
        return
    if requested not in APPLICATION_TRANSITIONS[current]:
        raise InvalidTransitionError("application", current, requested)


def ensure_membership_transition(current, requested) -> None:
    current, requested = MemberStatus(current), MemberStatus(requested)
    if current == requested:
        return
    if requested not in MEMBERSHIP_TRANSITIONS[current]:
        raise InvalidTransitionError("membership", current, requested)


def apply_application_status(
    application: models.MembershipApplication,
    requested: AppStatus,
    processed_by_id: Optional[int] = None,
    rejected_reason: Optional[str] = None,
) -> bool:
    """Move an application to ``requested``. Returns True when the status changed."""
    requested = AppStatus(requested)
    ensure_application_transition(application.status, requested)
    if application.status == requested:
        return False

    application.status = requested
    application.processed_by_id = processed_by_id
    if requested == AppStatus.approved:
        application.approved_date = datetime.now(timezone.utc)
    elif requested == AppStatus.rejected:
        application.rejected_reason = rejected_reason
    return True


def apply_membership_status(membership: models.Membership, requested: MemberStatus, today: Optional[date] = None) -> bool:
    requested = MemberStatus(requested)
    ensure_membership_transition(membership.status, requested)
    if membership.status == requested:
        return False

    today = today or date.today()
    membership.status = requested
    if requested in (MemberStatus.cancelled, MemberStatus.expired):
        membership.end_date = today
        membership.next_billing_date = None
    elif requested == MemberStatus.active and membership.next_billing_date is None:
        membership.next_billing_date = next_billing_date(today, membership.billing_frequency)
    return True


def next_billing_date(start: date, frequency) -> date:
    months = 12 if models.BillingFrequency(frequency) == models.BillingFrequency.annual else 1
    return add_months(start, months)


def build_membership(
    application: models.MembershipApplication,
    plan: models.MembershipPlan,
    membership_number: str,
    today: Optional[date] = None,
) -> models.Membership:
    """Membership row for an approved application (caller adds it to the session)."""
    if AppStatus(application.status) != AppStatus.approved:
        raise InvalidTransitionError("application", application.status, "converted")
    today = today or date.today()
    return models.Membership(
        membership_number=membership_number,
        application_id=application.id,
        patient_id=application.patient_id,
        plan_id=plan.id,
        practice_location_id=application.practice_location_id,
        status=MemberStatus.active,
        billing_frequency=application.billing_frequency,
        start_date=today,
        next_billing_date=next_billing_date(today, application.billing_frequency),
        monthly_amount=Decimal(str(plan.monthly_price)),
    )


def conversion_rate(active_memberships: int, total_applications: int) -> float:
    if total_applications <= 0:
        return 0.0
    return round(active_memberships / total_applications * 100, 1)
