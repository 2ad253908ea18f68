# dentalcrm/client/guard.py
from typing import Dict, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel

from .gateway import LOGIN_PATH

MANAGEMENT_ROLES = ("super_admin", "practice_admin", "manager")

# Empty tuple: any signed-in user
ROUTE_ROLES: Dict[str, Tuple[str, ...]] = {
    "/": MANAGEMENT_ROLES,
    "/compliance-operations-monitoring-dashboard": MANAGEMENT_ROLES,
    "/widget-configuration-dashboard": MANAGEMENT_ROLES,
    "/cross-site-analytics-dashboard": MANAGEMENT_ROLES,
    "/patient-management-dashboard": ("super_admin", "practice_admin", "dentist", "hygienist", "receptionist", "manager"),
    "/appointment-scheduler": ("super_admin", "practice_admin", "dentist", "receptionist", "manager"),
    "/lead-generation-conversion-analytics-dashboard": (),
    "/patient-journey-revenue-optimization-dashboard": (),
    "/lead-management-screen": (),
    "/booking-confirmation-payment-processing": (),
    "/service-provider-matching-engine": (),
}

PUBLIC_ROUTES = ("/login", "/public-booking-interface", "/embeddable-booking-widget")


class RouteDecision(BaseModel):
    action: Literal["spinner", "redirect", "access_denied", "render"]
    redirect_to: Optional[str] = None
    redirect_from: Optional[str] = None
    required_roles: Tuple[str, ...] = ()
    current_role: Optional[str] = None


def evaluate_route(
    loading: bool,
    authenticated: bool,
    user_role: Optional[str] = None,
    required_roles: Sequence[str] = (),
    require_auth: bool = True,
    path: Optional[str] = None,
) -> RouteDecision:
    """What a protected page should show for the current auth state.

    Checks run in order: still loading, not signed in, wrong role.
    """
    if loading:
        return RouteDecision(action="spinner")
    if require_auth and not authenticated:
        return RouteDecision(action="redirect", redirect_to=LOGIN_PATH, redirect_from=path)
    if required_roles and user_role not in required_roles:
        return RouteDecision(
            action="access_denied", required_roles=tuple(required_roles), current_role=user_role
        )
    return RouteDecision(action="render")


def evaluate_path(path: str, loading: bool, authenticated: bool, user_role: Optional[str] = None) -> RouteDecision:
    """evaluate_route with the allow-list for a known page path."""
    if path in PUBLIC_ROUTES:
        return RouteDecision(action="render")
    return evaluate_route(loading, authenticated, user_role, ROUTE_ROLES.get(path, ()), path=path)
