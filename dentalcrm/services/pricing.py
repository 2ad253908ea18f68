"""
Subscription pricing for practices using the CRM.

A practice pays a one-time installation fee and a monthly price per seat
(a billable service-provider user). The first ``included_seats`` seats are
free for ``free_trial_months``; every seat above that is billed from day one.

Everything here is pure arithmetic over a :class:`PricingSchedule`, so the
same functions back the public quote endpoints, the admin revenue
projection and the client SDK.
"""
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict

INSTALLATION_FEE = 1000
INCLUDED_SEATS = 2
ADDITIONAL_SEAT_PRICE = 50
FREE_TRIAL_MONTHS = 12


class PricingSchedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    installation_fee: float = INSTALLATION_FEE
    included_seats: int = INCLUDED_SEATS
    additional_seat_price: float = ADDITIONAL_SEAT_PRICE
    free_trial_months: int = FREE_TRIAL_MONTHS
    currency: str = "GBP"
    currency_symbol: str = "£"

    @classmethod
    def from_settings(cls, settings) -> "PricingSchedule":
        return cls(
            installation_fee=settings.installation_fee,
            included_seats=settings.included_seats,
            additional_seat_price=settings.additional_seat_price,
            free_trial_months=settings.free_trial_months,
            currency=settings.currency,
            currency_symbol=settings.currency_symbol,
        )


DEFAULT_SCHEDULE = PricingSchedule()


class PricingBreakdown(BaseModel):
    installation: float
    included_seats_cost: float
    additional_seats_cost: float
    free_trial_months: int
    paid_months: int


class PricingQuote(BaseModel):
    user_count: int
    months: int
    installation_fee: float
    included_seats: int
    additional_seats: int
    monthly_cost: float
    total_monthly_cost: float
    total_cost: float
    currency: str
    breakdown: PricingBreakdown


class PricingTier(BaseModel):
    name: str
    user_count: int
    description: str
    monthly_cost: float
    installation_fee: float
    features: List[str]


class SystemRevenue(BaseModel):
    client_count: int
    months: int
    total_installation: float
    total_monthly: float
    total_revenue: float
    average_per_client: float
    currency: str
    currency_symbol: str


class RoiEstimate(BaseModel):
    monthly_roi: float
    annual_roi: float
    roi_percentage: float
    payback_period_months: Optional[float]
    is_profitable: bool


class PricingRecommendation(BaseModel):
    practice_size: str
    tier: str
    user_count: int
    reasoning: str


def _clamp(value) -> int:
    """Seat counts and durations are whole numbers of at least one."""
    try:
        value = int(value)
    except (TypeError, ValueError):
        return 1
    return max(1, value)


def calculate_pricing(user_count: int, months: int = 1, schedule: PricingSchedule = DEFAULT_SCHEDULE) -> PricingQuote:
    user_count = _clamp(user_count)
    months = _clamp(months)
    price = schedule.additional_seat_price

    additional_seats = max(0, user_count - schedule.included_seats)
    monthly_cost = additional_seats * price

    free_months = min(months, schedule.free_trial_months)
    paid_months = max(0, months - schedule.free_trial_months)

    # Included seats start costing money only once the trial is used up
    total_monthly_cost = monthly_cost + (schedule.included_seats * price if paid_months > 0 else 0)

    return PricingQuote(
        user_count=user_count,
        months=months,
        installation_fee=schedule.installation_fee,
        included_seats=schedule.included_seats,
        additional_seats=additional_seats,
        monthly_cost=monthly_cost,
        total_monthly_cost=total_monthly_cost,
        total_cost=schedule.installation_fee + total_monthly_cost * months,
        currency=schedule.currency,
        breakdown=PricingBreakdown(
            installation=schedule.installation_fee,
            included_seats_cost=schedule.included_seats * price * paid_months if paid_months > 0 else 0,
            additional_seats_cost=additional_seats * price * months,
            free_trial_months=free_months,
            paid_months=paid_months,
        ),
    )


def calculate_system_revenue(user_counts: Iterable[int], months: int = 1, schedule: PricingSchedule = DEFAULT_SCHEDULE) -> SystemRevenue:
    """Revenue across all clients, each given by its seat count."""
    months = _clamp(months)
    total_installation = total_monthly = total_revenue = 0
    count = 0
    for users in user_counts:
        quote = calculate_pricing(users, months, schedule)
        total_installation += quote.installation_fee
        total_monthly += quote.total_monthly_cost
        total_revenue += quote.total_cost
        count += 1

    return SystemRevenue(
        client_count=count,
        months=months,
        total_installation=total_installation,
        total_monthly=total_monthly,
        total_revenue=total_revenue,
        average_per_client=total_revenue / count if count else 0,
        currency=schedule.currency,
        currency_symbol=schedule.currency_symbol,
    )


def get_pricing_tiers(schedule: PricingSchedule = DEFAULT_SCHEDULE) -> List[PricingTier]:
    included = schedule.included_seats
    trial = schedule.free_trial_months
    return [
        PricingTier(
            name="Starter",
            user_count=2,
            description="Perfect for small practices",
            monthly_cost=calculate_pricing(2, 1, schedule).monthly_cost,
            installation_fee=schedule.installation_fee,
            features=[
                f"{included} service provider seats included",
                f"{trial} months free for included seats",
                "Basic patient management",
                "Appointment scheduling",
                "Lead management",
            ],
        ),
        PricingTier(
            name="Professional",
            user_count=5,
            description="Ideal for growing practices",
            monthly_cost=calculate_pricing(5, 1, schedule).monthly_cost,
            installation_fee=schedule.installation_fee,
            features=[
                f"{included} seats included + {max(0, 5 - included)} additional",
                "All Starter features",
                "Advanced analytics",
                "Membership management",
                "Widget configuration",
            ],
        ),
        PricingTier(
            name="Enterprise",
            user_count=10,
            description="For large multi-location practices",
            monthly_cost=calculate_pricing(10, 1, schedule).monthly_cost,
            installation_fee=schedule.installation_fee,
            features=[
                f"{included} seats included + {max(0, 10 - included)} additional",
                "All Professional features",
                "Cross-site analytics",
                "Compliance monitoring",
                "Priority support",
            ],
        ),
    ]


def format_currency(amount: float, schedule: PricingSchedule = DEFAULT_SCHEDULE) -> str:
    """``£1,234`` for whole amounts, ``£1,234.50`` otherwise."""
    if float(amount).is_integer():
        return f"{schedule.currency_symbol}{int(amount):,}"
    return f"{schedule.currency_symbol}{amount:,.2f}"


def get_client_pricing_summary(client_name: str, user_count: int, schedule: PricingSchedule = DEFAULT_SCHEDULE) -> dict:
    quote = calculate_pricing(user_count, 1, schedule)
    return {
        "client_name": client_name,
        "user_count": quote.user_count,
        "included_seats": quote.included_seats,
        "additional_seats": quote.additional_seats,
        "monthly_cost": format_currency(quote.monthly_cost, schedule),
        "total_cost": format_currency(quote.total_cost, schedule),
        "breakdown": {
            "installation": format_currency(quote.breakdown.installation, schedule),
            "monthly": format_currency(quote.monthly_cost, schedule),
            "free_trial_months": quote.breakdown.free_trial_months,
        },
    }


def calculate_roi(user_count: int, monthly_savings: float, schedule: PricingSchedule = DEFAULT_SCHEDULE) -> RoiEstimate:
    quote = calculate_pricing(user_count, 1, schedule)
    monthly_roi = monthly_savings - quote.monthly_cost
    roi_percentage = (monthly_roi / quote.monthly_cost) * 100 if quote.monthly_cost > 0 else 0
    # A practice that never nets a positive month never pays back the installation
    payback = schedule.installation_fee / monthly_roi if monthly_roi > 0 else None
    return RoiEstimate(
        monthly_roi=monthly_roi,
        annual_roi=monthly_roi * 12,
        roi_percentage=roi_percentage,
        payback_period_months=payback,
        is_profitable=monthly_roi > 0,
    )


_RECOMMENDATIONS = {
    "1-2 providers": ("Starter", 2, "Perfect for solo practitioners or small partnerships"),
    "3-5 providers": ("Professional", 5, "Ideal for growing practices with multiple dentists and hygienists"),
    "6+ providers": ("Enterprise", 10, "Best for large practices with multiple locations and staff"),
}


def get_pricing_recommendation(practice_size: str) -> PricingRecommendation:
    key = practice_size if practice_size in _RECOMMENDATIONS else "1-2 providers"
    tier, users, reasoning = _RECOMMENDATIONS[key]
    return PricingRecommendation(practice_size=key, tier=tier, user_count=users, reasoning=reasoning)
