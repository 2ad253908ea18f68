# tests/test_pricing.py
import pytest

from dentalcrm.services import pricing
from dentalcrm.services.pricing import PricingSchedule, calculate_pricing


def test_five_users_over_a_year():
    quote = calculate_pricing(5, 12)
    assert quote.additional_seats == 3
    assert quote.monthly_cost == 150
    assert quote.total_monthly_cost == 150
    assert quote.total_cost == 2800
    assert quote.breakdown.paid_months == 0
    assert quote.breakdown.free_trial_months == 12
    assert quote.breakdown.additional_seats_cost == 1800
    assert quote.breakdown.included_seats_cost == 0

def test_two_users_one_month():
    quote = calculate_pricing(2, 1)
    assert quote.additional_seats == 0
    assert quote.monthly_cost == 0
    assert quote.total_cost == 1000

def test_included_seats_billed_after_trial():
    quote = calculate_pricing(2, 18)
    assert quote.breakdown.paid_months == 6
    assert quote.breakdown.free_trial_months == 12
    assert quote.breakdown.included_seats_cost == 2 * 50 * 6
    assert quote.total_monthly_cost == 100

@pytest.mark.parametrize("users, months", [(0, 0), (-3, -1), (None, "x")])
def test_inputs_clamped_to_one(users, months):
    quote = calculate_pricing(users, months)
    assert quote.user_count == 1
    assert quote.months == 1
    assert quote.total_cost == 1000

@pytest.mark.parametrize("users", range(1, 3))
@pytest.mark.parametrize("months", [1, 6, 12])
def test_no_recurring_cost_within_included_seats(users, months):
    quote = calculate_pricing(users, months)
    assert quote.additional_seats == 0
    assert quote.total_monthly_cost == 0

@pytest.mark.parametrize("users", [3, 7, 25, 120])
def test_additional_seats_priced_per_seat(users):
    quote = calculate_pricing(users, 3)
    assert quote.additional_seats == users - 2
    assert quote.monthly_cost == (users - 2) * 50

@pytest.mark.parametrize("users, months", [(1, 1), (4, 12), (9, 13), (30, 36)])
def test_total_is_installation_plus_recurring(users, months):
    quote = calculate_pricing(users, months)
    assert quote.total_cost == quote.installation_fee + quote.total_monthly_cost * months

def test_calculation_is_deterministic():
    assert calculate_pricing(7, 24) == calculate_pricing(7, 24)

def test_custom_schedule():
    schedule = PricingSchedule(installation_fee=500, included_seats=1, additional_seat_price=20, free_trial_months=0)
    quote = calculate_pricing(3, 2, schedule)
    assert quote.additional_seats == 2
    assert quote.total_monthly_cost == 2 * 20 + 1 * 20
    assert quote.total_cost == 500 + 60 * 2

def test_system_revenue():
    revenue = pricing.calculate_system_revenue([2, 5], months=12)
    assert revenue.client_count == 2
    assert revenue.total_installation == 2000
    assert revenue.total_monthly == 150
    assert revenue.total_revenue == 1000 + 2800
    assert revenue.average_per_client == 1900

def test_system_revenue_without_clients():
    revenue = pricing.calculate_system_revenue([], months=12)
    assert revenue.client_count == 0
    assert revenue.average_per_client == 0

def test_tiers():
    tiers = pricing.get_pricing_tiers()
    assert [t.name for t in tiers] == ["Starter", "Professional", "Enterprise"]
    assert [t.user_count for t in tiers] == [2, 5, 10]
    assert [t.monthly_cost for t in tiers] == [0, 150, 400]

@pytest.mark.parametrize("amount, expected", [
    (1234, "£1,234"),
    (0, "£0"),
    (1234.5, "£1,234.50"),
    (1000000, "£1,000,000"),
])
def test_format_currency(amount, expected):
    assert pricing.format_currency(amount) == expected

def test_client_summary():
    summary = pricing.get_client_pricing_summary("Smile Clinic", 5)
    assert summary["client_name"] == "Smile Clinic"
    assert summary["monthly_cost"] == "£150"
    assert summary["breakdown"]["installation"] == "£1,000"

def test_roi_profitable():
    roi = pricing.calculate_roi(5, 650)
    assert roi.monthly_roi == 500
    assert roi.annual_roi == 6000
    assert roi.payback_period_months == 2
    assert roi.is_profitable

def test_roi_never_pays_back():
    roi = pricing.calculate_roi(5, 100)
    assert roi.monthly_roi == -50
    assert roi.payback_period_months is None
    assert not roi.is_profitable

def test_roi_with_free_seats_only():
    roi = pricing.calculate_roi(2, 100)
    assert roi.roi_percentage == 0
    assert roi.payback_period_months == 10

@pytest.mark.parametrize("size, tier", [
    ("1-2 providers", "Starter"),
    ("3-5 providers", "Professional"),
    ("6+ providers", "Enterprise"),
    ("unknown", "Starter"),
])
def test_recommendation(size, tier):
    assert pricing.get_pricing_recommendation(size).tier == tier
