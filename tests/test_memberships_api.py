# tests/test_memberships_api.py
import pytest
from httpx import AsyncClient

from dentalcrm import crud, models


@pytest.fixture
def plans(db):
    crud.seed_membership_plans(db)
    return crud.get_membership_plans(db)

async def _apply(client, headers, plan, **fields):
    payload = {
        "applicant_name": "Maya Patel",
        "applicant_email": "maya@patients.co.uk",
        "plan_id": plan.id,
        **fields,
    }
    response = await client.post("/api/v1/membership-applications", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_plans_ordered_by_tier(async_client: AsyncClient, admin_headers, plans):
    response = await async_client.get("/api/v1/membership-plans", headers=admin_headers)
    assert response.status_code == 200
    assert [p["tier"] for p in response.json()] == ["basic", "standard", "premium"]
    assert response.json()[0]["benefits"]

@pytest.mark.asyncio
async def test_new_application_is_pending(async_client: AsyncClient, admin_headers, plans):
    data = await _apply(async_client, admin_headers, plans[0])
    assert data["status"] == "pending"
    assert data["application_number"].startswith("APP-")
    assert data["membership_id"] is None

@pytest.mark.asyncio
async def test_unknown_plan(async_client: AsyncClient, admin_headers):
    response = await async_client.post(
        "/api/v1/membership-applications",
        json={"applicant_name": "X", "applicant_email": "x@patients.co.uk", "plan_id": 999},
        headers=admin_headers,
    )
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_approval_opens_membership(async_client: AsyncClient, admin_headers, plans, db):
    application = await _apply(async_client, admin_headers, plans[1], billing_frequency="annual")
    response = await async_client.patch(
        f"/api/v1/membership-applications/{application['id']}/status", json={"status": "approved"}, headers=admin_headers
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "approved"
    assert data["approved_date"] is not None
    assert data["membership_id"] is not None

    membership = (await async_client.get(f"/api/v1/memberships/{data['membership_id']}", headers=admin_headers)).json()
    assert membership["status"] == "active"
    assert membership["billing_frequency"] == "annual"
    assert membership["monthly_amount"] == 19.5
    assert membership["plan"]["name"] == "Complete Care"
    assert db.query(models.Membership).count() == 1

@pytest.mark.asyncio
async def test_from_application_is_idempotent(async_client: AsyncClient, admin_headers, plans, db):
    application = await _apply(async_client, admin_headers, plans[0])
    # Mark approved without going through the endpoint so no membership exists yet
    row = db.get(models.MembershipApplication, application["id"])
    row.status = models.ApplicationStatus.approved
    db.commit()

    first = await async_client.post(
        "/api/v1/memberships/from-application", json={"application_id": application["id"]}, headers=admin_headers
    )
    assert first.status_code == 201
    second = await async_client.post(
        "/api/v1/memberships/from-application", json={"application_id": application["id"]}, headers=admin_headers
    )
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]
    assert db.query(models.Membership).count() == 1

@pytest.mark.asyncio
async def test_from_pending_application_rejected(async_client: AsyncClient, admin_headers, plans):
    application = await _apply(async_client, admin_headers, plans[0])
    response = await async_client.post(
        "/api/v1/memberships/from-application", json={"application_id": application["id"]}, headers=admin_headers
    )
    assert response.status_code == 400

@pytest.mark.asyncio
async def test_rejection_needs_reason(async_client: AsyncClient, admin_headers, plans):
    application = await _apply(async_client, admin_headers, plans[0])
    url = f"/api/v1/membership-applications/{application['id']}/status"
    response = await async_client.patch(url, json={"status": "rejected"}, headers=admin_headers)
    assert response.status_code == 422

    response = await async_client.patch(
        url, json={"status": "rejected", "rejected_reason": "Outside catchment"}, headers=admin_headers
    )
    assert response.status_code == 200
    assert response.json()["rejected_reason"] == "Outside catchment"

@pytest.mark.asyncio
async def test_receptionist_cannot_approve(async_client: AsyncClient, make_user, headers_for, practice, plans):
    headers = headers_for(make_user("receptionist", practice.id))
    application = await _apply(async_client, headers, plans[0])
    response = await async_client.patch(
        f"/api/v1/membership-applications/{application['id']}/status", json={"status": "approved"}, headers=headers
    )
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_cancel_membership(async_client: AsyncClient, admin_headers, plans):
    application = await _apply(async_client, admin_headers, plans[0])
    approved = (await async_client.patch(
        f"/api/v1/membership-applications/{application['id']}/status", json={"status": "approved"}, headers=admin_headers
    )).json()
    url = f"/api/v1/memberships/{approved['membership_id']}/status"
    response = await async_client.patch(url, json={"status": "cancelled"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["end_date"] is not None
    assert response.json()["next_billing_date"] is None

    response = await async_client.patch(url, json={"status": "active"}, headers=admin_headers)
    assert response.status_code == 400

@pytest.mark.asyncio
async def test_overview_and_trends(async_client: AsyncClient, admin_headers, plans):
    first = await _apply(async_client, admin_headers, plans[0])
    await _apply(async_client, admin_headers, plans[0], applicant_email="second@patients.co.uk")
    approved = (await async_client.patch(
        f"/api/v1/membership-applications/{first['id']}/status", json={"status": "approved"}, headers=admin_headers
    )).json()
    response = await async_client.post(
        f"/api/v1/memberships/{approved['membership_id']}/payments", json={"amount_paid": 12.5}, headers=admin_headers
    )
    assert response.status_code == 201

    overview = (await async_client.get("/api/v1/memberships/analytics/overview", headers=admin_headers)).json()
    assert overview == {
        "total_applications": 2, "active_memberships": 1, "monthly_revenue": 12.5, "conversion_rate": 50.0,
    }

    trends = (await async_client.get("/api/v1/memberships/analytics/trends", headers=admin_headers)).json()
    assert sum(point["count"] for point in trends) == 1
