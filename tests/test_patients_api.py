# tests/test_patients_api.py
import pytest
from httpx import AsyncClient

from dentalcrm import models


@pytest.mark.asyncio
async def test_create_patient(async_client: AsyncClient, admin_headers):
    response = await async_client.post(
        "/api/v1/patients",
        json={"first_name": "John", "last_name": "Doe", "phone": "+447700900123", "email": "john@example.co.uk"},
        headers=admin_headers,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["full_name"] == "John Doe"
    assert data["patient_number"].startswith("PAT-")
    assert data["outstanding_balance"] == 0

@pytest.mark.asyncio
async def test_patient_list_requires_auth(async_client: AsyncClient):
    response = await async_client.get("/api/v1/patients")
    assert response.status_code == 401

@pytest.mark.asyncio
async def test_paging_headers_and_search(async_client: AsyncClient, admin_headers):
    for i in range(5):
        await async_client.post(
            "/api/v1/patients",
            json={"first_name": f"Pat{i}", "last_name": "Jones" if i % 2 else "Brown"},
            headers=admin_headers,
        )

    response = await async_client.get("/api/v1/patients", params={"page": 2, "page_size": 2}, headers=admin_headers)
    assert response.status_code == 200
    assert response.headers["X-Total-Count"] == "5"
    assert response.headers["X-Page"] == "2"
    assert response.headers["X-Page-Size"] == "2"
    assert response.headers["X-Last-Page"] == "3"
    body = response.json()
    assert body["total"] == 5 and len(body["data"]) == 2

    response = await async_client.get("/api/v1/patients", params={"q": "jones"}, headers=admin_headers)
    assert {p["last_name"] for p in response.json()["data"]} == {"Jones"}

@pytest.mark.asyncio
async def test_sort_by_last_name(async_client: AsyncClient, admin_headers):
    for last in ("Young", "Adams", "Moore"):
        await async_client.post("/api/v1/patients", json={"first_name": "A", "last_name": last}, headers=admin_headers)
    response = await async_client.get(
        "/api/v1/patients", params={"sort_field": "last_name", "sort_dir": "asc"}, headers=admin_headers
    )
    assert [p["last_name"] for p in response.json()["data"]] == ["Adams", "Moore", "Young"]

@pytest.mark.asyncio
async def test_page_size_capped(async_client: AsyncClient, admin_headers):
    response = await async_client.get("/api/v1/patients", params={"page_size": 500}, headers=admin_headers)
    assert response.status_code == 422

@pytest.mark.asyncio
async def test_outstanding_balance_from_pending_payments(async_client: AsyncClient, admin_headers, patient, db):
    db.add(models.Payment(patient_id=patient.id, amount=120, payment_method=models.PaymentMethod.card,
                          status=models.PaymentStatus.pending))
    db.add(models.Payment(patient_id=patient.id, amount=80, payment_method=models.PaymentMethod.cash,
                          status=models.PaymentStatus.paid))
    db.commit()
    response = await async_client.get(f"/api/v1/patients/{patient.id}", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["outstanding_balance"] == 120

@pytest.mark.asyncio
async def test_hygienist_cannot_create(async_client: AsyncClient, make_user, headers_for, practice):
    hygienist = make_user("hygienist", practice.id)
    response = await async_client.post(
        "/api/v1/patients", json={"first_name": "No", "last_name": "Access"}, headers=headers_for(hygienist)
    )
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_receptionist_cannot_delete(async_client: AsyncClient, make_user, headers_for, practice, patient):
    receptionist = make_user("receptionist", practice.id)
    response = await async_client.delete(f"/api/v1/patients/{patient.id}", headers=headers_for(receptionist))
    assert response.status_code == 403

@pytest.mark.asyncio
async def test_soft_delete_and_audit(async_client: AsyncClient, admin_headers, patient, db):
    response = await async_client.delete(f"/api/v1/patients/{patient.id}", headers=admin_headers)
    assert response.status_code == 204

    response = await async_client.get(f"/api/v1/patients/{patient.id}", headers=admin_headers)
    assert response.status_code == 404

    row = db.query(models.AuditLog).filter(models.AuditLog.action == "patient_delete").one()
    assert row.risk_level == models.RiskLevel.high
    assert row.resource_type == "patient_record"
    assert row.resource_id == str(patient.id)

@pytest.mark.asyncio
async def test_update_missing_patient(async_client: AsyncClient, admin_headers):
    response = await async_client.put("/api/v1/patients/9999", json={"notes": "x"}, headers=admin_headers)
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_patient_stats(async_client: AsyncClient, admin_headers, patient):
    await async_client.post(
        "/api/v1/patients", json={"first_name": "Pro", "last_name": "Spect", "status": "prospective"}, headers=admin_headers
    )
    response = await async_client.get("/api/v1/patients/stats", headers=admin_headers)
    assert response.json() == {
        "total_patients": 2, "active_patients": 1, "inactive_patients": 0, "prospective_patients": 1,
    }
