# tests/test_appointments_api.py
import pytest
from httpx import AsyncClient

from dentalcrm import models

DAY = "2030-05-06"  # a Monday


def booking(patient, dentist, start="09:00:00", end="09:30:00", **extra):
    return {
        "patient_id": patient.id,
        "dentist_id": dentist.id,
        "appointment_date": DAY,
        "start_time": start,
        "end_time": end,
        "treatment_type": "Check-up",
        **extra,
    }

async def _create(client, headers, payload):
    response = await client.post("/api/v1/appointments", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_book_appointment(async_client: AsyncClient, admin_headers, patient, dentist):
    data = await _create(async_client, admin_headers, booking(patient, dentist))
    assert data["status"] == "pending"
    assert data["patient"]["id"] == patient.id
    assert data["dentist"]["id"] == dentist.id

@pytest.mark.asyncio
async def test_double_booking_rejected(async_client: AsyncClient, admin_headers, patient, dentist):
    first = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.post(
        "/api/v1/appointments", json=booking(patient, dentist, "09:15:00", "09:45:00"), headers=admin_headers
    )
    assert response.status_code == 409
    assert response.json()["conflicts"] == [first["id"]]

@pytest.mark.asyncio
async def test_back_to_back_allowed(async_client: AsyncClient, admin_headers, patient, dentist):
    await _create(async_client, admin_headers, booking(patient, dentist))
    await _create(async_client, admin_headers, booking(patient, dentist, "09:30:00", "10:00:00"))

@pytest.mark.asyncio
async def test_cancelled_slot_can_be_rebooked(async_client: AsyncClient, admin_headers, patient, dentist):
    first = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(
        f"/api/v1/appointments/{first['id']}/status",
        json={"status": "cancelled", "cancellation_reason": "Patient unwell"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json()["cancellation_reason"] == "Patient unwell"
    assert response.json()["cancelled_at"] is not None
    await _create(async_client, admin_headers, booking(patient, dentist))

@pytest.mark.asyncio
async def test_end_before_start_rejected(async_client: AsyncClient, admin_headers, patient, dentist):
    response = await async_client.post(
        "/api/v1/appointments", json=booking(patient, dentist, "10:00:00", "09:00:00"), headers=admin_headers
    )
    assert response.status_code == 422

@pytest.mark.asyncio
async def test_invalid_status_transition(async_client: AsyncClient, admin_headers, patient, dentist):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(
        f"/api/v1/appointments/{appt['id']}/status", json={"status": "completed"}, headers=admin_headers
    )
    assert response.status_code == 400
    assert response.json()["current"] == "pending"
    assert response.json()["requested"] == "completed"

@pytest.mark.asyncio
async def test_confirming_sends_confirmation_email(async_client: AsyncClient, admin_headers, patient, dentist, db):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(
        f"/api/v1/appointments/{appt['id']}/status", json={"status": "confirmed"}, headers=admin_headers
    )
    assert response.status_code == 200
    log = db.query(models.EmailLog).filter(models.EmailLog.template == "appointment_confirmation").one()
    assert log.to_email == patient.email
    assert log.status == models.EmailStatus.simulated

@pytest.mark.asyncio
async def test_reschedule_keeps_duration(async_client: AsyncClient, admin_headers, patient, dentist):
    appt = await _create(async_client, admin_headers, booking(patient, dentist, "09:00:00", "09:45:00"))
    response = await async_client.post(
        f"/api/v1/appointments/{appt['id']}/reschedule",
        json={"appointment_date": "2030-05-07", "start_time": "14:00:00"},
        headers=admin_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["appointment_date"] == "2030-05-07"
    assert data["start_time"] == "14:00:00"
    assert data["end_time"] == "14:45:00"

@pytest.mark.asyncio
async def test_reschedule_into_conflict(async_client: AsyncClient, admin_headers, patient, dentist):
    blocker = await _create(async_client, admin_headers, booking(patient, dentist, "11:00:00", "12:00:00"))
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.post(
        f"/api/v1/appointments/{appt['id']}/reschedule",
        json={"appointment_date": DAY, "start_time": "11:15:00"},
        headers=admin_headers,
    )
    assert response.status_code == 409
    assert response.json()["conflicts"] == [blocker["id"]]

@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["start_time", "end_time", "appointment_date", "dentist_id", "patient_id"])
async def test_update_cannot_null_required_fields(async_client: AsyncClient, admin_headers, patient, dentist, field):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(f"/api/v1/appointments/{appt['id']}", json={field: None}, headers=admin_headers)
    assert response.status_code == 422

@pytest.mark.asyncio
async def test_update_to_unknown_patient(async_client: AsyncClient, admin_headers, patient, dentist):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(
        f"/api/v1/appointments/{appt['id']}", json={"patient_id": 9999, "notes": "moved"}, headers=admin_headers
    )
    assert response.status_code == 404

@pytest.mark.asyncio
async def test_update_into_overlap(async_client: AsyncClient, admin_headers, patient, dentist):
    blocker = await _create(async_client, admin_headers, booking(patient, dentist, "11:00:00", "12:00:00"))
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.put(
        f"/api/v1/appointments/{appt['id']}", json={"start_time": "11:30:00", "end_time": "12:30:00"},
        headers=admin_headers,
    )
    assert response.status_code == 409
    assert response.json()["conflicts"] == [blocker["id"]]

@pytest.mark.asyncio
async def test_conflict_check_and_availability(async_client: AsyncClient, admin_headers, patient, dentist):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.get("/api/v1/appointments/conflicts", params={
        "dentist_id": dentist.id, "appointment_date": DAY, "start_time": "09:00:00", "end_time": "10:00:00",
    }, headers=admin_headers)
    body = response.json()
    assert body["has_conflict"] is True
    assert [c["id"] for c in body["conflicts"]] == [appt["id"]]

    response = await async_client.get("/api/v1/appointments/availability", params={
        "dentist_id": dentist.id, "date": DAY, "duration": 30,
    }, headers=admin_headers)
    starts = [s["start_time"] for s in response.json()["slots"]]
    assert "08:30:00" in starts
    assert "09:00:00" not in starts
    assert len(starts) == 23

@pytest.mark.asyncio
async def test_calendar_week(async_client: AsyncClient, admin_headers, patient, dentist):
    await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.get(
        "/api/v1/appointments/calendar", params={"view": "week", "date": "2030-05-09"}, headers=admin_headers
    )
    body = response.json()
    assert body["start_date"] == "2030-05-06"
    assert body["end_date"] == "2030-05-12"
    assert len(body["days"]) == 7
    assert body["hours"] == list(range(8, 20))
    assert len(body["appointments"]) == 1

@pytest.mark.asyncio
async def test_deposit_and_summary(async_client: AsyncClient, admin_headers, patient, dentist):
    appt = await _create(async_client, admin_headers, booking(patient, dentist, deposit_required=True, deposit_amount=50))
    response = await async_client.post(
        f"/api/v1/appointments/{appt['id']}/deposit", json={"amount": 50, "payment_method": "card"}, headers=admin_headers
    )
    assert response.status_code == 201
    assert response.json()["status"] == "paid"

    response = await async_client.post(
        f"/api/v1/appointments/{appt['id']}/deposit", json={"amount": 50}, headers=admin_headers
    )
    assert response.status_code == 409

    summary = (await async_client.get(f"/api/v1/appointments/{appt['id']}/summary", headers=admin_headers)).json()
    assert summary["deposit_paid"] is True
    assert summary["total_paid"] == 50
    assert summary["duration_minutes"] == 30

@pytest.mark.asyncio
async def test_only_admins_delete(async_client: AsyncClient, admin_headers, patient, dentist, headers_for):
    appt = await _create(async_client, admin_headers, booking(patient, dentist))
    response = await async_client.delete(f"/api/v1/appointments/{appt['id']}", headers=headers_for(dentist))
    assert response.status_code == 403
    response = await async_client.delete(f"/api/v1/appointments/{appt['id']}", headers=admin_headers)
    assert response.status_code == 204
