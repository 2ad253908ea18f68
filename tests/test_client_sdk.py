# tests/test_client_sdk.py
import asyncio

import httpx
import pytest

from dentalcrm.client.fetch import DataFetch
from dentalcrm.client.gateway import SecureApiClient, TokenStore
from dentalcrm.client.services import (
    AppointmentService,
    LeadService,
    MembershipService,
    PatientService,
    PaymentService,
    PricingService,
    ServiceResult,
    UiService,
    error_message,
)
from dentalcrm.client.session import SIGNED_OUT, AuthSession
from dentalcrm.client.ui_config import UiConfig, env_flag
from dentalcrm.main import app
from dentalcrm import crud, security

TEST_PASSWORD = "Sup3rSecret!"


@pytest.fixture
async def api():
    client = SecureApiClient(base_url="http://test/api/v1", transport=httpx.ASGITransport(app=app))
    yield client
    await client.aclose()

def _login(api, user):
    api.token_store.set(security.token_for_user(user))


@pytest.mark.asyncio
async def test_bearer_token_attached(api, admin):
    _login(api, admin)
    me = await api.get("/auth/me")
    assert me["email"] == admin.email

@pytest.mark.asyncio
async def test_unauthorized_clears_token_and_redirects(admin):
    redirects = []
    api = SecureApiClient(
        base_url="http://test/api/v1",
        token_store=TokenStore("expired-token"),
        on_unauthorized=redirects.append,
        transport=httpx.ASGITransport(app=app),
    )
    async with api:
        with pytest.raises(httpx.HTTPStatusError):
            await api.get("/patients")
    assert api.token_store.get() is None
    assert redirects == ["/login"]

@pytest.mark.asyncio
async def test_blank_and_all_filters_dropped():
    seen = {}

    def handler(request: httpx.Request):
        seen.update(request.url.params)
        seen["role_header"] = request.headers.get("X-Required-Role")
        return httpx.Response(200, json=[])

    async with SecureApiClient(base_url="http://test/api/v1", transport=httpx.MockTransport(handler)) as api:
        await api.get("/leads", params={"status": "all", "q": "", "source": None, "page": 2}, required_role="manager")
    assert seen == {"page": "2", "role_header": "manager"}

@pytest.mark.asyncio
async def test_service_envelope(api, admin, patient):
    _login(api, admin)
    patients = PatientService(api)
    result = await patients.get_all({"q": "alice", "status": "all"})
    assert result.ok
    assert result.data["data"][0]["patient_number"] == "PAT-TEST-0001"

    missing = await patients.get_by_id(9999)
    assert not missing.ok
    assert missing.data is None
    assert missing.error == "Patient not found"

def _mock_api(handler):
    return SecureApiClient(base_url="http://test/api/v1", transport=httpx.MockTransport(handler))

@pytest.mark.asyncio
async def test_non_json_body_becomes_error():
    async with _mock_api(lambda request: httpx.Response(200, text="<html>proxy page</html>")) as api:
        result = await PatientService(api).get_all()
    assert not result.ok
    assert result.data is None
    assert result.error.startswith("Invalid response from server")

@pytest.mark.asyncio
@pytest.mark.parametrize("body", [["bad gateway"], "bad gateway", {"detail": {"code": 7}}])
async def test_error_body_of_any_shape(body):
    async with _mock_api(lambda request: httpx.Response(502, json=body)) as api:
        result = await PatientService(api).get_by_id(1)
    assert not result.ok
    assert result.error

@pytest.mark.asyncio
async def test_error_without_detail_uses_status():
    async with _mock_api(lambda request: httpx.Response(502, json=["bad gateway"])) as api:
        result = await LeadService(api).get_pipeline()
    assert result.error == "Request failed with status 502"

@pytest.mark.asyncio
async def test_closed_client_returns_error():
    api = _mock_api(lambda request: httpx.Response(200, json=[]))
    await api.aclose()
    result = await PaymentService(api).get_all()
    assert not result.ok
    assert result.error

@pytest.mark.asyncio
async def test_validation_errors_become_readable(api, admin):
    _login(api, admin)
    result = await PatientService(api).create({"first_name": ""})
    assert result.error
    assert "last_name" in result.error.lower() or "field required" in result.error.lower()

@pytest.mark.asyncio
async def test_role_denied_is_an_error_not_an_exception(api, dentist):
    _login(api, dentist)
    result = await LeadService(api).get_pipeline()
    assert not result.ok
    assert result.error.startswith("Access denied")

@pytest.mark.asyncio
async def test_delete_returns_true(api, admin, patient):
    _login(api, admin)
    result = await PatientService(api).delete(patient.id)
    assert result.data is True

@pytest.mark.asyncio
async def test_ui_service(api, admin):
    _login(api, admin)
    settings = await UiService(api).get_settings()
    config = UiConfig.from_env({}).merge(settings.data)
    assert config.public_footer_variant == "compact"
    assert config.show_public_footer

def test_local_pricing():
    result = PricingService().quote(5, 12)
    assert result.ok
    assert result.data.total_cost == 2800

def test_error_message_for_transport_error():
    assert error_message(httpx.ConnectError("connection refused")) == "connection refused"


@pytest.mark.asyncio
async def test_sign_in_loads_profile(api, admin):
    session = AuthSession(api)
    states = []
    session.subscribe(lambda s: states.append(s.state))
    await session.start()
    assert session.state == "unauthenticated"

    result = await session.sign_in(admin.email, TEST_PASSWORD)
    assert result.ok
    # state flips before the profile request finishes
    assert session.is_authenticated
    await session.wait_for_profile()
    assert session.profile["email"] == admin.email
    assert session.role == "practice_admin"
    assert states == ["unauthenticated", "authenticated", "authenticated"]
    await session.aclose()

@pytest.mark.asyncio
async def test_bad_credentials(api, admin):
    session = AuthSession(api)
    result = await session.sign_in(admin.email, "nope")
    assert result.error == "Incorrect email or password"
    assert not session.is_authenticated

@pytest.mark.asyncio
async def test_sign_in_with_non_json_response():
    async with _mock_api(lambda request: httpx.Response(200, text="ok")) as api:
        session = AuthSession(api)
        result = await session.sign_in("a@smileclinic.co.uk", TEST_PASSWORD)
        assert result.error.startswith("Invalid response from server")
        assert not session.is_authenticated
        assert api.token_store.get() is None

        result = await session.sign_up("a@smileclinic.co.uk", TEST_PASSWORD)
        assert not result.ok
        assert not session.is_authenticated

@pytest.mark.asyncio
async def test_sign_in_without_token_in_response():
    async with _mock_api(lambda request: httpx.Response(200, json=["unexpected"])) as api:
        session = AuthSession(api)
        result = await session.sign_in("a@smileclinic.co.uk", TEST_PASSWORD)
    assert not result.ok
    assert not session.is_authenticated

@pytest.mark.asyncio
async def test_previous_profile_never_reaches_next_user():
    release = asyncio.Event()
    profiles = {
        "token-a": {"email": "a@smileclinic.co.uk", "role": "super_admin"},
        "token-b": {"email": "b@smileclinic.co.uk", "role": "receptionist"},
    }
    tokens = ["token-a", "token-b"]

    async def handler(request: httpx.Request):
        if request.url.path.endswith("/auth/token"):
            token = tokens.pop(0)
            return httpx.Response(200, json={"access_token": token, "token_type": "bearer", "user": profiles[token]})
        if request.url.path.endswith("/auth/logout"):
            return httpx.Response(200, json={"message": "Logged out"})
        token = request.headers["Authorization"].split()[1]
        if token == "token-a":
            await release.wait()
        return httpx.Response(200, json=profiles[token])

    async with _mock_api(handler) as api:
        session = AuthSession(api)
        await session.sign_in("a@smileclinic.co.uk", TEST_PASSWORD)
        await asyncio.sleep(0)
        await session.sign_out()
        await session.sign_in("b@smileclinic.co.uk", TEST_PASSWORD)
        await session.wait_for_profile()
        release.set()
        await asyncio.sleep(0)

        assert session.profile == profiles["token-b"]
        assert session.role == "receptionist"
        await session.aclose()

@pytest.mark.asyncio
async def test_profile_from_older_sign_in_is_dropped(api, admin):
    session = AuthSession(api)
    await session.sign_in(admin.email, TEST_PASSWORD)
    await session.wait_for_profile()
    stale = session._load_profile(session._generation - 1)
    session.profile = {"email": admin.email, "role": "practice_admin"}
    await stale
    assert session.profile == {"email": admin.email, "role": "practice_admin"}
    await session.aclose()

@pytest.mark.asyncio
async def test_start_with_stored_token(api, admin):
    _login(api, admin)
    session = AuthSession(api)
    await session.start()
    assert session.is_authenticated
    assert session.role == "practice_admin"

@pytest.mark.asyncio
async def test_sign_out_clears_everything(api, admin):
    session = AuthSession(api)
    await session.sign_in(admin.email, TEST_PASSWORD)
    await session.wait_for_profile()
    result = await session.sign_out()
    assert result.ok
    assert api.token_store.get() is None
    assert session.profile is None
    assert session.state == "unauthenticated"

@pytest.mark.asyncio
async def test_sign_out_event_without_session(api):
    session = AuthSession(api)
    session.handle_auth_change(SIGNED_OUT, None)
    assert not session.is_authenticated

@pytest.mark.asyncio
async def test_unsubscribe_and_faulty_listener(api):
    session = AuthSession(api)
    calls = []

    def broken(_):
        raise RuntimeError("boom")

    session.subscribe(broken)
    unsubscribe = session.subscribe(lambda s: calls.append(s.state))
    await session.start()
    unsubscribe()
    session.handle_auth_change(SIGNED_OUT, None)
    assert calls == ["unauthenticated"]


@pytest.mark.asyncio
async def test_fetch_success_and_error():
    async def ok():
        return ServiceResult(data=[1, 2])

    fetch = DataFetch(ok, initial_data=[])
    assert fetch.data == []
    await fetch.refetch()
    assert fetch.data == [1, 2]
    assert fetch.error is None and not fetch.loading

    errors = []

    async def failing():
        raise RuntimeError("backend down")

    fetch = DataFetch(failing, on_error=errors.append, initial_data=[])
    await fetch.refetch()
    assert fetch.error == "backend down"
    assert fetch.data == []
    assert errors == ["backend down"]

@pytest.mark.asyncio
async def test_fetch_skipped_when_signed_out():
    called = []

    async def load():
        called.append(True)
        return 1

    signed_in = {"value": False}
    fetch = DataFetch(load, require_auth=True, is_authenticated=lambda: signed_in["value"], initial_data=0)
    assert await fetch.refetch() is None
    assert called == []
    signed_in["value"] = True
    await fetch.refetch()
    assert fetch.data == 1

@pytest.mark.asyncio
async def test_latest_refetch_wins():
    never = asyncio.Event()
    current = {"value": "stale"}

    async def load():
        value = current["value"]
        if value == "stale":
            await never.wait()
        return value

    fetch = DataFetch(load)
    slow = asyncio.create_task(fetch.refetch())
    await asyncio.sleep(0)
    current["value"] = "fresh"
    await fetch.refetch()
    assert await slow is None
    assert fetch.data == "fresh"
    assert not fetch.loading

@pytest.mark.asyncio
async def test_close_cancels_in_flight():
    async def hang():
        await asyncio.sleep(60)

    fetch = DataFetch(hang)
    pending = asyncio.create_task(fetch.refetch())
    await asyncio.sleep(0)
    await fetch.close()
    assert await pending is None
    assert await fetch.refetch() is None
    assert fetch.closed and not fetch.loading


@pytest.mark.parametrize("raw, expected", [
    ("true", True), ("1", True), ("ON", True), ("false", False), ("0", False), ("off", False), ("maybe", True),
])
def test_env_flag(raw, expected):
    assert env_flag("FLAG", True, {"FLAG": raw}) is expected

def test_env_flag_default():
    assert env_flag("FLAG", False, {}) is False

def test_ui_config_merge():
    config = UiConfig.from_env({"SHOW_GDC_PUBLIC_FOOTER": "false"})
    merged = config.merge({"publicFooterVariant": "full", "internalFooterEnabled": False, "publicFooterEnabled": None})
    assert merged.public_footer_variant == "full"
    assert merged.public_footer_enabled is True
    assert not merged.show_public_footer
    assert not merged.show_internal_footer
    assert config.merge(None) is config


@pytest.mark.asyncio
async def test_booking_flow(api, admin, patient, dentist):
    _login(api, admin)
    appointments = AppointmentService(api)
    booked = await appointments.create({
        "patient_id": patient.id, "dentist_id": dentist.id, "appointment_date": "2030-05-06",
        "start_time": "10:00:00", "end_time": "10:30:00",
    })
    assert booked.ok
    appointment_id = booked.data["id"]

    clash = await appointments.check_conflicts(dentist.id, "2030-05-06", "10:15:00", "10:45:00")
    assert clash.data["has_conflict"]

    moved = await appointments.reschedule(appointment_id, "2030-05-07", "11:00:00")
    assert moved.data["end_time"] == "11:30:00"

    denied = await appointments.set_status(appointment_id, "completed")
    assert denied.error.startswith("Cannot change appointment status")

    deposit = await appointments.collect_deposit(appointment_id, 25)
    assert deposit.ok
    summary = await appointments.get_summary(appointment_id)
    assert summary.data["deposit_paid"] is True

    payments = await PaymentService(api).get_all({"status": "paid"})
    assert [p["amount"] for p in payments.data] == [25]

    calendar = await appointments.get_calendar("day", "2030-05-07")
    assert len(calendar.data["appointments"]) == 1
    slots = await appointments.get_availability(dentist.id, "2030-05-07", 60)
    assert slots.ok

@pytest.mark.asyncio
async def test_membership_flow(api, admin, db):
    crud.seed_membership_plans(db)
    _login(api, admin)
    memberships = MembershipService(api)
    plans = await memberships.get_plans()
    application = await memberships.create_application({
        "applicant_name": "Sam Lee", "applicant_email": "sam@patients.co.uk", "plan_id": plans.data[0]["id"],
    })
    assert application.ok

    rejected = await memberships.set_application_status(application.data["id"], "rejected")
    assert not rejected.ok

    approved = await memberships.set_application_status(application.data["id"], "approved")
    membership_id = approved.data["membership_id"]
    again = await memberships.create_from_application(application.data["id"])
    assert again.data["id"] == membership_id

    paused = await memberships.set_status(membership_id, "paused")
    assert paused.data["status"] == "paused"
    overview = await memberships.get_overview()
    assert overview.data["active_memberships"] == 0
    assert (await memberships.get_applications({"status": "approved"})).data[0]["id"] == application.data["id"]
    assert (await memberships.get_trends(7)).ok
