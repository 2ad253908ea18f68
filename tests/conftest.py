# tests/conftest.py
import os
import tempfile

# Settings are cached on first import, so the environment is fixed up front
_db_dir = tempfile.mkdtemp(prefix="dentalcrm-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["PUBLIC_RATE_LIMIT"] = "1000/minute"
os.environ["LOG_FORMAT"] = "console"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SENDGRID_API_KEY"] = ""
os.environ.pop("SEED_ADMIN_EMAIL", None)
os.environ.pop("SEED_ADMIN_PASSWORD", None)

import pytest
from httpx import ASGITransport, AsyncClient

from dentalcrm import crud, models, security
from dentalcrm.database import SessionLocal, create_tables, drop_tables
from dentalcrm.main import app

TEST_PASSWORD = "Sup3rSecret!"
_PASSWORD_HASH = security.get_password_hash(TEST_PASSWORD)


@pytest.fixture(autouse=True)
def database():
    create_tables()
    yield
    drop_tables()

@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
async def async_client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

@pytest.fixture
def practice(db):
    """An active client organisation with full finance access."""
    client = models.ClientOrganization(
        name="Smile Clinic",
        contact_email="owner@smileclinic.co.uk",
        status=models.ClientStatus.active,
        total_users=5,
        installation_fee=1000,
        monthly_cost=150,
    )
    db.add(client)
    db.commit()
    db.refresh(client)
    crud.set_module_permissions(db, client.id, {"finance": models.PermissionLevel.write})
    return client

@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "receptionist", client_organization_id: int = None, is_active: bool = True, email: str = None):
        counter["n"] += 1
        user = crud.create_user(
            db,
            email=email or f"{role}{counter['n']}@smileclinic.co.uk",
            full_name=f"{role.replace('_', ' ').title()} {counter['n']}",
            password_hash=_PASSWORD_HASH,
            role=models.UserRole(role),
            client_organization_id=client_organization_id,
        )
        if not is_active:
            user.is_active = False
            db.commit()
        return user
    return _make

def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {security.token_for_user(user)}"}

@pytest.fixture
def headers_for():
    return auth_headers

@pytest.fixture
def admin(make_user, practice):
    return make_user("practice_admin", practice.id)

@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)

@pytest.fixture
def dentist(make_user, practice):
    return make_user("dentist", practice.id)

@pytest.fixture
def patient(db):
    row = models.Patient(
        patient_number="PAT-TEST-0001",
        first_name="Alice",
        last_name="Smith",
        email="alice@patients.co.uk",
        phone="07700900001",
        status=models.PatientStatus.active,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
