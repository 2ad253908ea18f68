# dentalcrm/crud.py
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import or_, func, asc, desc
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timedelta, date, timezone
from decimal import Decimal
from typing import Optional, List, Dict, Any, Tuple
import secrets
import time as _time
import logging

from . import models, schemas
from .errors import CRUDError, NotFoundError, ConflictError, InvalidTransitionError
from .services import scheduling, membership_lifecycle

logger = logging.getLogger(__name__)

__all__ = ["CRUDError", "NotFoundError", "ConflictError", "InvalidTransitionError"]


def _reference(prefix: str) -> str:
    return f"{prefix}-{datetime.now(timezone.utc):%Y%m%d}-{secrets.token_hex(3).upper()}"

def generate_lead_number() -> str:
    """AES-<epoch ms>-<random>, the format used by the landing page waitlist."""
    return f"AES-{int(_time.time() * 1000)}-{secrets.token_hex(4).upper()}"

def _money(value) -> Decimal:
    return Decimal(str(value)) if value is not None else None

def _apply_updates(obj, updates: Dict[str, Any], money_fields=()):
    for key, value in updates.items():
        setattr(obj, key, _money(value) if key in money_fields else value)


# ==================== USERS ====================

def get_user(db: Session, user_id: int) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.id == user_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(func.lower(models.User.email) == email.lower()).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user by email '{email}': {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_users(db: Session, skip: int = 0, limit: int = 100, role: str = None,
              is_active: bool = None, client_organization_id: int = None) -> List[models.User]:
    try:
        query = db.query(models.User)
        if role:
            query = query.filter(models.User.role == models.UserRole(role))
        if is_active is not None:
            query = query.filter(models.User.is_active == is_active)
        if client_organization_id is not None:
            query = query.filter(models.User.client_organization_id == client_organization_id)
        return query.order_by(models.User.full_name).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching users: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_user(db: Session, email: str, full_name: str, password_hash: str,
                role: models.UserRole = models.UserRole.receptionist, phone: str = None,
                client_organization_id: int = None) -> models.User:
    if get_user_by_email(db, email):
        raise ConflictError(f"A user with email {email} already exists")
    try:
        user = models.User(
            email=email.lower(),
            full_name=full_name,
            password_hash=password_hash,
            role=role,
            phone=phone,
            client_organization_id=client_organization_id,
            is_active=True,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        logger.info(f"Created user {user.id} with role {user.role.value}")
        return user
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"A user with email {email} already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating user: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def update_user(db: Session, user_id: int, user_update: schemas.UserUpdate) -> models.User:
    user = get_user(db, user_id)
    if not user:
        raise NotFoundError(f"User {user_id} not found")
    try:
        _apply_updates(user, user_update.model_dump(exclude_unset=True))
        db.commit()
        db.refresh(user)
        return user
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating user {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def record_login(db: Session, user: models.User) -> None:
    try:
        user.last_login = datetime.now(timezone.utc)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error recording login for user {user.id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== CLIENT ORGANISATIONS ====================

def get_client(db: Session, client_id: int) -> Optional[models.ClientOrganization]:
    return db.query(models.ClientOrganization).filter(models.ClientOrganization.id == client_id).first()

def get_clients(db: Session, status: str = None) -> List[models.ClientOrganization]:
    try:
        query = db.query(models.ClientOrganization)
        if status:
            query = query.filter(models.ClientOrganization.status == models.ClientStatus(status))
        return query.order_by(desc(models.ClientOrganization.created_at)).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching clients: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_client(db: Session, signup: schemas.TenantSignupRequest, installation_fee, monthly_cost) -> models.ClientOrganization:
    try:
        client = models.ClientOrganization(
            name=signup.organization_name,
            contact_name=signup.contact_name,
            contact_email=signup.contact_email,
            phone=signup.phone,
            status=models.ClientStatus.pending_approval,
            subscription_tier=signup.subscription_tier,
            total_users=signup.user_count,
            installation_fee=_money(installation_fee),
            monthly_cost=_money(monthly_cost),
        )
        db.add(client)
        db.commit()
        db.refresh(client)
        logger.info(f"Tenant signup {client.id} ({client.name}) awaiting approval")
        return client
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating client organisation: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def update_client_status(db: Session, client_id: int, status: models.ClientStatus) -> models.ClientOrganization:
    client = get_client(db, client_id)
    if not client:
        raise NotFoundError(f"Client {client_id} not found")
    try:
        client.status = status
        db.commit()
        db.refresh(client)
        return client
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_module_permission(db: Session, client_id: int, module_name: str) -> Optional[models.ClientModulePermission]:
    return db.query(models.ClientModulePermission).filter(
        models.ClientModulePermission.client_organization_id == client_id,
        models.ClientModulePermission.module_name == module_name,
    ).first()

def set_module_permissions(db: Session, client_id: int, permissions: Dict[str, models.PermissionLevel]) -> List[models.ClientModulePermission]:
    if not get_client(db, client_id):
        raise NotFoundError(f"Client {client_id} not found")
    try:
        rows = []
        for module_name, level in permissions.items():
            row = get_module_permission(db, client_id, module_name)
            if row is None:
                row = models.ClientModulePermission(client_organization_id=client_id, module_name=module_name)
                db.add(row)
            row.permission_level = models.PermissionLevel(level)
            row.is_enabled = models.PermissionLevel(level) != models.PermissionLevel.none
            rows.append(row)
        db.commit()
        return rows
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")


# ==================== UI SETTINGS & BRANDING ====================

def get_ui_settings(db: Session, client_id: int) -> Optional[models.ClientUiSettings]:
    return db.query(models.ClientUiSettings).filter(models.ClientUiSettings.client_organization_id == client_id).first()

def upsert_ui_settings(db: Session, client_id: int, update: schemas.UiSettingsUpdate) -> models.ClientUiSettings:
    if not get_client(db, client_id):
        raise NotFoundError(f"Client {client_id} not found")
    try:
        row = get_ui_settings(db, client_id)
        if row is None:
            row = models.ClientUiSettings(client_organization_id=client_id)
            db.add(row)
        # Omitted fields reset to NULL ("use the default"), matching an upsert of the full row
        row.public_footer_enabled = update.public_footer_enabled
        row.public_footer_variant = update.public_footer_variant
        row.internal_footer_enabled = update.internal_footer_enabled
        db.commit()
        db.refresh(row)
        return row
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_branding(db: Session, client_id: int) -> Optional[models.ClientBranding]:
    return db.query(models.ClientBranding).filter(models.ClientBranding.client_organization_id == client_id).first()

def upsert_branding(db: Session, client_id: int, update: schemas.BrandingUpdate) -> models.ClientBranding:
    try:
        row = get_branding(db, client_id)
        if row is None:
            row = models.ClientBranding(client_organization_id=client_id)
            db.add(row)
        _apply_updates(row, update.model_dump(exclude_unset=True))
        db.commit()
        db.refresh(row)
        return row
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")


# ==================== PATIENTS ====================

PATIENT_SORT_FIELDS = {
    "created_at": models.Patient.created_at,
    "last_name": models.Patient.last_name,
    "first_name": models.Patient.first_name,
}

def _attach_balances(db: Session, patients: List[models.Patient]) -> List[models.Patient]:
    """Outstanding balance is the sum of pending payments; it is never stored."""
    if not patients:
        return patients
    ids = [p.id for p in patients]
    rows = db.query(models.Payment.patient_id, func.coalesce(func.sum(models.Payment.amount), 0)).filter(
        models.Payment.patient_id.in_(ids),
        models.Payment.status == models.PaymentStatus.pending,
    ).group_by(models.Payment.patient_id).all()
    balances = {patient_id: float(total) for patient_id, total in rows}
    for patient in patients:
        patient.outstanding_balance = balances.get(patient.id, 0.0)
    return patients

def get_patient(db: Session, patient_id: int) -> Optional[models.Patient]:
    try:
        patient = db.query(models.Patient).filter(
            models.Patient.id == patient_id,
            models.Patient.deleted_at.is_(None),
        ).first()
        if patient:
            _attach_balances(db, [patient])
        return patient
    except SQLAlchemyError as e:
        logger.error(f"Error fetching patient {patient_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_patients(db: Session, page: int = 1, page_size: int = 25, q: str = None, status: str = None,
                 treatment_type: str = None, insurance_provider: str = None,
                 sort_field: str = "created_at", sort_dir: str = "desc") -> Tuple[List[models.Patient], int]:
    try:
        query = db.query(models.Patient).filter(models.Patient.deleted_at.is_(None))
        if q:
            pattern = f"%{q.strip()}%"
            query = query.filter(or_(
                models.Patient.first_name.ilike(pattern),
                models.Patient.last_name.ilike(pattern),
                models.Patient.email.ilike(pattern),
                models.Patient.phone.ilike(pattern),
            ))
        if status and status != "all":
            query = query.filter(models.Patient.status == models.PatientStatus(status))
        if treatment_type and treatment_type != "all":
            query = query.filter(models.Patient.treatment_type == treatment_type)
        if insurance_provider and insurance_provider != "all":
            query = query.filter(models.Patient.insurance_provider == insurance_provider)

        total = query.count()
        column = PATIENT_SORT_FIELDS.get(sort_field, models.Patient.created_at)
        order = asc(column) if sort_dir == "asc" else desc(column)
        rows = query.order_by(order, models.Patient.id).offset((page - 1) * page_size).limit(page_size).all()
        return _attach_balances(db, rows), total
    except SQLAlchemyError as e:
        logger.error(f"Error listing patients: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_patient(db: Session, patient: schemas.PatientCreate, created_by_id: int = None) -> models.Patient:
    try:
        db_patient = models.Patient(
            **patient.model_dump(),
            patient_number=_reference("PAT"),
            created_by_id=created_by_id,
        )
        db.add(db_patient)
        db.commit()
        db.refresh(db_patient)
        return _attach_balances(db, [db_patient])[0]
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating patient: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def update_patient(db: Session, patient_id: int, patient_update: schemas.PatientUpdate) -> models.Patient:
    db_patient = get_patient(db, patient_id)
    if not db_patient:
        raise NotFoundError(f"Patient {patient_id} not found")
    try:
        _apply_updates(db_patient, patient_update.model_dump(exclude_unset=True))
        db.commit()
        db.refresh(db_patient)
        return _attach_balances(db, [db_patient])[0]
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating patient {patient_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def delete_patient(db: Session, patient_id: int) -> models.Patient:
    """Soft delete: the record disappears from listings but keeps its history."""
    db_patient = get_patient(db, patient_id)
    if not db_patient:
        raise NotFoundError(f"Patient {patient_id} not found")
    try:
        db_patient.deleted_at = datetime.now(timezone.utc)
        db_patient.status = models.PatientStatus.inactive
        db.commit()
        return db_patient
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting patient {patient_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_patient_stats(db: Session) -> Dict[str, int]:
    rows = db.query(models.Patient.status, func.count(models.Patient.id)).filter(
        models.Patient.deleted_at.is_(None)
    ).group_by(models.Patient.status).all()
    counts = {models.PatientStatus(s).value: n for s, n in rows}
    return {
        "total_patients": sum(counts.values()),
        "active_patients": counts.get("active", 0),
        "inactive_patients": counts.get("inactive", 0),
        "prospective_patients": counts.get("prospective", 0),
    }


# ==================== APPOINTMENTS ====================

def _appointment_query(db: Session):
    return db.query(models.Appointment).options(
        joinedload(models.Appointment.patient),
        joinedload(models.Appointment.dentist),
    )

def get_appointment(db: Session, appointment_id: int) -> Optional[models.Appointment]:
    try:
        return _appointment_query(db).filter(models.Appointment.id == appointment_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching appointment {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_appointments(db: Session, status: str = None, dentist_id: int = None, practice_location_id: int = None,
                     patient_id: int = None, date_from: date = None, date_to: date = None,
                     skip: int = 0, limit: int = 500) -> List[models.Appointment]:
    try:
        query = _appointment_query(db)
        if status:
            query = query.filter(models.Appointment.status == models.AppointmentStatus(status))
        if dentist_id:
            query = query.filter(models.Appointment.dentist_id == dentist_id)
        if practice_location_id:
            query = query.filter(models.Appointment.practice_location_id == practice_location_id)
        if patient_id:
            query = query.filter(models.Appointment.patient_id == patient_id)
        if date_from:
            query = query.filter(models.Appointment.appointment_date >= date_from)
        if date_to:
            query = query.filter(models.Appointment.appointment_date <= date_to)
        return query.order_by(models.Appointment.appointment_date, models.Appointment.start_time).offset(skip).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error listing appointments: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def _lock_dentist(db: Session, dentist_id: int) -> models.User:
    """Serialise bookings per dentist (row lock where the database supports it)."""
    dentist = db.query(models.User).filter(models.User.id == dentist_id).with_for_update().first()
    if not dentist:
        raise NotFoundError(f"Dentist {dentist_id} not found")
    return dentist

def _ensure_free(db: Session, dentist_id: int, appointment_date: date, start_time, end_time, exclude_id: int = None):
    conflicts = scheduling.find_conflicts(db, dentist_id, appointment_date, start_time, end_time, exclude_id=exclude_id)
    if conflicts:
        raise ConflictError(
            f"Dentist {dentist_id} already has {len(conflicts)} appointment(s) overlapping "
            f"{appointment_date} {start_time:%H:%M}-{end_time:%H:%M}",
            conflicts=[a.id for a in conflicts],
        )

def create_appointment(db: Session, appointment: schemas.AppointmentCreate, created_by_id: int = None) -> models.Appointment:
    if not get_patient(db, appointment.patient_id):
        raise NotFoundError(f"Patient {appointment.patient_id} not found")
    try:
        _lock_dentist(db, appointment.dentist_id)
        _ensure_free(db, appointment.dentist_id, appointment.appointment_date, appointment.start_time, appointment.end_time)
        data = appointment.model_dump()
        data["deposit_amount"] = _money(data.get("deposit_amount"))
        db_appointment = models.Appointment(**data, created_by_id=created_by_id)
        db.add(db_appointment)
        db.commit()
        db.refresh(db_appointment)
        logger.info(f"Booked appointment {db_appointment.id} for dentist {db_appointment.dentist_id}")
        return db_appointment
    except (ConflictError, NotFoundError):
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating appointment: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def update_appointment(db: Session, appointment_id: int, update: schemas.AppointmentUpdate) -> models.Appointment:
    db_appointment = get_appointment(db, appointment_id)
    if not db_appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    changes = update.model_dump(exclude_unset=True)
    if "patient_id" in changes and not get_patient(db, changes["patient_id"]):
        raise NotFoundError(f"Patient {changes['patient_id']} not found")
    try:
        new_date = changes.get("appointment_date", db_appointment.appointment_date)
        new_start = changes.get("start_time", db_appointment.start_time)
        new_end = changes.get("end_time", db_appointment.end_time)
        new_dentist = changes.get("dentist_id", db_appointment.dentist_id)
        if new_end <= new_start:
            raise ValueError("end_time must be after start_time")

        moved = {"appointment_date", "start_time", "end_time", "dentist_id"} & changes.keys()
        if moved and db_appointment.status in scheduling.BLOCKING_STATUSES:
            _lock_dentist(db, new_dentist)
            _ensure_free(db, new_dentist, new_date, new_start, new_end, exclude_id=appointment_id)

        _apply_updates(db_appointment, changes, money_fields=("deposit_amount",))
        db.commit()
        db.refresh(db_appointment)
        return db_appointment
    except (ConflictError, NotFoundError, ValueError):
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating appointment {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def set_appointment_status(db: Session, appointment_id: int, status: models.AppointmentStatus,
                           cancellation_reason: str = None) -> models.Appointment:
    db_appointment = get_appointment(db, appointment_id)
    if not db_appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    scheduling.ensure_transition(db_appointment.status, status)
    try:
        if db_appointment.status != status:
            db_appointment.status = status
            if status == models.AppointmentStatus.cancelled:
                db_appointment.cancelled_at = datetime.now(timezone.utc)
                db_appointment.cancellation_reason = cancellation_reason
            db.commit()
            db.refresh(db_appointment)
        return db_appointment
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating appointment status {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def reschedule_appointment(db: Session, appointment_id: int, request: schemas.RescheduleRequest) -> models.Appointment:
    """Move an appointment keeping its duration (drag and drop on the calendar)."""
    db_appointment = get_appointment(db, appointment_id)
    if not db_appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    if db_appointment.status in scheduling.TERMINAL_STATUSES:
        raise InvalidTransitionError("appointment", db_appointment.status, "rescheduled")
    new_start, new_end = scheduling.shift_times(db_appointment.start_time, db_appointment.end_time, request.start_time)
    return update_appointment(db, appointment_id, schemas.AppointmentUpdate(
        appointment_date=request.appointment_date,
        start_time=new_start,
        end_time=new_end,
        dentist_id=request.dentist_id or db_appointment.dentist_id,
    ))

def record_deposit(db: Session, appointment_id: int, deposit: schemas.DepositRequest, processed_by_id: int = None) -> models.Payment:
    db_appointment = get_appointment(db, appointment_id)
    if not db_appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    if db_appointment.deposit_paid:
        raise ConflictError(f"Deposit for appointment {appointment_id} has already been paid")
    try:
        payment = models.Payment(
            patient_id=db_appointment.patient_id,
            appointment_id=appointment_id,
            amount=_money(deposit.amount),
            payment_method=deposit.payment_method,
            status=models.PaymentStatus.paid,
            payment_date=date.today(),
            description="Appointment deposit",
            payment_reference=deposit.payment_reference,
            processed_by_id=processed_by_id,
        )
        db.add(payment)
        db_appointment.deposit_paid = True
        db_appointment.deposit_required = True
        if db_appointment.deposit_amount is None:
            db_appointment.deposit_amount = _money(deposit.amount)
        db.commit()
        db.refresh(payment)
        return payment
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error recording deposit for appointment {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def delete_appointment(db: Session, appointment_id: int) -> None:
    db_appointment = get_appointment(db, appointment_id)
    if not db_appointment:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    try:
        db.query(models.Payment).filter(models.Payment.appointment_id == appointment_id).update(
            {models.Payment.appointment_id: None}, synchronize_session=False
        )
        db.delete(db_appointment)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting appointment {appointment_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_appointment_paid_total(db: Session, appointment_id: int) -> float:
    total = db.query(func.coalesce(func.sum(models.Payment.amount), 0)).filter(
        models.Payment.appointment_id == appointment_id,
        models.Payment.status == models.PaymentStatus.paid,
    ).scalar()
    return float(total or 0)


# ==================== LEADS ====================

PIPELINE_ORDER = [
    models.LeadStatus.new,
    models.LeadStatus.contacted,
    models.LeadStatus.qualified,
    models.LeadStatus.consultation_booked,
    models.LeadStatus.treatment_planned,
    models.LeadStatus.converted,
    models.LeadStatus.lost,
]

def get_lead(db: Session, lead_id: int) -> Optional[models.Lead]:
    return db.query(models.Lead).filter(models.Lead.id == lead_id).first()

def get_leads(db: Session, page: int = 1, page_size: int = 25, q: str = None, status: str = None,
              source: str = None, interest_level: str = None, assigned_to_id: int = None) -> Tuple[List[models.Lead], int]:
    try:
        query = db.query(models.Lead)
        if q:
            pattern = f"%{q.strip()}%"
            query = query.filter(or_(
                models.Lead.first_name.ilike(pattern),
                models.Lead.last_name.ilike(pattern),
                models.Lead.email.ilike(pattern),
                models.Lead.practice_name.ilike(pattern),
            ))
        if status:
            query = query.filter(models.Lead.status == models.LeadStatus(status))
        if source:
            query = query.filter(models.Lead.source == models.LeadSource(source))
        if interest_level:
            query = query.filter(models.Lead.interest_level == models.InterestLevel(interest_level))
        if assigned_to_id:
            query = query.filter(models.Lead.assigned_to_id == assigned_to_id)
        total = query.count()
        rows = query.order_by(desc(models.Lead.created_at), desc(models.Lead.id)).offset((page - 1) * page_size).limit(page_size).all()
        return rows, total
    except SQLAlchemyError as e:
        logger.error(f"Error listing leads: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_lead(db: Session, lead: schemas.LeadCreate, lead_number: str = None) -> models.Lead:
    try:
        data = lead.model_dump()
        data["estimated_value"] = _money(data.get("estimated_value") or 0)
        db_lead = models.Lead(**data, lead_number=lead_number or generate_lead_number())
        db.add(db_lead)
        db.commit()
        db.refresh(db_lead)
        return db_lead
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating lead: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def update_lead(db: Session, lead_id: int, lead_update: schemas.LeadUpdate) -> models.Lead:
    db_lead = get_lead(db, lead_id)
    if not db_lead:
        raise NotFoundError(f"Lead {lead_id} not found")
    try:
        changes = lead_update.model_dump(exclude_unset=True)
        if changes.get("marketing_consent") is False and db_lead.marketing_consent:
            db_lead.consent_withdrawn_at = datetime.now(timezone.utc)
        _apply_updates(db_lead, changes, money_fields=("estimated_value",))
        db.commit()
        db.refresh(db_lead)
        return db_lead
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating lead {lead_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def withdraw_lead_consent(db: Session, lead_id: int) -> models.Lead:
    db_lead = get_lead(db, lead_id)
    if not db_lead:
        raise NotFoundError(f"Lead {lead_id} not found")
    try:
        db_lead.marketing_consent = False
        if db_lead.consent_withdrawn_at is None:
            db_lead.consent_withdrawn_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(db_lead)
        return db_lead
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def convert_lead(db: Session, lead_id: int, created_by_id: int = None) -> models.Lead:
    """Enrol a lead as a patient. Converting twice keeps the first patient."""
    db_lead = get_lead(db, lead_id)
    if not db_lead:
        raise NotFoundError(f"Lead {lead_id} not found")
    if db_lead.converted_patient_id:
        return db_lead
    if db_lead.status == models.LeadStatus.lost:
        raise InvalidTransitionError("lead", db_lead.status, models.LeadStatus.converted)
    try:
        patient = models.Patient(
            patient_number=_reference("PAT"),
            first_name=db_lead.first_name,
            last_name=db_lead.last_name or "-",
            email=db_lead.email,
            phone=db_lead.phone,
            status=models.PatientStatus.active,
            treatment_type=db_lead.treatment_interest,
            practice_location_id=db_lead.practice_location_id,
            created_by_id=created_by_id,
        )
        db.add(patient)
        db.flush()
        db_lead.converted_patient_id = patient.id
        db_lead.status = models.LeadStatus.converted
        db.commit()
        db.refresh(db_lead)
        return db_lead
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error converting lead {lead_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def get_lead_pipeline(db: Session) -> Dict[str, Any]:
    rows = db.query(
        models.Lead.status,
        func.count(models.Lead.id),
        func.coalesce(func.sum(models.Lead.estimated_value), 0),
    ).group_by(models.Lead.status).all()
    by_status = {models.LeadStatus(s): (n, float(v)) for s, n, v in rows}
    stages = [
        {"status": s, "count": by_status.get(s, (0, 0.0))[0], "value": by_status.get(s, (0, 0.0))[1]}
        for s in PIPELINE_ORDER
    ]
    total = sum(stage["count"] for stage in stages)
    converted = by_status.get(models.LeadStatus.converted, (0, 0.0))[0]
    return {
        "stages": stages,
        "total_leads": total,
        "total_value": sum(stage["value"] for stage in stages),
        "conversion_rate": round(converted / total * 100, 1) if total else 0.0,
    }


# ==================== PAYMENTS ====================

def get_payments(db: Session, status: str = None, method: str = None, patient_id: int = None) -> List[models.Payment]:
    try:
        query = db.query(models.Payment)
        if status:
            query = query.filter(models.Payment.status == models.PaymentStatus(status))
        if method:
            query = query.filter(models.Payment.payment_method == models.PaymentMethod(method))
        if patient_id:
            query = query.filter(models.Payment.patient_id == patient_id)
        return query.order_by(desc(models.Payment.payment_date), desc(models.Payment.id)).all()
    except SQLAlchemyError as e:
        logger.error(f"Error listing payments: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def create_payment(db: Session, payment: schemas.PaymentCreate, processed_by_id: int = None) -> models.Payment:
    if payment.patient_id and not get_patient(db, payment.patient_id):
        raise NotFoundError(f"Patient {payment.patient_id} not found")
    if payment.appointment_id and not get_appointment(db, payment.appointment_id):
        raise NotFoundError(f"Appointment {payment.appointment_id} not found")
    try:
        data = payment.model_dump()
        data["amount"] = _money(data["amount"])
        if data.get("payment_date") is None:
            data["payment_date"] = date.today()
        db_payment = models.Payment(**data, processed_by_id=processed_by_id)
        db.add(db_payment)
        db.commit()
        db.refresh(db_payment)
        return db_payment
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating payment: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== MEMBERSHIPS ====================

DEFAULT_MEMBERSHIP_PLANS = [
    {
        "name": "Essential Care", "tier": models.MembershipTier.basic, "monthly_price": 12.50, "annual_price": 135,
        "description": "Routine check-ups for healthy smiles",
        "benefits": ["2 check-ups per year", "10% off treatments", "Emergency helpline"],
    },
    {
        "name": "Complete Care", "tier": models.MembershipTier.standard, "monthly_price": 19.50, "annual_price": 210,
        "description": "Check-ups and hygiene visits",
        "benefits": ["2 check-ups per year", "2 hygienist visits", "15% off treatments", "Worldwide dental injury cover"],
    },
    {
        "name": "Premium Care", "tier": models.MembershipTier.premium, "monthly_price": 29.50, "annual_price": 320,
        "description": "Everything, including whitening top-ups",
        "benefits": ["Unlimited check-ups", "4 hygienist visits", "20% off treatments", "Annual whitening top-up"],
    },
]

def seed_membership_plans(db: Session) -> int:
    if db.query(models.MembershipPlan).count():
        return 0
    try:
        for plan in DEFAULT_MEMBERSHIP_PLANS:
            db.add(models.MembershipPlan(
                **{**plan, "monthly_price": _money(plan["monthly_price"]), "annual_price": _money(plan["annual_price"])},
                is_active=True,
            ))
        db.commit()
        return len(DEFAULT_MEMBERSHIP_PLANS)
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_membership_plan(db: Session, plan_id: int) -> Optional[models.MembershipPlan]:
    return db.query(models.MembershipPlan).filter(models.MembershipPlan.id == plan_id).first()

def get_membership_plans(db: Session, include_inactive: bool = False) -> List[models.MembershipPlan]:
    query = db.query(models.MembershipPlan)
    if not include_inactive:
        query = query.filter(models.MembershipPlan.is_active.is_(True))
    plans = query.all()
    return sorted(plans, key=lambda p: (membership_lifecycle.TIER_ORDER[models.MembershipTier(p.tier)], float(p.monthly_price)))

def create_membership_plan(db: Session, plan: schemas.MembershipPlanCreate) -> models.MembershipPlan:
    try:
        data = plan.model_dump()
        data["monthly_price"] = _money(data["monthly_price"])
        data["annual_price"] = _money(data.get("annual_price"))
        db_plan = models.MembershipPlan(**data)
        db.add(db_plan)
        db.commit()
        db.refresh(db_plan)
        return db_plan
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def update_membership_plan(db: Session, plan_id: int, update: schemas.MembershipPlanUpdate) -> models.MembershipPlan:
    db_plan = get_membership_plan(db, plan_id)
    if not db_plan:
        raise NotFoundError(f"Membership plan {plan_id} not found")
    try:
        _apply_updates(db_plan, update.model_dump(exclude_unset=True), money_fields=("monthly_price", "annual_price"))
        db.commit()
        db.refresh(db_plan)
        return db_plan
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_membership_application(db: Session, application_id: int) -> Optional[models.MembershipApplication]:
    return db.query(models.MembershipApplication).filter(models.MembershipApplication.id == application_id).first()

def get_membership_applications(db: Session, status: str = None, practice_location_id: int = None) -> List[models.MembershipApplication]:
    query = db.query(models.MembershipApplication).options(joinedload(models.MembershipApplication.membership))
    if status:
        query = query.filter(models.MembershipApplication.status == models.ApplicationStatus(status))
    if practice_location_id:
        query = query.filter(models.MembershipApplication.practice_location_id == practice_location_id)
    return query.order_by(desc(models.MembershipApplication.created_at), desc(models.MembershipApplication.id)).all()

def create_membership_application(db: Session, application: schemas.MembershipApplicationCreate) -> models.MembershipApplication:
    plan = get_membership_plan(db, application.plan_id)
    if not plan or not plan.is_active:
        raise NotFoundError(f"Membership plan {application.plan_id} not found")
    try:
        db_application = models.MembershipApplication(**application.model_dump(), application_number=_reference("APP"))
        db.add(db_application)
        db.commit()
        db.refresh(db_application)
        return db_application
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def _create_membership_for(db: Session, application: models.MembershipApplication) -> models.Membership:
    plan = get_membership_plan(db, application.plan_id)
    if not plan:
        raise NotFoundError(f"Membership plan {application.plan_id} not found")
    membership = membership_lifecycle.build_membership(application, plan, _reference("MEM"))
    db.add(membership)
    return membership

def set_application_status(db: Session, application_id: int, update: schemas.ApplicationStatusUpdate,
                           processed_by_id: int = None) -> models.MembershipApplication:
    """Approval and membership creation commit together, so an approved application always has exactly one membership."""
    application = get_membership_application(db, application_id)
    if not application:
        raise NotFoundError(f"Membership application {application_id} not found")
    try:
        changed = membership_lifecycle.apply_application_status(
            application, update.status, processed_by_id=processed_by_id, rejected_reason=update.rejected_reason
        )
        if changed and update.status == models.ApplicationStatus.approved and application.membership is None:
            _create_membership_for(db, application)
        db.commit()
        db.refresh(application)
        return application
    except (InvalidTransitionError, NotFoundError):
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Application {application_id} already has a membership")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error updating application {application_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")

def delete_membership_application(db: Session, application_id: int) -> None:
    application = get_membership_application(db, application_id)
    if not application:
        raise NotFoundError(f"Membership application {application_id} not found")
    if application.membership is not None:
        raise ConflictError(f"Application {application_id} has a membership and cannot be deleted")
    try:
        db.delete(application)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_membership(db: Session, membership_id: int) -> Optional[models.Membership]:
    return db.query(models.Membership).options(joinedload(models.Membership.plan)).filter(models.Membership.id == membership_id).first()

def get_memberships(db: Session, status: str = None, practice_location_id: int = None) -> List[models.Membership]:
    query = db.query(models.Membership).options(joinedload(models.Membership.plan))
    if status:
        query = query.filter(models.Membership.status == models.MembershipStatus(status))
    if practice_location_id:
        query = query.filter(models.Membership.practice_location_id == practice_location_id)
    return query.order_by(desc(models.Membership.created_at), desc(models.Membership.id)).all()

def create_membership_from_application(db: Session, application_id: int) -> Tuple[models.Membership, bool]:
    """Returns (membership, created). An application already converted yields its existing membership."""
    application = get_membership_application(db, application_id)
    if not application:
        raise NotFoundError(f"Membership application {application_id} not found")
    if application.membership is not None:
        return application.membership, False
    try:
        membership = _create_membership_for(db, application)
        db.commit()
        db.refresh(membership)
        return membership, True
    except (InvalidTransitionError, NotFoundError):
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        existing = db.query(models.Membership).filter(models.Membership.application_id == application_id).first()
        if existing is None:
            raise ConflictError(f"Could not create membership for application {application_id}")
        return existing, False
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def set_membership_status(db: Session, membership_id: int, status: models.MembershipStatus) -> models.Membership:
    membership = get_membership(db, membership_id)
    if not membership:
        raise NotFoundError(f"Membership {membership_id} not found")
    try:
        if membership_lifecycle.apply_membership_status(membership, status):
            db.commit()
            db.refresh(membership)
        return membership
    except InvalidTransitionError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def record_membership_payment(db: Session, membership_id: int, payment: schemas.MembershipPaymentCreate) -> models.MembershipPayment:
    membership = get_membership(db, membership_id)
    if not membership:
        raise NotFoundError(f"Membership {membership_id} not found")
    try:
        paid_date = payment.paid_date or date.today()
        row = models.MembershipPayment(membership_id=membership_id, amount_paid=_money(payment.amount_paid), paid_date=paid_date)
        db.add(row)
        if membership.status == models.MembershipStatus.active:
            membership.next_billing_date = membership_lifecycle.next_billing_date(paid_date, membership.billing_frequency)
        db.commit()
        db.refresh(row)
        return row
    except SQLAlchemyError as e:
        db.rollback()
        raise CRUDError(f"Database error: {str(e)}")

def get_membership_overview(db: Session, practice_location_id: int = None, today: date = None) -> Dict[str, Any]:
    today = today or date.today()
    applications = db.query(func.count(models.MembershipApplication.id))
    active = db.query(func.count(models.Membership.id)).filter(models.Membership.status == models.MembershipStatus.active)
    if practice_location_id:
        applications = applications.filter(models.MembershipApplication.practice_location_id == practice_location_id)
        active = active.filter(models.Membership.practice_location_id == practice_location_id)
    total_applications = applications.scalar() or 0
    active_memberships = active.scalar() or 0

    month_start = today.replace(day=1)
    next_month = membership_lifecycle.add_months(month_start, 1)
    revenue = db.query(func.coalesce(func.sum(models.MembershipPayment.amount_paid), 0)).filter(
        models.MembershipPayment.paid_date >= month_start,
        models.MembershipPayment.paid_date < next_month,
    )
    if practice_location_id:
        revenue = revenue.join(models.Membership).filter(models.Membership.practice_location_id == practice_location_id)

    return {
        "total_applications": total_applications,
        "active_memberships": active_memberships,
        "monthly_revenue": round(float(revenue.scalar() or 0), 2),
        "conversion_rate": membership_lifecycle.conversion_rate(active_memberships, total_applications),
    }

def get_membership_trends(db: Session, days: int = 30, practice_location_id: int = None) -> List[Dict[str, Any]]:
    since = datetime.now(timezone.utc) - timedelta(days=days)
    query = db.query(models.Membership.created_at).filter(models.Membership.created_at >= since)
    if practice_location_id:
        query = query.filter(models.Membership.practice_location_id == practice_location_id)
    counts: Dict[date, int] = {}
    for (created_at,) in query.all():
        day = created_at.date()
        counts[day] = counts.get(day, 0) + 1
    return [{"date": day, "count": counts[day]} for day in sorted(counts)]


# ==================== DASHBOARD & ADMIN ====================

def get_stats(db: Session) -> Dict[str, Any]:
    revenue = db.query(func.coalesce(func.sum(models.Payment.amount), 0)).filter(
        models.Payment.status == models.PaymentStatus.paid
    ).scalar()
    return {
        "total_patients": db.query(models.Patient).filter(models.Patient.deleted_at.is_(None)).count(),
        "total_appointments": db.query(models.Appointment).count(),
        "total_leads": db.query(models.Lead).count(),
        "total_revenue": float(revenue or 0),
    }

def get_admin_kpis(db: Session) -> Dict[str, Any]:
    clients = db.query(models.ClientOrganization).all()
    return {
        "total_clients": len(clients),
        "active_clients": sum(1 for c in clients if c.status == models.ClientStatus.active),
        "total_users": db.query(models.User).count(),
        "mrr": float(sum((c.monthly_cost or 0) for c in clients if c.status == models.ClientStatus.active)),
    }

def get_audit_logs(db: Session, limit: int = 100, risk_level: str = None, resource_type: str = None,
                   resource_id: str = None, user_id: int = None, since: datetime = None) -> List[models.AuditLog]:
    try:
        query = db.query(models.AuditLog)
        if risk_level:
            query = query.filter(models.AuditLog.risk_level == models.RiskLevel(risk_level))
        if resource_type:
            query = query.filter(models.AuditLog.resource_type == resource_type)
        if resource_id is not None:
            query = query.filter(models.AuditLog.resource_id == str(resource_id))
        if user_id:
            query = query.filter(models.AuditLog.user_id == user_id)
        if since:
            query = query.filter(models.AuditLog.created_at >= since)
        return query.order_by(desc(models.AuditLog.created_at), desc(models.AuditLog.id)).limit(limit).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching audit logs: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")
