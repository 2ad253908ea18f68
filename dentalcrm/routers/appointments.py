# dentalcrm/routers/appointments.py
from datetime import date, time
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import SessionLocal, get_db
from ..services import scheduling
from ..services.audit_service import audit_service, request_context
from ..services.email_service import get_email_service

import logging

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/appointments",
    tags=["Appointments"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)

read_roles = security.require_role(*security.CLINICAL_STAFF)
write_roles = security.require_role(*security.FRONT_DESK, "manager")
delete_roles = security.require_role(*security.PRACTICE_ADMINS)


def _get_or_404(db: Session, appointment_id: int) -> models.Appointment:
    appointment = crud.get_appointment(db, appointment_id)
    if not appointment:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return appointment

async def _send_confirmation(appointment_id: int):
    # Runs after the response; the request session is already closed
    db = SessionLocal()
    try:
        appointment = crud.get_appointment(db, appointment_id)
        if appointment:
            await get_email_service().send_appointment_confirmation(db, appointment)
    finally:
        db.close()


@router.get("", response_model=List[schemas.AppointmentResponse])
def read_appointments(
    status_filter: Optional[models.AppointmentStatus] = Query(None, alias="status"),
    dentist_id: Optional[int] = None,
    practice_location_id: Optional[int] = None,
    patient_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    return crud.get_appointments(
        db, status=status_filter, dentist_id=dentist_id, practice_location_id=practice_location_id,
        patient_id=patient_id, date_from=date_from, date_to=date_to,
    )

@router.get("/calendar", response_model=schemas.CalendarResponse)
def read_calendar(
    view: str = Query("week", pattern="^(day|week|month)$"),
    anchor: date = Query(default_factory=date.today, alias="date"),
    dentist_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    """Appointments visible in a day, week (Monday first) or 35-day month grid."""
    settings = get_settings()
    start, end = scheduling.calendar_range(view, anchor)
    days = [start.fromordinal(d) for d in range(start.toordinal(), end.toordinal() + 1)]
    return {
        "view": view,
        "start_date": start,
        "end_date": end,
        "hours": scheduling.day_hours(settings.clinic_day_start_hour, settings.clinic_day_end_hour),
        "days": days,
        "appointments": crud.get_appointments(db, dentist_id=dentist_id, date_from=start, date_to=end),
    }

@router.get("/conflicts", response_model=schemas.ConflictReport)
def check_conflicts(
    dentist_id: int,
    appointment_date: date,
    start_time: time,
    end_time: time,
    exclude_id: Optional[int] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    conflicts = scheduling.find_conflicts(db, dentist_id, appointment_date, start_time, end_time, exclude_id=exclude_id)
    return {"has_conflict": bool(conflicts), "conflicts": conflicts}

@router.get("/availability", response_model=schemas.AvailabilityResponse)
def check_availability(
    dentist_id: int,
    day: date = Query(..., alias="date"),
    duration: int = Query(30, ge=5, le=480),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    """Free start times for a dentist on a given day."""
    settings = get_settings()
    slots = scheduling.available_slots(
        db, dentist_id, day, duration,
        day_start_hour=settings.clinic_day_start_hour,
        day_end_hour=settings.clinic_day_end_hour,
        interval=settings.slot_interval_minutes,
    )
    return {"dentist_id": dentist_id, "date": day, "duration": duration, "slots": slots}

@router.get("/{appointment_id}", response_model=schemas.AppointmentResponse)
def read_appointment(
    request: Request,
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(read_roles),
):
    appointment = _get_or_404(db, appointment_id)
    audit_service.log_appointment_access("view", appointment_id, user=current_user, **request_context(request))
    return appointment

@router.get("/{appointment_id}/summary", response_model=schemas.AppointmentSummary)
def read_appointment_summary(appointment_id: int, db: Session = Depends(get_db), current_user: models.User = Depends(read_roles)):
    appointment = _get_or_404(db, appointment_id)
    return {
        "appointment": appointment,
        "patient": appointment.patient,
        "dentist": appointment.dentist,
        "duration_minutes": scheduling.duration_minutes(appointment.start_time, appointment.end_time),
        "deposit_required": appointment.deposit_required,
        "deposit_amount": appointment.deposit_amount,
        "deposit_paid": appointment.deposit_paid,
        "total_paid": crud.get_appointment_paid_total(db, appointment_id),
    }

@router.post("", response_model=schemas.AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    request: Request,
    appointment: schemas.AppointmentCreate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(write_roles),
):
    """Book an appointment. Overlapping bookings for the same dentist are rejected with 409."""
    db_appointment = crud.create_appointment(db, appointment, created_by_id=current_user.id)
    audit_service.log_appointment_access("create", db_appointment.id, user=current_user, **request_context(request))
    if db_appointment.status == models.AppointmentStatus.confirmed:
        background_tasks.add_task(_send_confirmation, db_appointment.id)
    return db_appointment

@router.put("/{appointment_id}", response_model=schemas.AppointmentResponse)
def update_appointment(
    request: Request,
    appointment_id: int,
    update: schemas.AppointmentUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(write_roles),
):
    try:
        updated = crud.update_appointment(db, appointment_id, update)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    audit_service.log_appointment_access("update", appointment_id, user=current_user, **request_context(request))
    return updated

@router.put("/{appointment_id}/status", response_model=schemas.AppointmentResponse)
def update_appointment_status(
    request: Request,
    appointment_id: int,
    update: schemas.AppointmentStatusUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_role(*security.FRONT_DESK)),
):
    before = _get_or_404(db, appointment_id).status
    updated = crud.set_appointment_status(db, appointment_id, update.status, update.cancellation_reason)
    audit_service.log_appointment_access(
        f"status_{update.status.value}", appointment_id, user=current_user, **request_context(request)
    )
    if before != updated.status and updated.status == models.AppointmentStatus.confirmed:
        background_tasks.add_task(_send_confirmation, appointment_id)
    return updated

@router.post("/{appointment_id}/reschedule", response_model=schemas.AppointmentResponse)
def reschedule_appointment(
    request: Request,
    appointment_id: int,
    reschedule: schemas.RescheduleRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(write_roles),
):
    """Move an appointment to a new slot keeping its duration."""
    _get_or_404(db, appointment_id)
    try:
        updated = crud.reschedule_appointment(db, appointment_id, reschedule)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    audit_service.log_appointment_access("reschedule", appointment_id, user=current_user, **request_context(request))
    return updated

@router.post("/{appointment_id}/deposit", response_model=schemas.PaymentResponse, status_code=status.HTTP_201_CREATED)
def collect_deposit(
    appointment_id: int,
    deposit: schemas.DepositRequest,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_module_permission("finance", "write")),
):
    if current_user.role.value not in security.FRONT_DESK:
        raise HTTPException(status_code=403, detail=f"Access denied. Required roles: {', '.join(security.FRONT_DESK)}")
    return crud.record_deposit(db, appointment_id, deposit, processed_by_id=current_user.id)

@router.delete("/{appointment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_appointment(
    request: Request,
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(delete_roles),
):
    crud.delete_appointment(db, appointment_id)
    audit_service.log_appointment_access("delete", appointment_id, user=current_user, **request_context(request))
