import asyncio
import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import jinja2
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..config import get_settings
from .pricing import PricingSchedule, format_currency

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"


class EmailService:
    """Templated transactional email over SendGrid.

    Without a SENDGRID_API_KEY the service runs in simulated mode: messages
    are rendered and logged to email_logs but never leave the process.
    """

    def __init__(self, settings=None):
        self.settings = settings or get_settings()
        self.enabled = self.settings.email_enabled
        self.sender_email = self.settings.sender_email
        self.sg = SendGridAPIClient(api_key=self.settings.sendgrid_api_key) if self.enabled else None
        if not self.enabled:
            logger.warning("SENDGRID_API_KEY not set - email service running in simulated mode")

        self.template_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=jinja2.select_autoescape(["html"]),
        )

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        template = self.template_env.get_template(f"{template_name}.html")
        return template.render(app_name=self.settings.app_name, **context)

    async def send_templated_email(
        self,
        db: Session,
        to_email: str,
        subject: str,
        template_name: str,
        context: Dict[str, Any],
        log_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        html_content = self.render(template_name, {"subject": subject, **context})

        email_log = models.EmailLog(
            to_email=to_email,
            subject=subject,
            template=template_name,
            data=log_data or {},
            status=models.EmailStatus.pending,
        )
        db.add(email_log)
        db.flush()

        if not self.enabled:
            logger.info(f"Would send '{template_name}' email to {to_email} (simulated)")
            email_log.status = models.EmailStatus.simulated
            result = {"success": True, "simulated": True, "message": "Email sent successfully (simulated)"}
        else:
            mail = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            try:
                response = await asyncio.to_thread(self.sg.send, mail)
                logger.info(f"Email '{template_name}' sent to {to_email}. Status: {response.status_code}")
                email_log.status = models.EmailStatus.sent
                email_log.sent_at = datetime.now(timezone.utc)
                result = {"success": True, "simulated": False, "message": "Email sent successfully"}
            except Exception as e:  # SendGrid surfaces HTTP failures as assorted exception types
                logger.error(f"Error sending '{template_name}' email to {to_email}: {e}")
                email_log.status = models.EmailStatus.failed
                email_log.error_message = str(e)
                result = {"success": False, "simulated": False, "message": f"Failed to send email: {e}"}

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to save email log for {to_email}: {e}")
        result["email_log_id"] = email_log.id
        return result

    async def send_waitlist_notification(self, db: Session, lead: models.Lead, practice_size: str = None, message: str = None):
        """Tell the practice team about a new waitlist signup."""
        return await self.send_templated_email(
            db,
            to_email=self.settings.admin_notification_email,
            subject=f"New waitlist signup: {lead.first_name} {lead.last_name or ''}".strip(),
            template_name="waitlist_admin",
            context={"lead": lead, "practice_size": practice_size, "message": message},
            log_data={"lead_id": lead.id, "lead_number": lead.lead_number},
        )

    async def send_waitlist_welcome(self, db: Session, lead: models.Lead):
        schedule = PricingSchedule.from_settings(self.settings)
        return await self.send_templated_email(
            db,
            to_email=lead.email,
            subject="Welcome to the waitlist",
            template_name="waitlist_welcome",
            context={
                "lead": lead,
                "installation_fee": format_currency(schedule.installation_fee, schedule),
                "included_seats": schedule.included_seats,
                "free_trial_months": schedule.free_trial_months,
                "seat_price": format_currency(schedule.additional_seat_price, schedule),
            },
            log_data={"lead_id": lead.id, "lead_number": lead.lead_number},
        )

    async def send_appointment_confirmation(self, db: Session, appointment: models.Appointment):
        patient = appointment.patient
        if not patient or not patient.email:
            return {"success": False, "simulated": False, "message": "Patient has no email address"}
        schedule = PricingSchedule.from_settings(self.settings)
        return await self.send_templated_email(
            db,
            to_email=patient.email,
            subject=f"Appointment confirmed: {appointment.appointment_date:%d %B %Y} at {appointment.start_time:%H:%M}",
            template_name="appointment_confirmation",
            context={
                "patient_name": patient.full_name,
                "dentist_name": appointment.dentist.full_name if appointment.dentist else "your dentist",
                "treatment_type": appointment.treatment_type,
                "appointment_date": f"{appointment.appointment_date:%A %d %B %Y}",
                "start_time": f"{appointment.start_time:%H:%M}",
                "deposit_required": appointment.deposit_required,
                "deposit_paid": appointment.deposit_paid,
                "deposit_amount": format_currency(float(appointment.deposit_amount or 0), schedule),
            },
            log_data={"appointment_id": appointment.id},
        )


@lru_cache()
def get_email_service() -> EmailService:
    return EmailService()
