# dentalcrm/models.py
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, Boolean, JSON, Numeric, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base
import enum


def utcnow():
    return datetime.now(timezone.utc)


# ==================== Enum Classes ====================

class UserRole(str, enum.Enum):
    super_admin = "super_admin"
    practice_admin = "practice_admin"
    manager = "manager"
    dentist = "dentist"
    hygienist = "hygienist"
    receptionist = "receptionist"
    patient = "patient"


class PatientStatus(str, enum.Enum):
    active = "active"
    inactive = "inactive"
    prospective = "prospective"


class AppointmentStatus(str, enum.Enum):
    pending = "pending"
    scheduled = "scheduled"
    confirmed = "confirmed"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


class LeadStatus(str, enum.Enum):
    new = "new"
    contacted = "contacted"
    qualified = "qualified"
    consultation_booked = "consultation_booked"
    treatment_planned = "treatment_planned"
    converted = "converted"
    lost = "lost"


class LeadSource(str, enum.Enum):
    website = "website"
    referral = "referral"
    social_media = "social_media"
    advertising = "advertising"
    walk_in = "walk_in"
    phone = "phone"
    other = "other"


class InterestLevel(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class PaymentMethod(str, enum.Enum):
    card = "card"
    bank_transfer = "bank_transfer"
    cash = "cash"
    cheque = "cheque"
    direct_debit = "direct_debit"
    finance = "finance"
    insurance_claim = "insurance_claim"


class PaymentStatus(str, enum.Enum):
    paid = "paid"
    pending = "pending"
    failed = "failed"


class MembershipTier(str, enum.Enum):
    basic = "basic"
    standard = "standard"
    premium = "premium"


class BillingFrequency(str, enum.Enum):
    monthly = "monthly"
    annual = "annual"


class ApplicationStatus(str, enum.Enum):
    pending = "pending"
    under_review = "under_review"
    approved = "approved"
    rejected = "rejected"


class MembershipStatus(str, enum.Enum):
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    expired = "expired"


class ClientStatus(str, enum.Enum):
    pending_approval = "pending_approval"
    active = "active"
    suspended = "suspended"
    cancelled = "cancelled"


class SubscriptionTier(str, enum.Enum):
    basic = "basic"
    professional = "professional"
    enterprise = "enterprise"


class PermissionLevel(str, enum.Enum):
    none = "none"
    read = "read"
    write = "write"
    admin = "admin"


class RiskLevel(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class EmailStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    simulated = "simulated"
    failed = "failed"


# ==================== Tenants ====================

class ClientOrganization(Base):
    """A dental practice subscribed to the CRM (tenant)."""
    __tablename__ = "client_organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    contact_name = Column(String(200), nullable=True)
    contact_email = Column(String(255), nullable=False, index=True)
    phone = Column(String(30), nullable=True)
    status = Column(SQLAlchemyEnum(ClientStatus, name='client_status'), default=ClientStatus.pending_approval, nullable=False)
    subscription_tier = Column(SQLAlchemyEnum(SubscriptionTier, name='subscription_tier'), default=SubscriptionTier.basic, nullable=False)
    total_users = Column(Integer, default=1, nullable=False)
    installation_fee = Column(Numeric(10, 2), default=0)
    monthly_cost = Column(Numeric(10, 2), default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    users = relationship("User", back_populates="client_organization")
    module_permissions = relationship("ClientModulePermission", back_populates="client_organization", cascade="all, delete-orphan")
    ui_settings = relationship("ClientUiSettings", back_populates="client_organization", uselist=False, cascade="all, delete-orphan")
    branding = relationship("ClientBranding", back_populates="client_organization", uselist=False, cascade="all, delete-orphan")


class ClientModulePermission(Base):
    __tablename__ = "client_module_permissions"
    __table_args__ = (
        UniqueConstraint('client_organization_id', 'module_name', name='uq_client_module'),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_organization_id = Column(Integer, ForeignKey("client_organizations.id"), nullable=False)
    module_name = Column(String(50), nullable=False)
    permission_level = Column(SQLAlchemyEnum(PermissionLevel, name='permission_level'), default=PermissionLevel.none, nullable=False)
    is_enabled = Column(Boolean, default=True)

    client_organization = relationship("ClientOrganization", back_populates="module_permissions")


class ClientUiSettings(Base):
    __tablename__ = "client_ui_settings"

    id = Column(Integer, primary_key=True, index=True)
    client_organization_id = Column(Integer, ForeignKey("client_organizations.id"), unique=True, nullable=False)
    # NULL means "use the default"
    public_footer_enabled = Column(Boolean, nullable=True)
    public_footer_variant = Column(String(20), nullable=True)
    internal_footer_enabled = Column(Boolean, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    client_organization = relationship("ClientOrganization", back_populates="ui_settings")


class ClientBranding(Base):
    __tablename__ = "client_branding"

    id = Column(Integer, primary_key=True, index=True)
    client_organization_id = Column(Integer, ForeignKey("client_organizations.id"), unique=True, nullable=False)
    practice_name = Column(String(120), nullable=True)
    logo_url = Column(String(500), nullable=True)
    primary_color = Column(String(7), nullable=True)
    secondary_color_1 = Column(String(7), nullable=True)
    secondary_color_2 = Column(String(7), nullable=True)
    secondary_color_3 = Column(String(7), nullable=True)
    font_family = Column(String(100), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    client_organization = relationship("ClientOrganization", back_populates="branding")


# ==================== Users ====================

class User(Base):
    """Staff user profile with credentials and role"""
    __tablename__ = "user_profiles"
    __table_args__ = (
        Index('idx_user_profiles_role_active', 'role', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), default=UserRole.receptionist, nullable=False)
    is_active = Column(Boolean, default=True)
    client_organization_id = Column(Integer, ForeignKey("client_organizations.id"), nullable=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    client_organization = relationship("ClientOrganization", back_populates="users")
    appointments = relationship("Appointment", back_populates="dentist", foreign_keys="Appointment.dentist_id")


class PracticeLocation(Base):
    __tablename__ = "practice_locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    address = Column(Text, nullable=True)
    phone = Column(String(30), nullable=True)
    client_organization_id = Column(Integer, ForeignKey("client_organizations.id"), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ==================== Patients ====================

class Patient(Base):
    __tablename__ = "patients"
    __table_args__ = (
        Index('idx_patients_name', 'last_name', 'first_name'),
        Index('idx_patients_status', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_number = Column(String(40), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(30), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    address = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(PatientStatus, name='patient_status'), default=PatientStatus.active, nullable=False)
    treatment_type = Column(String(100), nullable=True)
    insurance_provider = Column(String(100), nullable=True)
    communication_preference = Column(String(20), default="email")
    notes = Column(Text, nullable=True)
    assigned_dentist_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    practice_location_id = Column(Integer, ForeignKey("practice_locations.id"), nullable=True)
    created_by_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)  # Soft delete

    assigned_dentist = relationship("User", foreign_keys=[assigned_dentist_id])
    practice_location = relationship("PracticeLocation")
    appointments = relationship("Appointment", back_populates="patient")
    payments = relationship("Payment", back_populates="patient")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


# ==================== Appointments ====================

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_dentist_date', 'dentist_id', 'appointment_date'),
        Index('idx_appointments_patient_date', 'patient_id', 'appointment_date'),
        Index('idx_appointments_status_date', 'status', 'appointment_date'),
    )

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    dentist_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=False)
    practice_location_id = Column(Integer, ForeignKey("practice_locations.id"), nullable=True)

    appointment_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    status = Column(SQLAlchemyEnum(AppointmentStatus, name='appointment_status'), default=AppointmentStatus.pending, nullable=False)
    treatment_type = Column(String(100), nullable=True)
    notes = Column(Text, nullable=True)

    deposit_required = Column(Boolean, default=False)
    deposit_amount = Column(Numeric(10, 2), nullable=True)
    deposit_paid = Column(Boolean, default=False)

    created_by_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    patient = relationship("Patient", back_populates="appointments")
    dentist = relationship("User", back_populates="appointments", foreign_keys=[dentist_id])
    practice_location = relationship("PracticeLocation")
    payments = relationship("Payment", back_populates="appointment")


# ==================== Leads ====================

class Lead(Base):
    """Prospective patient marketing record"""
    __tablename__ = "leads"
    __table_args__ = (
        Index('idx_leads_status_created', 'status', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    lead_number = Column(String(60), unique=True, index=True, nullable=False)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(30), nullable=True)
    practice_name = Column(String(200), nullable=True)
    source = Column(SQLAlchemyEnum(LeadSource, name='lead_source'), default=LeadSource.other, nullable=False)
    status = Column(SQLAlchemyEnum(LeadStatus, name='lead_status'), default=LeadStatus.new, nullable=False)
    interest_level = Column(SQLAlchemyEnum(InterestLevel, name='interest_level'), default=InterestLevel.medium, nullable=False)
    treatment_interest = Column(String(100), nullable=True)
    estimated_value = Column(Numeric(10, 2), default=0)
    notes = Column(Text, nullable=True)
    assigned_to_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    practice_location_id = Column(Integer, ForeignKey("practice_locations.id"), nullable=True)

    utm_source = Column(String(100), nullable=True)
    utm_medium = Column(String(100), nullable=True)
    utm_campaign = Column(String(100), nullable=True)

    marketing_consent = Column(Boolean, default=False)
    consent_withdrawn_at = Column(DateTime(timezone=True), nullable=True)
    converted_patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    assigned_to = relationship("User")


# ==================== Payments ====================

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(SQLAlchemyEnum(PaymentMethod, name='payment_method'), nullable=False)
    status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.pending, nullable=False)
    payment_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    payment_reference = Column(String(100), nullable=True)
    processed_by_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    patient = relationship("Patient", back_populates="payments")
    appointment = relationship("Appointment", back_populates="payments")


# ==================== Memberships ====================

class MembershipPlan(Base):
    __tablename__ = "membership_plans"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    tier = Column(SQLAlchemyEnum(MembershipTier, name='membership_tier'), nullable=False)
    description = Column(Text, nullable=True)
    monthly_price = Column(Numeric(10, 2), nullable=False)
    annual_price = Column(Numeric(10, 2), nullable=True)
    benefits = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class MembershipApplication(Base):
    __tablename__ = "membership_applications"

    id = Column(Integer, primary_key=True, index=True)
    application_number = Column(String(40), unique=True, index=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    applicant_name = Column(String(200), nullable=False)
    applicant_email = Column(String(255), nullable=False)
    applicant_phone = Column(String(30), nullable=True)
    plan_id = Column(Integer, ForeignKey("membership_plans.id"), nullable=False)
    practice_location_id = Column(Integer, ForeignKey("practice_locations.id"), nullable=True)
    billing_frequency = Column(SQLAlchemyEnum(BillingFrequency, name='billing_frequency'), default=BillingFrequency.monthly, nullable=False)
    status = Column(SQLAlchemyEnum(ApplicationStatus, name='application_status'), default=ApplicationStatus.pending, nullable=False)
    notes = Column(Text, nullable=True)
    processed_by_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    approved_date = Column(DateTime(timezone=True), nullable=True)
    rejected_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    plan = relationship("MembershipPlan")
    membership = relationship("Membership", back_populates="application", uselist=False)


class Membership(Base):
    __tablename__ = "memberships"
    __table_args__ = (
        # At most one membership per application
        UniqueConstraint('application_id', name='uq_membership_application'),
    )

    id = Column(Integer, primary_key=True, index=True)
    membership_number = Column(String(40), unique=True, index=True, nullable=False)
    application_id = Column(Integer, ForeignKey("membership_applications.id"), nullable=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=True)
    plan_id = Column(Integer, ForeignKey("membership_plans.id"), nullable=False)
    practice_location_id = Column(Integer, ForeignKey("practice_locations.id"), nullable=True)
    status = Column(SQLAlchemyEnum(MembershipStatus, name='membership_status'), default=MembershipStatus.active, nullable=False)
    billing_frequency = Column(SQLAlchemyEnum(BillingFrequency, name='billing_frequency'), default=BillingFrequency.monthly, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_billing_date = Column(Date, nullable=True)
    monthly_amount = Column(Numeric(10, 2), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), onupdate=utcnow)

    application = relationship("MembershipApplication", back_populates="membership")
    plan = relationship("MembershipPlan")
    payments = relationship("MembershipPayment", back_populates="membership")


class MembershipPayment(Base):
    __tablename__ = "membership_payments"

    id = Column(Integer, primary_key=True, index=True)
    membership_id = Column(Integer, ForeignKey("memberships.id"), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False)
    paid_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    membership = relationship("Membership", back_populates="payments")


# ==================== Audit & Email ====================

class AuditLog(Base):
    """Security and data-access audit trail"""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_user_date', 'user_id', 'created_at'),
        Index('idx_audit_action_date', 'action', 'created_at'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
        Index('idx_audit_risk_date', 'risk_level', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user_profiles.id"), nullable=True)
    user_email = Column(String(255), nullable=True)  # Denormalized for audit integrity
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(64), nullable=True)
    risk_level = Column(SQLAlchemyEnum(RiskLevel, name='risk_level'), default=RiskLevel.low, nullable=False)
    event_metadata = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class EmailLog(Base):
    __tablename__ = "email_logs"

    id = Column(Integer, primary_key=True, index=True)
    to_email = Column(String(255), nullable=False)
    subject = Column(String(255), nullable=False)
    template = Column(String(100), nullable=False)
    data = Column(JSON, nullable=True)
    status = Column(SQLAlchemyEnum(EmailStatus, name='email_status'), default=EmailStatus.pending, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    sent_at = Column(DateTime(timezone=True), nullable=True)
