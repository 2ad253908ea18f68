# dentalcrm/schemas.py
from datetime import datetime, date, time
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, ConfigDict, Field, EmailStr, field_validator, model_validator

from .models import (
    UserRole, PatientStatus, AppointmentStatus, LeadStatus, LeadSource, InterestLevel,
    PaymentMethod, PaymentStatus, MembershipTier, BillingFrequency, ApplicationStatus,
    MembershipStatus, ClientStatus, SubscriptionTier, PermissionLevel, RiskLevel,
)
from .services.pricing import PricingQuote

HEX_COLOR_PATTERN = r"^#([0-9a-fA-F]{3}|[0-9a-fA-F]{6})$"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- User Schemas ---
class UserBase(BaseSchema):
    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)
    role: UserRole = UserRole.receptionist

class UserCreate(UserBase):
    password: str = Field(..., min_length=8)
    client_organization_id: Optional[int] = None

class UserUpdate(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None
    client_organization_id: Optional[int] = None

class UserResponse(UserBase):
    id: int
    is_active: bool
    client_organization_id: Optional[int] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

class UserBrief(BaseSchema):
    id: int
    full_name: str
    email: str

class SignupRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, max_length=200)
    role: UserRole = UserRole.receptionist

    @field_validator("role")
    @classmethod
    def no_self_promotion(cls, v):
        if v in (UserRole.super_admin, UserRole.practice_admin):
            raise ValueError("Administrative roles cannot be self-assigned")
        return v


# --- Authentication Schemas ---
class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


# --- Patient Schemas ---
class PatientBase(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    status: PatientStatus = PatientStatus.active
    treatment_type: Optional[str] = Field(None, max_length=100)
    insurance_provider: Optional[str] = Field(None, max_length=100)
    communication_preference: Optional[str] = Field("email", max_length=20)
    notes: Optional[str] = None
    assigned_dentist_id: Optional[int] = None
    practice_location_id: Optional[int] = None

    @field_validator("date_of_birth")
    @classmethod
    def not_in_future(cls, v):
        if v and v > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return v

class PatientCreate(PatientBase):
    pass

class PatientUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    date_of_birth: Optional[date] = None
    address: Optional[str] = None
    status: Optional[PatientStatus] = None
    treatment_type: Optional[str] = Field(None, max_length=100)
    insurance_provider: Optional[str] = Field(None, max_length=100)
    communication_preference: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = None
    assigned_dentist_id: Optional[int] = None
    practice_location_id: Optional[int] = None

class PatientResponse(PatientBase):
    id: int
    patient_number: str
    full_name: str
    outstanding_balance: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class PatientBrief(BaseSchema):
    id: int
    patient_number: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    phone: Optional[str] = None

class PatientPage(BaseSchema):
    data: List[PatientResponse]
    page: int
    page_size: int
    total: int

class PatientStats(BaseSchema):
    total_patients: int
    active_patients: int
    inactive_patients: int
    prospective_patients: int


# --- Appointment Schemas ---
class AppointmentBase(BaseSchema):
    patient_id: int
    dentist_id: int
    practice_location_id: Optional[int] = None
    appointment_date: date
    start_time: time
    end_time: time
    treatment_type: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    deposit_required: bool = False
    deposit_amount: Optional[float] = Field(None, ge=0)

    @model_validator(mode='after')
    def check_times(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

class AppointmentCreate(AppointmentBase):
    status: AppointmentStatus = AppointmentStatus.pending

    @field_validator("status")
    @classmethod
    def bookable_status(cls, v):
        if v not in (AppointmentStatus.pending, AppointmentStatus.scheduled, AppointmentStatus.confirmed):
            raise ValueError("New appointments must be pending, scheduled or confirmed")
        return v

REQUIRED_APPOINTMENT_FIELDS = ("patient_id", "dentist_id", "appointment_date", "start_time", "end_time")

class AppointmentUpdate(BaseSchema):
    patient_id: Optional[int] = None
    dentist_id: Optional[int] = None
    practice_location_id: Optional[int] = None
    appointment_date: Optional[date] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    treatment_type: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    deposit_required: Optional[bool] = None
    deposit_amount: Optional[float] = Field(None, ge=0)

    @model_validator(mode='before')
    @classmethod
    def required_fields_not_null(cls, data):
        if isinstance(data, dict):
            cleared = [name for name in REQUIRED_APPOINTMENT_FIELDS if name in data and data[name] is None]
            if cleared:
                raise ValueError(f"{', '.join(cleared)} cannot be null")
        return data

class AppointmentStatusUpdate(BaseSchema):
    status: AppointmentStatus
    cancellation_reason: Optional[str] = None

class RescheduleRequest(BaseSchema):
    appointment_date: date
    start_time: time
    dentist_id: Optional[int] = None

class DepositRequest(BaseSchema):
    amount: float = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.card
    payment_reference: Optional[str] = Field(None, max_length=100)

class AppointmentResponse(AppointmentBase):
    id: int
    status: AppointmentStatus
    deposit_paid: bool = False
    created_by_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    patient: Optional[PatientBrief] = None
    dentist: Optional[UserBrief] = None

    # Stored rows are already consistent; skip the create-time check on read
    @model_validator(mode='after')
    def check_times(self):
        return self

class ConflictReport(BaseSchema):
    has_conflict: bool
    conflicts: List[AppointmentResponse]

class TimeSlot(BaseSchema):
    start_time: time
    end_time: time

class AvailabilityResponse(BaseSchema):
    dentist_id: int
    date: date
    duration: int
    slots: List[TimeSlot]

class CalendarResponse(BaseSchema):
    view: Literal["day", "week", "month"]
    start_date: date
    end_date: date
    hours: List[int]
    days: List[date]
    appointments: List[AppointmentResponse]

class AppointmentSummary(BaseSchema):
    appointment: AppointmentResponse
    patient: Optional[PatientBrief] = None
    dentist: Optional[UserBrief] = None
    duration_minutes: int
    deposit_required: bool
    deposit_amount: Optional[float] = None
    deposit_paid: bool
    total_paid: float


# --- Lead Schemas ---
class LeadBase(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    practice_name: Optional[str] = Field(None, max_length=200)
    source: LeadSource = LeadSource.other
    status: LeadStatus = LeadStatus.new
    interest_level: InterestLevel = InterestLevel.medium
    treatment_interest: Optional[str] = Field(None, max_length=100)
    estimated_value: float = Field(0, ge=0)
    notes: Optional[str] = None
    assigned_to_id: Optional[int] = None
    practice_location_id: Optional[int] = None
    marketing_consent: bool = False

class LeadCreate(LeadBase):
    utm_source: Optional[str] = Field(None, max_length=100)
    utm_medium: Optional[str] = Field(None, max_length=100)
    utm_campaign: Optional[str] = Field(None, max_length=100)

class LeadUpdate(BaseSchema):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    status: Optional[LeadStatus] = None
    interest_level: Optional[InterestLevel] = None
    treatment_interest: Optional[str] = Field(None, max_length=100)
    estimated_value: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    assigned_to_id: Optional[int] = None
    marketing_consent: Optional[bool] = None

class LeadResponse(LeadCreate):
    id: int
    lead_number: str
    consent_withdrawn_at: Optional[datetime] = None
    converted_patient_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class LeadPage(BaseSchema):
    data: List[LeadResponse]
    page: int
    page_size: int
    total: int

class PipelineStage(BaseSchema):
    status: LeadStatus
    count: int
    value: float

class LeadPipeline(BaseSchema):
    stages: List[PipelineStage]
    total_leads: int
    total_value: float
    conversion_rate: float


# --- Payment Schemas ---
class PaymentCreate(BaseSchema):
    amount: float = Field(..., gt=0)
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.pending
    payment_date: Optional[date] = None
    description: Optional[str] = None
    patient_id: Optional[int] = None
    appointment_id: Optional[int] = None
    payment_reference: Optional[str] = Field(None, max_length=100)

class PaymentResponse(PaymentCreate):
    id: int
    processed_by_id: Optional[int] = None
    created_at: Optional[datetime] = None


# --- Membership Schemas ---
class MembershipPlanBase(BaseSchema):
    name: str = Field(..., min_length=1, max_length=100)
    tier: MembershipTier
    description: Optional[str] = None
    monthly_price: float = Field(..., gt=0)
    annual_price: Optional[float] = Field(None, gt=0)
    benefits: List[str] = Field(default_factory=list)
    is_active: bool = True

class MembershipPlanCreate(MembershipPlanBase):
    pass

class MembershipPlanUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    monthly_price: Optional[float] = Field(None, gt=0)
    annual_price: Optional[float] = Field(None, gt=0)
    benefits: Optional[List[str]] = None
    is_active: Optional[bool] = None

class MembershipPlanResponse(MembershipPlanBase):
    id: int

    @field_validator("benefits", mode="before")
    @classmethod
    def null_benefits(cls, v):
        return v or []

class MembershipApplicationCreate(BaseSchema):
    patient_id: Optional[int] = None
    applicant_name: str = Field(..., min_length=1, max_length=200)
    applicant_email: EmailStr
    applicant_phone: Optional[str] = Field(None, max_length=30)
    plan_id: int
    practice_location_id: Optional[int] = None
    billing_frequency: BillingFrequency = BillingFrequency.monthly
    notes: Optional[str] = None

class ApplicationStatusUpdate(BaseSchema):
    status: ApplicationStatus
    rejected_reason: Optional[str] = None

    @model_validator(mode='after')
    def reason_for_rejection(self):
        if self.status == ApplicationStatus.rejected and not (self.rejected_reason or "").strip():
            raise ValueError("rejected_reason is required when rejecting an application")
        return self

class MembershipApplicationResponse(MembershipApplicationCreate):
    id: int
    application_number: str
    status: ApplicationStatus
    processed_by_id: Optional[int] = None
    approved_date: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    membership_id: Optional[int] = None

    @model_validator(mode='before')
    @classmethod
    def attach_membership(cls, data):
        membership = getattr(data, "membership", None)
        if membership is not None:
            # ORM row: expose the linked membership id without loading it twice
            fields = {name: getattr(data, name, None) for name in cls.model_fields if name != "membership_id"}
            fields["membership_id"] = membership.id
            return fields
        return data

class FromApplicationRequest(BaseSchema):
    application_id: int

class MembershipStatusUpdate(BaseSchema):
    status: MembershipStatus

class MembershipResponse(BaseSchema):
    id: int
    membership_number: str
    application_id: Optional[int] = None
    patient_id: Optional[int] = None
    plan_id: int
    practice_location_id: Optional[int] = None
    status: MembershipStatus
    billing_frequency: BillingFrequency
    start_date: date
    end_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    monthly_amount: float
    created_at: Optional[datetime] = None
    plan: Optional[MembershipPlanResponse] = None

class MembershipPaymentCreate(BaseSchema):
    amount_paid: float = Field(..., gt=0)
    paid_date: Optional[date] = None

class MembershipPaymentResponse(MembershipPaymentCreate):
    id: int
    membership_id: int

class MembershipOverview(BaseSchema):
    total_applications: int
    active_memberships: int
    monthly_revenue: float
    conversion_rate: float

class TrendPoint(BaseSchema):
    date: date
    count: int


# --- UI Settings & Branding ---
class UiSettings(BaseSchema):
    model_config = ConfigDict(populate_by_name=True)

    public_footer_enabled: bool = Field(True, alias="publicFooterEnabled")
    public_footer_variant: Literal["full", "compact"] = Field("compact", alias="publicFooterVariant")
    internal_footer_enabled: bool = Field(True, alias="internalFooterEnabled")

class UiSettingsUpdate(BaseSchema):
    model_config = ConfigDict(populate_by_name=True)

    public_footer_enabled: Optional[bool] = Field(None, alias="publicFooterEnabled")
    public_footer_variant: Optional[Literal["full", "compact"]] = Field(None, alias="publicFooterVariant")
    internal_footer_enabled: Optional[bool] = Field(None, alias="internalFooterEnabled")

class UiFlags(BaseSchema):
    show_gdc_public_footer: bool
    show_compact_internal_footer: bool

class BrandingUpdate(BaseSchema):
    practice_name: Optional[str] = Field(None, min_length=1, max_length=120)
    logo_url: Optional[str] = Field(None, max_length=500)
    primary_color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    secondary_color_1: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    secondary_color_2: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    secondary_color_3: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    font_family: Optional[str] = Field(None, min_length=1, max_length=100)

    @field_validator("logo_url")
    @classmethod
    def http_url(cls, v):
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("logo_url must be an http(s) URL")
        return v

class BrandingResponse(BrandingUpdate):
    client_organization_id: int


# --- Public Schemas ---
class WaitlistRequest(BaseSchema):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    practice_name: Optional[str] = Field(None, max_length=200)
    practice_size: Optional[str] = Field(None, max_length=50)
    message: Optional[str] = Field(None, max_length=2000)
    marketing_consent: bool = False
    utm_source: Optional[str] = Field(None, max_length=100)
    utm_medium: Optional[str] = Field(None, max_length=100)
    utm_campaign: Optional[str] = Field(None, max_length=100)

class WaitlistResponse(BaseSchema):
    lead_number: str
    message: str

class TenantSignupRequest(BaseSchema):
    organization_name: str = Field(..., min_length=1, max_length=200)
    contact_name: Optional[str] = Field(None, max_length=200)
    contact_email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    user_count: int = Field(2, ge=1, le=500)
    subscription_tier: SubscriptionTier = SubscriptionTier.basic

class TenantSignupResponse(BaseSchema):
    id: int
    status: ClientStatus
    subscription_tier: SubscriptionTier
    quote: PricingQuote


# --- Admin Schemas ---
class AdminKpis(BaseSchema):
    total_clients: int
    active_clients: int
    total_users: int
    mrr: float

class ClientResponse(BaseSchema):
    id: int
    name: str
    contact_name: Optional[str] = None
    contact_email: str
    phone: Optional[str] = None
    status: ClientStatus
    subscription_tier: SubscriptionTier
    total_users: int
    installation_fee: float
    monthly_cost: float
    created_at: Optional[datetime] = None

class ClientStatusUpdate(BaseSchema):
    status: ClientStatus

class ModulePermissionsUpdate(BaseSchema):
    permissions: Dict[str, PermissionLevel]

class AuditLogResponse(BaseSchema):
    id: int
    user_id: Optional[int] = None
    user_email: Optional[str] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    risk_level: RiskLevel
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="event_metadata")
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

class SecurityRecommendation(BaseSchema):
    type: str
    priority: str
    message: str

class SuspiciousActivityReport(BaseSchema):
    failed_logins: int
    failed_logins_by_user: Dict[str, int]
    data_access_events: int
    unusual_access_users: List[str]
    recommendations: List[SecurityRecommendation]


# --- Stats & Health ---
class StatsResponse(BaseSchema):
    total_patients: int
    total_appointments: int
    total_leads: int
    total_revenue: Optional[float] = None

class HealthResponse(BaseSchema):
    status: str
    timestamp: datetime
    version: str
