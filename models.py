"""
Clinic Ingestion Service — Core Pydantic Models
models.py
"""
from __future__ import annotations
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, computed_field

# ============================================================
# Enums
# ============================================================

class RecordType(str, Enum):
    PATIENT_DETAILS = "patient_details"
    CONSULTATION = "consultation"
    PROCEDURE_PRESCRIPTION = "procedure_prescription"
    MEDICINE_PRESCRIPTION = "medicine_prescription"
    ITEMIZED_SALES = "itemized_sales"
    INVOICE = "invoice"
    DAILY_DOCTOR_SALES = "daily_doctor_sales"
    # Lead exports keep the tags the dashboard already stores
    LEADS_STRUCTURED = "leads_tiktok_beg_biru"
    LEADS_MINIMAL = "leads_wsapme"
    LEADS_POSITIONAL = "leads_device_export"
    UNKNOWN = "unknown"

    @property
    def is_lead(self) -> bool:
        return self in LEAD_TYPES

    @property
    def is_clinical(self) -> bool:
        return self not in LEAD_TYPES and self is not RecordType.UNKNOWN


LEAD_TYPES = frozenset({
    RecordType.LEADS_STRUCTURED,
    RecordType.LEADS_MINIMAL,
    RecordType.LEADS_POSITIONAL,
})


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class UploadStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UploadStatus.SUCCESS, UploadStatus.FAILED)


class RowOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    FAILED = "failed"
    SKIPPED = "skipped"

# ============================================================
# Classification
# ============================================================

class DetectedFile(BaseModel):
    type: RecordType
    table_name: str
    display_name: str
    file_name: str = ""
    confidence: Confidence

# ============================================================
# Ingestion Results
# ============================================================

class IngestionContext(BaseModel):
    upload_id: Optional[int] = None
    tag_ids: list[int] = Field(default_factory=list)
    source_ids: list[int] = Field(default_factory=list)


class IngestionResult(BaseModel):
    """Per-batch outcome counts. Every offered row lands in exactly one bucket."""
    inserted: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.failed + self.skipped

    def record(self, outcome: RowOutcome, count: int = 1) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + count)

    def merge(self, other: IngestionResult) -> None:
        self.inserted += other.inserted
        self.updated += other.updated
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

# ============================================================
# Upload Record
# ============================================================

class UploadRecord(BaseModel):
    upload_id: int
    file_name: str
    table_name: str = "unknown"
    record_type: Optional[RecordType] = None
    upload_status: UploadStatus = UploadStatus.QUEUED
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    csv_date: Optional[datetime] = None
    uploaded_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class UploadOutcome(BaseModel):
    """What the caller of the orchestrator sees for one file."""
    file_name: str
    success: bool
    upload_id: Optional[int] = None
    record_type: Optional[RecordType] = None
    display_name: Optional[str] = None
    table_name: Optional[str] = None
    status: UploadStatus
    result: Optional[IngestionResult] = None
    csv_date: Optional[datetime] = None
    error: Optional[str] = None


class IngestionReportEntry(BaseModel):
    """Latest upload for one record type, as shown on the ingestion report."""
    record_type: RecordType
    display_name: str
    table_name: str
    has_data: bool = False
    in_progress: bool = False
    upload: Optional[UploadRecord] = None

# ============================================================
# Normalized Row Records (one per ingester)
# ============================================================

class PatientRecord(BaseModel):
    phone_no: str
    name: Optional[str] = None
    mrn_no: Optional[str] = None
    id_no: Optional[str] = None
    id_type: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    nationality: Optional[str] = None
    race: Optional[str] = None
    ethnicity: Optional[str] = None
    marital_status: Optional[str] = None
    address: Optional[str] = None
    email: Optional[str] = None
    visit_total: Optional[int] = None
    first_visit_date: Optional[date] = None


class ConsultationRecord(BaseModel):
    patient_id: int
    doctor_id: int
    visit_date: date
    visit_time: Optional[str] = None
    start_treatment_date: Optional[date] = None
    start_treatment_time: Optional[str] = None
    end_treatment_date: Optional[date] = None
    end_treatment_time: Optional[str] = None
    end_pharmacy_date: Optional[date] = None
    end_pharmacy_time: Optional[str] = None
    end_payment_date: Optional[date] = None
    end_payment_time: Optional[str] = None
    diagnosis: Optional[str] = None
    prescription: Optional[str] = None
    procedures: Optional[str] = None
    disposables: Optional[str] = None
    imagings: Optional[str] = None
    generals: Optional[str] = None
    lab_tests: Optional[str] = None
    packages: Optional[str] = None
    total_payment: Optional[float] = None


class PrescriptionKind(str, Enum):
    PROCEDURE = "procedure"
    MEDICINE = "medicine"


class PrescriptionRecord(BaseModel):
    kind: PrescriptionKind
    patient_id: int
    prescribing_doctor_id: int
    prescription_date: date
    item_code: str = ""
    item_name: Optional[str] = None
    dispensing_staff: Optional[str] = None
    diagnosis: Optional[str] = None
    quantity: Optional[str] = None


class InvoiceRecord(BaseModel):
    invoice_code: str
    invoice_date: datetime
    patient_id: Optional[int] = None
    doctor_id: Optional[int] = None
    receipt_code: Optional[str] = None
    ref_no: Optional[str] = None
    invoice_total: Optional[float] = None
    payment_method: Optional[str] = None
    tpa_panel_name: Optional[str] = None
    employee_policy_details: Optional[str] = None
    remark: Optional[str] = None


class ItemizedSaleRecord(BaseModel):
    invoice_code: str
    visit_date: date
    doctor_id: int
    patient_id: Optional[int] = None
    visit_time: Optional[str] = None
    receipt_code: Optional[str] = None
    consultation_amount: Optional[float] = None
    medicine_amount: Optional[float] = None
    procedure_amount: Optional[float] = None
    dispensing_amount: Optional[float] = None
    lab_amount: Optional[float] = None
    imaging_amount: Optional[float] = None
    general_amount: Optional[float] = None
    package_amount: Optional[float] = None
    discount_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    total_amount: Optional[float] = None
    payment_status: Optional[str] = None
    paid_at: Optional[datetime] = None


class DailyDoctorSaleRecord(BaseModel):
    sale_date: date
    doctor_id: int
    visit_count: int = 0
    total_sales: float = 0.0


class LeadRecord(BaseModel):
    phone_number: str
    name: Optional[str] = None
    lead_external_id: Optional[str] = None
    username: Optional[str] = None
    province_state: Optional[str] = None
    gender: Optional[str] = None
    received_date: Optional[date] = None
    received_time: Optional[str] = None
    status: Optional[str] = None
    source_traffic: Optional[str] = None
    source_action: Optional[str] = None
    source_scenario: Optional[str] = None

    def coalesce(self, newer: LeadRecord) -> LeadRecord:
        """Fold a later occurrence of the same lead onto this one."""
        merged = self.model_dump()
        for key, value in newer.model_dump().items():
            if value is not None:
                merged[key] = value
        return LeadRecord(**merged)

# ============================================================
# Lead Sources & Tags
# ============================================================

class LeadSource(BaseModel):
    source_id: int
    source_name: str
    created_at: Optional[datetime] = None


class LeadTag(BaseModel):
    tag_id: int
    tag_name: str
    created_at: Optional[datetime] = None
