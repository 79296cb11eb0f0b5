"""
Clinic Ingestion Service — Schema Classifier
file_detector.py

Decides which export a tabular file is, from its header row (preferred)
or its filename (fallback). Remedii exports are inconsistent about
apostrophes, spaces and even spelling ('INCOIVE CODE', 'VIST DATE'), so
every token is matched against a small set of known variants.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from models import Confidence, DetectedFile, RecordType
from normalizers import parse_date, parse_lead_date, CLINIC_TZ

logger = logging.getLogger(__name__)

# ============================================================
# Record Type Catalogue
# ============================================================

# type -> (table_name, display_name)
RECORD_TYPE_CATALOGUE: dict[RecordType, tuple[str, str]] = {
    RecordType.PATIENT_DETAILS: ('patients', 'Patient Details'),
    RecordType.CONSULTATION: ('consultations', 'Consultation Report'),
    RecordType.PROCEDURE_PRESCRIPTION: ('procedure_prescriptions', 'Procedure Prescriptions'),
    RecordType.MEDICINE_PRESCRIPTION: ('medicine_prescriptions', 'Medicine Prescriptions'),
    RecordType.ITEMIZED_SALES: ('itemized_sales', 'Itemized Sales'),
    RecordType.INVOICE: ('invoices', 'Invoices'),
    RecordType.DAILY_DOCTOR_SALES: ('daily_doctor_sales', 'Sales Report'),
    RecordType.LEADS_STRUCTURED: ('leads_tiktok_beg_biru', 'Leads - TikTok Beg Biru'),
    RecordType.LEADS_MINIMAL: ('leads_wsapme', 'Leads - Wsapme'),
    RecordType.LEADS_POSITIONAL: ('leads_device_export', 'Leads - Device Export'),
}

UNKNOWN_TABLE = 'unknown'
UNKNOWN_DISPLAY_NAME = 'Unknown File Type'


def detected(record_type: RecordType, file_name: str = '',
             confidence: Confidence = Confidence.HIGH) -> DetectedFile:
    if record_type is RecordType.UNKNOWN:
        return DetectedFile(
            type=RecordType.UNKNOWN, table_name=UNKNOWN_TABLE,
            display_name=UNKNOWN_DISPLAY_NAME, file_name=file_name,
            confidence=Confidence.LOW,
        )
    table_name, display_name = RECORD_TYPE_CATALOGUE[record_type]
    return DetectedFile(
        type=record_type, table_name=table_name, display_name=display_name,
        file_name=file_name, confidence=confidence,
    )


def record_types() -> list[DetectedFile]:
    """Every known record type with its table hint and display name."""
    return [detected(rt) for rt in RECORD_TYPE_CATALOGUE]

# ============================================================
# Header Signature
# ============================================================

@dataclass(frozen=True)
class HeaderSignature:
    """Upper-cased, trimmed view of a header row."""
    headers: tuple[str, ...]
    joined: str

    @classmethod
    def of(cls, headers: Iterable[Any]) -> HeaderSignature:
        upper = tuple(str(h).upper().strip() for h in headers if h is not None)
        return cls(upper, ' '.join(upper))

    def has(self, *variants: str) -> bool:
        """Any variant present as a whole header."""
        return any(v in self.headers for v in variants)

    def mentions(self, *variants: str) -> bool:
        """Any variant present anywhere in the joined header row."""
        return any(v in self.joined for v in variants)

    def any_header_contains(self, fragment: str) -> bool:
        return any(fragment in h for h in self.headers)


def _is_patient_details(s: HeaderSignature) -> bool:
    return (
        s.has('NAME')
        and s.has('ID NO', 'IDNO')
        and s.has('MRN NO', 'MRNNO')
        and s.has('PHONE NO', 'PHONENO')
        and s.has('FIRST VISIT DATE', 'VISIT TOTAL')
    )


def _is_consultation(s: HeaderSignature) -> bool:
    return (
        s.mentions("DOCTOR'S NAME", 'DOCTOR NAME')
        and s.mentions("PATIENT'S NAME", 'PATIENT NAME')
        and s.mentions("PATIENT'S ICNO", "PATIENT'S MRN NO")
        and s.has('DIAGNOSIS')
        and s.has('TOTAL PAYMENT', 'TOTALPAYMENT')
    )


def _is_prescription(item_header: str) -> Callable[[HeaderSignature], bool]:
    def check(s: HeaderSignature) -> bool:
        return (
            s.has('IC/PASSPORT', 'IC PASSPORT')
            and s.has('MRN NO', 'MRNNO')
            and s.has('PRESCRIBING DOCTOR', 'PRESCRIBINGDOCTOR')
            and s.has(item_header)
            and s.has('CODE')
        )
    return check


def _is_itemized_sales(s: HeaderSignature) -> bool:
    return (
        s.has('VIST DATE', 'VISIT DATE')
        and s.has('INCOIVE CODE', 'INVOICE CODE')
        and s.has('RECEIPT CODE')
        and s.has('DOCTOR')
        and s.has('CONS', 'MED', 'PROC')
        and s.has('TOTAL')
    )


def _is_invoice(s: HeaderSignature) -> bool:
    return (
        s.has('INVOICE DATE', 'INVOICEDATE')
        and s.has('PATIENT NAME', 'PATIENTNAME')
        and s.has('PATIENT IC NO', 'PATIENTICNO')
        and s.has('PATIENT PHONE NO', 'PATIENTPHONENO')
        and s.mentions('INVOICE/RECEIPT CODE', 'INVOICE RECEIPT CODE')
        and s.mentions('INVOICE/RECEIPT TOTAL', 'INVOICE RECEIPT TOTAL')
    )


def _is_daily_doctor_sales(s: HeaderSignature) -> bool:
    # Doctor columns are dynamic: 'DR. TAN (VISIT NO)', 'DR. TAN (TOTAL SALES)'
    return (
        s.has('DATE')
        and s.any_header_contains('VISIT NO')
        and s.any_header_contains('TOTAL SALES')
    )


def _is_structured_leads(s: HeaderSignature) -> bool:
    return (
        s.has('LEAD ID')
        and s.has('USERNAME')
        and s.has('RECEIVED DATE', 'RECEIVEDDATE')
        and s.has('PHONE NUMBER', 'PHONENUMBER')
        and s.has('NAME')
    )


def _is_minimal_leads(s: HeaderSignature) -> bool:
    return (
        s.has('PHONE', 'PHONENUMBER', 'PHONE NUMBER')
        and s.has('NAME')
        and not s.has('LEAD ID')
    )


# Evaluated top to bottom; first match wins.
CONTENT_RULES: list[tuple[RecordType, Callable[[HeaderSignature], bool], Confidence]] = [
    (RecordType.PATIENT_DETAILS, _is_patient_details, Confidence.HIGH),
    (RecordType.CONSULTATION, _is_consultation, Confidence.HIGH),
    (RecordType.PROCEDURE_PRESCRIPTION, _is_prescription('PROCEDURE'), Confidence.HIGH),
    (RecordType.MEDICINE_PRESCRIPTION, _is_prescription('MEDICINE'), Confidence.HIGH),
    (RecordType.ITEMIZED_SALES, _is_itemized_sales, Confidence.HIGH),
    (RecordType.INVOICE, _is_invoice, Confidence.HIGH),
    (RecordType.DAILY_DOCTOR_SALES, _is_daily_doctor_sales, Confidence.HIGH),
    (RecordType.LEADS_STRUCTURED, _is_structured_leads, Confidence.HIGH),
    # phone + name is a weak signal
    (RecordType.LEADS_MINIMAL, _is_minimal_leads, Confidence.MEDIUM),
]

# ============================================================
# Filename Fallback
# ============================================================

DEVICE_EXPORT_PREFIX = 'DEVICE_'

FILENAME_RULES: list[tuple[RecordType, Callable[[str], bool]]] = [
    (RecordType.PATIENT_DETAILS,
     lambda fn: 'PATIENT DETAILS REPORT' in fn),
    (RecordType.CONSULTATION,
     lambda fn: 'DOCTOR INSIGHTS REPORT' in fn and 'CONSULTATION' in fn),
    (RecordType.DAILY_DOCTOR_SALES,
     lambda fn: 'DOCTOR INSIGHTS REPORT' in fn and 'SALES' in fn and 'ITEMISE' not in fn),
    (RecordType.PROCEDURE_PRESCRIPTION,
     lambda fn: 'PRESCRIPTION REPORT' in fn and 'PROCEDURE' in fn),
    (RecordType.MEDICINE_PRESCRIPTION,
     lambda fn: 'PRESCRIPTION REPORT' in fn and 'MEDICINE' in fn),
    (RecordType.ITEMIZED_SALES,
     lambda fn: 'ITEMISE SALES REPORT' in fn or 'ITEMIZED SALES' in fn),
    (RecordType.INVOICE,
     lambda fn: 'SALES' in fn and 'REPORT' in fn and 'INVOICE' in fn),
    (RecordType.LEADS_POSITIONAL,
     lambda fn: fn.startswith(DEVICE_EXPORT_PREFIX)),
]


def is_positional_export(file_name: str) -> bool:
    """Device exports have no header row; they must be routed before header parsing."""
    return (file_name or '').upper().startswith(DEVICE_EXPORT_PREFIX)

# ============================================================
# Classification
# ============================================================

def classify_by_content(headers: Optional[Sequence[Any]]) -> Optional[DetectedFile]:
    if not headers:
        return None
    signature = HeaderSignature.of(headers)
    for record_type, matches, confidence in CONTENT_RULES:
        if matches(signature):
            return detected(record_type, confidence=confidence)
    return None


def classify_by_filename(file_name: str) -> Optional[DetectedFile]:
    fn = (file_name or '').upper()
    for record_type, matches in FILENAME_RULES:
        if matches(fn):
            return detected(record_type, file_name, Confidence.MEDIUM)
    return None


def classify(file_name: str, headers: Optional[Sequence[Any]] = None) -> DetectedFile:
    """Classify a file; headers win over the filename. Never raises."""
    by_content = classify_by_content(headers)
    if by_content:
        by_content.file_name = file_name
        return by_content

    by_name = classify_by_filename(file_name)
    if by_name:
        logger.info("Classified %s by filename as %s", file_name, by_name.type.value)
        return by_name

    logger.warning("Could not classify %s (headers=%s)", file_name, list(headers or [])[:12])
    return detected(RecordType.UNKNOWN, file_name)

# ============================================================
# Representative Date
# ============================================================

REPRESENTATIVE_DATE_COLUMNS: dict[RecordType, tuple[str, ...]] = {
    RecordType.PATIENT_DETAILS: ('FIRST VISIT DATE', 'first_visit_date'),
    RecordType.CONSULTATION: ('DATE', 'date'),
    RecordType.PROCEDURE_PRESCRIPTION: ('DATE', 'date'),
    RecordType.MEDICINE_PRESCRIPTION: ('DATE', 'date'),
    RecordType.ITEMIZED_SALES: ('VIST DATE', 'VISIT DATE', 'visit_date'),
    RecordType.INVOICE: ('INVOICE DATE', 'invoice_date'),
    RecordType.DAILY_DOCTOR_SALES: ('DATE', 'date'),
    RecordType.LEADS_STRUCTURED: ('Received date', 'RECEIVED DATE', 'received date'),
}


def extract_representative_date(
    record_type: RecordType, rows: Sequence[Mapping[str, Any]],
) -> Optional[datetime]:
    """Date of the first row, for display on the upload record only."""
    columns = REPRESENTATIVE_DATE_COLUMNS.get(record_type)
    if not columns or not rows or not isinstance(rows[0], Mapping):
        return None

    first = rows[0]
    raw = next((first[c] for c in columns if first.get(c)), None)
    if raw is None:
        return None

    if record_type.is_lead:
        lead_date = parse_lead_date(raw)
        if lead_date is None:
            return None
        return datetime(lead_date.year, lead_date.month, lead_date.day, tzinfo=CLINIC_TZ)
    return parse_date(raw)
