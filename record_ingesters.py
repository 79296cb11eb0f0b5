"""
Clinic Ingestion Service — Clinical Record Ingesters
record_ingesters.py

One ingester per Remedii export. Each row goes
received -> normalized -> resolved -> upserted (inserted | updated),
or ends as failed / skipped. Row problems never escape the row loop, so
inserted + updated + failed + skipped always equals the number of rows.
"""
from __future__ import annotations
import logging
import re
from typing import Any, Mapping, Optional, Sequence

from entity_resolver import EntityResolver
from exceptions import RowNormalizationFailure, RowSkipped
from models import (
    ConsultationRecord, DailyDoctorSaleRecord, IngestionContext,
    IngestionResult, InvoiceRecord, ItemizedSaleRecord, PatientRecord,
    PrescriptionKind, PrescriptionRecord, RecordType, RowOutcome,
)
from normalizers import (
    clean_id_no, clean_text, normalize_phone_number, parse_calendar_date,
    parse_date, parse_decimal, parse_int, parse_time,
)
from repository import IngestionRepository

logger = logging.getLogger(__name__)

# Per-batch cap on stored row error messages
MAX_ROW_ERRORS = 50

# ============================================================
# Row Access
# ============================================================

class RowView:
    """Case-insensitive access to a header-keyed row through alias tuples."""

    def __init__(self, row: Mapping[str, Any]):
        self.raw = row
        self._by_upper = {str(k).upper().strip(): v for k, v in row.items()}

    def has(self, aliases: Sequence[str]) -> bool:
        return any(a.upper() in self._by_upper for a in aliases)

    def get(self, aliases: Sequence[str]) -> Optional[str]:
        """First non-blank value among the aliases, in alias order."""
        for alias in aliases:
            value = self._by_upper.get(alias.upper())
            if value is None:
                continue
            text = str(value).strip()
            if text:
                return text
        return None

    def text(self, aliases: Sequence[str]) -> Optional[str]:
        return clean_text(self.get(aliases))

    def amount(self, aliases: Sequence[str]) -> Optional[float]:
        """Blank cell -> 0.0; column absent -> None so it never clobbers."""
        if not self.has(aliases):
            return None
        return parse_decimal(self.get(aliases))

# ============================================================
# Base Ingester
# ============================================================

class RecordIngester:
    """Drives the row loop; subclasses implement ingest_row()."""

    record_type: RecordType = RecordType.UNKNOWN

    def __init__(self, repo: IngestionRepository, resolver: Optional[EntityResolver] = None):
        self.repo = repo
        self.resolver = resolver or EntityResolver(repo)

    async def ingest(self, rows: Sequence[Mapping[str, Any]],
                     context: Optional[IngestionContext] = None) -> IngestionResult:
        result = IngestionResult()
        await self.prepare(rows)

        for index, row in enumerate(rows, start=1):
            try:
                outcome = await self.ingest_row(RowView(row))
            except RowSkipped as e:
                outcome = RowOutcome.SKIPPED
                logger.debug("%s row %d skipped: %s", self.record_type.value, index, e)
            except RowNormalizationFailure as e:
                outcome = RowOutcome.FAILED
                self._note_error(result, index, str(e))
            except Exception as e:
                outcome = RowOutcome.FAILED
                logger.warning("%s row %d failed: %s", self.record_type.value, index, e)
                self._note_error(result, index, str(e))
            result.record(outcome)

        logger.info(
            "%s: %d inserted, %d updated, %d failed, %d skipped",
            self.record_type.value, result.inserted, result.updated,
            result.failed, result.skipped,
        )
        return result

    async def prepare(self, rows: Sequence[Mapping[str, Any]]) -> None:
        """Hook for header-level setup before the row loop."""
        return None

    async def ingest_row(self, row: RowView) -> RowOutcome:
        raise NotImplementedError

    @staticmethod
    def _note_error(result: IngestionResult, index: int, message: str) -> None:
        if len(result.errors) < MAX_ROW_ERRORS:
            result.errors.append(f"row {index}: {message}")

    @staticmethod
    def _outcome(inserted: bool) -> RowOutcome:
        return RowOutcome.INSERTED if inserted else RowOutcome.UPDATED

# ============================================================
# Patient Details
# ============================================================

PATIENT_FIELDS: dict[str, tuple[str, ...]] = {
    'phone_no': ('PHONE NO', 'PHONENO'),
    'name': ('NAME',),
    'mrn_no': ('MRN NO', 'MRNNO'),
    'id_no': ('ID NO', 'IDNO'),
    'id_type': ('ID TYPE',),
    'date_of_birth': ('DATE OF BIRTH', 'DOB'),
    'gender': ('GENDER',),
    'nationality': ('NATIONALITY',),
    'race': ('RACE',),
    'ethnicity': ('ETHNICITY',),
    'marital_status': ('MARITAL STATUS',),
    'address': ('ADDRESS',),
    'email': ('EMAIL',),
    'visit_total': ('VISIT TOTAL',),
    'first_visit_date': ('FIRST VISIT DATE',),
}


class PatientDetailsIngester(RecordIngester):
    record_type = RecordType.PATIENT_DETAILS

    async def ingest_row(self, row: RowView) -> RowOutcome:
        f = PATIENT_FIELDS
        phone_no = normalize_phone_number(row.get(f['phone_no']))
        if not phone_no:
            raise RowNormalizationFailure('missing PHONE NO')

        record = PatientRecord(
            phone_no=phone_no,
            name=row.text(f['name']),
            mrn_no=row.text(f['mrn_no']),
            id_no=clean_id_no(row.get(f['id_no'])),
            id_type=row.text(f['id_type']),
            date_of_birth=parse_calendar_date(row.get(f['date_of_birth'])),
            gender=row.text(f['gender']),
            nationality=row.text(f['nationality']),
            race=row.text(f['race']),
            ethnicity=row.text(f['ethnicity']),
            marital_status=row.text(f['marital_status']),
            address=row.text(f['address']),
            email=row.text(f['email']),
            visit_total=parse_int(row.get(f['visit_total'])),
            first_visit_date=parse_calendar_date(row.get(f['first_visit_date'])),
        )
        return self._outcome(await self.repo.upsert_patient(record))

# ============================================================
# Consultations
# ============================================================

CONSULTATION_FIELDS: dict[str, tuple[str, ...]] = {
    # The export puts the phone number in the IC column
    'patient_key': ("PATIENT'S ICNO", 'PATIENT ICNO', "PATIENT'S IC NO"),
    'patient_name': ("PATIENT'S NAME", 'PATIENT NAME'),
    'patient_mrn': ("PATIENT'S MRN NO", 'MRN NO'),
    'doctor': ("DOCTOR'S NAME", 'DOCTOR NAME'),
    'visit_date': ('DATE',),
    'visit_time': ('TIME',),
    'start_treatment_date': ('START TREATMENT DATE',),
    'start_treatment_time': ('START TREATMENT TIME',),
    'end_treatment_date': ('END TREATMENT DATE',),
    'end_treatment_time': ('END TREATMENT TIME',),
    'end_pharmacy_date': ('END PHARMACY DATE',),
    'end_pharmacy_time': ('END PHARMACY TIME',),
    'end_payment_date': ('END PAYMENT DATE',),
    'end_payment_time': ('END PAYMENT TIME',),
    'diagnosis': ('DIAGNOSIS',),
    'prescription': ('PRESCRIPTION',),
    'procedures': ('PROCEDURES',),
    'disposables': ('DISPOSABLES',),
    'imagings': ('IMAGINGS',),
    'generals': ('GENERALS',),
    'lab_tests': ('LABTESTS', 'LAB TESTS'),
    'packages': ('PACKAGES',),
    'total_payment': ('TOTAL PAYMENT', 'TOTALPAYMENT'),
}


class ConsultationIngester(RecordIngester):
    record_type = RecordType.CONSULTATION

    async def ingest_row(self, row: RowView) -> RowOutcome:
        f = CONSULTATION_FIELDS
        id_no = clean_id_no(row.get(f['patient_key']))
        phone_no = normalize_phone_number(id_no)
        if not phone_no:
            raise RowNormalizationFailure("missing PATIENT'S ICNO")

        doctor = row.get(f['doctor'])
        if not doctor:
            raise RowNormalizationFailure("missing DOCTOR'S NAME")

        visit_date = parse_calendar_date(row.get(f['visit_date']))
        if visit_date is None:
            raise RowNormalizationFailure('missing or invalid DATE')

        patient_id = await self.resolver.find_or_create_patient(
            phone_no,
            name=row.text(f['patient_name']),
            mrn=row.text(f['patient_mrn']),
            id_no=id_no,
        )
        doctor_id = await self.resolver.find_or_create_doctor(doctor)

        record = ConsultationRecord(
            patient_id=patient_id,
            doctor_id=doctor_id,
            visit_date=visit_date,
            visit_time=parse_time(row.get(f['visit_time'])),
            start_treatment_date=parse_calendar_date(row.get(f['start_treatment_date'])),
            start_treatment_time=parse_time(row.get(f['start_treatment_time'])),
            end_treatment_date=parse_calendar_date(row.get(f['end_treatment_date'])),
            end_treatment_time=parse_time(row.get(f['end_treatment_time'])),
            end_pharmacy_date=parse_calendar_date(row.get(f['end_pharmacy_date'])),
            end_pharmacy_time=parse_time(row.get(f['end_pharmacy_time'])),
            end_payment_date=parse_calendar_date(row.get(f['end_payment_date'])),
            end_payment_time=parse_time(row.get(f['end_payment_time'])),
            diagnosis=row.text(f['diagnosis']),
            prescription=row.text(f['prescription']),
            procedures=row.text(f['procedures']),
            disposables=row.text(f['disposables']),
            imagings=row.text(f['imagings']),
            generals=row.text(f['generals']),
            lab_tests=row.text(f['lab_tests']),
            packages=row.text(f['packages']),
            total_payment=row.amount(f['total_payment']),
        )
        return self._outcome(await self.repo.upsert_consultation(record))

# ============================================================
# Procedure / Medicine Prescriptions
# ============================================================

PRESCRIPTION_FIELDS: dict[str, tuple[str, ...]] = {
    'date': ('DATE',),
    'id_no': ('IC/PASSPORT', 'IC PASSPORT'),
    'mrn_no': ('MRN NO', 'MRNNO'),
    'name': ('NAME', 'PATIENT NAME'),
    'doctor': ('PRESCRIBING DOCTOR', 'PRESCRIBINGDOCTOR'),
    'code': ('CODE',),
    'dispensing_staff': ('DISPENSING STAFF',),
    'diagnosis': ('DIAGNOSIS',),
    'quantity': ('QUANTITY', 'QTY'),
}

# Shorter IC/passport values are export noise, not identities
MIN_ID_LENGTH = 8
OVER_THE_COUNTER = 'OTC'


class PrescriptionIngester(RecordIngester):
    kind: PrescriptionKind = PrescriptionKind.PROCEDURE
    item_aliases: tuple[str, ...] = ('PROCEDURE',)

    async def ingest_row(self, row: RowView) -> RowOutcome:
        f = PRESCRIPTION_FIELDS
        item_name = row.text(self.item_aliases)
        raw_date = row.get(f['date'])
        if not item_name or not raw_date:
            raise RowSkipped(f"no {self.item_aliases[0]} or DATE")

        patient_id = await self._resolve_patient(row)
        if patient_id is None:
            raise RowNormalizationFailure('no patient: MRN unknown and IC/PASSPORT unusable')

        doctor = row.get(f['doctor'])
        if not doctor or doctor.upper() == OVER_THE_COUNTER:
            raise RowSkipped('over-the-counter or no prescribing doctor')
        doctor_id = await self.resolver.find_or_create_doctor(doctor)

        prescription_date = parse_calendar_date(raw_date)
        if prescription_date is None:
            raise RowNormalizationFailure(f"invalid DATE {raw_date!r}")

        record = PrescriptionRecord(
            kind=self.kind,
            patient_id=patient_id,
            prescribing_doctor_id=doctor_id,
            prescription_date=prescription_date,
            item_code=row.get(f['code']) or '',
            item_name=item_name,
            dispensing_staff=row.text(f['dispensing_staff']),
            diagnosis=row.text(f['diagnosis']),
            quantity=row.text(f['quantity']),
        )
        return self._outcome(await self.repo.upsert_prescription(record))

    async def _resolve_patient(self, row: RowView) -> Optional[int]:
        f = PRESCRIPTION_FIELDS
        mrn_no = row.text(f['mrn_no'])
        if mrn_no:
            patient_id = await self.resolver.find_patient_by_mrn(mrn_no)
            if patient_id is not None:
                return patient_id

        id_no = clean_id_no(row.get(f['id_no']))
        if id_no and len(id_no) >= MIN_ID_LENGTH:
            key = normalize_phone_number(id_no)
            if key:
                return await self.resolver.find_or_create_patient(
                    key, name=row.text(f['name']), mrn=mrn_no, id_no=id_no,
                )
        return None


class ProcedurePrescriptionIngester(PrescriptionIngester):
    record_type = RecordType.PROCEDURE_PRESCRIPTION
    kind = PrescriptionKind.PROCEDURE
    item_aliases = ('PROCEDURE', 'PROCEDURE NAME')


class MedicinePrescriptionIngester(PrescriptionIngester):
    record_type = RecordType.MEDICINE_PRESCRIPTION
    kind = PrescriptionKind.MEDICINE
    item_aliases = ('MEDICINE', 'MEDICINE NAME')

# ============================================================
# Invoices
# ============================================================

INVOICE_FIELDS: dict[str, tuple[str, ...]] = {
    'invoice_code': ('INVOICE/RECEIPT CODE', 'INVOICE RECEIPT CODE'),
    'invoice_date': ('INVOICE DATE', 'INVOICEDATE'),
    'phone_no': ('PATIENT PHONE NO', 'PATIENTPHONENO'),
    'doctor': ('DOCTOR',),
    'ref_no': ('REF NO',),
    'invoice_total': ('INVOICE/RECEIPT TOTAL', 'INVOICE RECEIPT TOTAL'),
    'payment_method': ('PAYMENT METHOD',),
    'tpa_panel_name': ('TPA/PANEL NAME', 'TPA PANEL NAME'),
    'employee_policy_details': ('EMPLOYEE/POLICY DETAILS', 'EMPLOYEE POLICY DETAILS'),
    'remark': ('REMARK', 'REMARKS'),
}

MIN_PHONE_LENGTH = 8


class InvoiceIngester(RecordIngester):
    record_type = RecordType.INVOICE

    async def ingest_row(self, row: RowView) -> RowOutcome:
        f = INVOICE_FIELDS
        invoice_code = row.get(f['invoice_code'])
        if not invoice_code:
            raise RowNormalizationFailure('missing INVOICE/RECEIPT CODE')

        invoice_date = parse_date(row.get(f['invoice_date']))
        if invoice_date is None:
            raise RowNormalizationFailure('missing or invalid INVOICE DATE')

        patient_id = None
        phone_no = normalize_phone_number(clean_id_no(row.get(f['phone_no'])))
        if phone_no and len(phone_no) >= MIN_PHONE_LENGTH:
            patient_id = await self.resolver.find_or_create_patient(phone_no)

        doctor_id = None
        doctor = row.get(f['doctor'])
        if doctor:
            doctor_id = await self.resolver.find_or_create_doctor(doctor)

        record = InvoiceRecord(
            invoice_code=invoice_code,
            invoice_date=invoice_date,
            patient_id=patient_id,
            doctor_id=doctor_id,
            receipt_code=invoice_code,
            ref_no=row.text(f['ref_no']),
            invoice_total=row.amount(f['invoice_total']),
            payment_method=row.text(f['payment_method']),
            tpa_panel_name=row.text(f['tpa_panel_name']),
            employee_policy_details=row.text(f['employee_policy_details']),
            remark=row.text(f['remark']),
        )
        return self._outcome(await self.repo.upsert_invoice(record))

# ============================================================
# Itemized Sales
# ============================================================

ITEMIZED_SALES_FIELDS: dict[str, tuple[str, ...]] = {
    # 'INCOIVE' and 'VIST' are how Remedii spells them
    'invoice_code': ('INCOIVE CODE', 'INVOICE CODE'),
    'visit_date': ('VIST DATE', 'VISIT DATE'),
    'visit_time': ('VISIT TIME', 'VIST TIME'),
    'doctor': ('DOCTOR',),
    'receipt_code': ('RECEIPT CODE',),
    'consultation_amount': ('CONS',),
    'medicine_amount': ('MED',),
    'procedure_amount': ('PROC',),
    'dispensing_amount': ('DISP',),
    'lab_amount': ('LAB',),
    'imaging_amount': ('IMG',),
    'general_amount': ('GEN',),
    'package_amount': ('PACKAGE',),
    'discount_amount': ('DISCOUNT',),
    'tax_amount': ('TAX',),
    'total_amount': ('TOTAL',),
    'payment_status': ('PAYMENT STATUS',),
    'paid_at': ('PAID AT',),
}

_AMOUNT_FIELDS = (
    'consultation_amount', 'medicine_amount', 'procedure_amount',
    'dispensing_amount', 'lab_amount', 'imaging_amount', 'general_amount',
    'package_amount', 'discount_amount', 'tax_amount', 'total_amount',
)


class ItemizedSalesIngester(RecordIngester):
    record_type = RecordType.ITEMIZED_SALES

    async def ingest_row(self, row: RowView) -> RowOutcome:
        f = ITEMIZED_SALES_FIELDS
        invoice_code = row.get(f['invoice_code'])
        visit_date = parse_calendar_date(row.get(f['visit_date']))
        doctor = row.get(f['doctor'])
        if not invoice_code or visit_date is None or not doctor:
            raise RowNormalizationFailure('missing INVOICE CODE, VISIT DATE or DOCTOR')

        # Patient comes from an invoice ingested earlier, if any
        patient_id = await self.repo.find_patient_by_invoice(invoice_code)
        doctor_id = await self.resolver.find_or_create_doctor(doctor)

        record = ItemizedSaleRecord(
            invoice_code=invoice_code,
            visit_date=visit_date,
            doctor_id=doctor_id,
            patient_id=patient_id,
            visit_time=parse_time(row.get(f['visit_time'])),
            receipt_code=row.text(f['receipt_code']),
            payment_status=row.text(f['payment_status']),
            paid_at=parse_date(row.get(f['paid_at'])),
            **{name: row.amount(f[name]) for name in _AMOUNT_FIELDS},
        )
        return self._outcome(await self.repo.upsert_itemized_sale(record))

# ============================================================
# Daily Doctor Sales
# ============================================================

DAILY_SALES_DATE = ('DATE',)
TOTAL_ROW_MARKER = 'TOTAL'

_VISIT_NO = re.compile(r'\s*\(?\s*VISIT NO\s*\)?\s*$', re.IGNORECASE)


def discover_doctor_columns(headers: Sequence[str]) -> list[tuple[str, str, str]]:
    """[(doctor label, visit column, sales column)] from '... (VISIT NO)' headers."""
    columns = []
    for header in headers:
        if 'VISIT NO' not in str(header).upper():
            continue
        label = _VISIT_NO.sub('', str(header)).strip()
        if not label:
            continue
        sales = re.sub('VISIT NO', 'TOTAL SALES', str(header), flags=re.IGNORECASE)
        columns.append((label, str(header), sales))
    return columns


class DailyDoctorSalesIngester(RecordIngester):
    """
    A row is one date; each doctor is a pair of dynamic columns. The row is
    counted once: inserted if any doctor cell was new, otherwise updated if
    any was merged, otherwise skipped.
    """
    record_type = RecordType.DAILY_DOCTOR_SALES

    def __init__(self, repo: IngestionRepository, resolver: Optional[EntityResolver] = None):
        super().__init__(repo, resolver)
        self.doctor_columns: list[tuple[str, str, str]] = []

    async def prepare(self, rows):
        headers: list[str] = []
        for row in rows[:1]:
            headers = list(row.keys())
        self.doctor_columns = discover_doctor_columns(headers)
        logger.debug("Daily sales doctor columns: %s", [c[0] for c in self.doctor_columns])

    async def ingest_row(self, row: RowView) -> RowOutcome:
        raw_date = row.get(DAILY_SALES_DATE)
        if not raw_date or raw_date.upper() == TOTAL_ROW_MARKER:
            raise RowSkipped('blank or TOTAL date row')
        sale_date = parse_calendar_date(raw_date)
        if sale_date is None:
            raise RowSkipped(f"unparseable DATE {raw_date!r}")

        any_inserted = any_updated = False
        for label, visit_col, sales_col in self.doctor_columns:
            visit_count = parse_int(row.get((visit_col,))) or 0
            total_sales = parse_decimal(row.get((sales_col,)))
            if visit_count <= 0 and total_sales <= 0:
                continue

            doctor_id = await self.resolver.find_or_create_doctor(label)
            inserted = await self.repo.upsert_daily_doctor_sale(DailyDoctorSaleRecord(
                sale_date=sale_date, doctor_id=doctor_id,
                visit_count=visit_count, total_sales=total_sales,
            ))
            if inserted:
                any_inserted = True
            else:
                any_updated = True

        if any_inserted:
            return RowOutcome.INSERTED
        if any_updated:
            return RowOutcome.UPDATED
        raise RowSkipped('no doctor activity')

# ============================================================
# Registry
# ============================================================

CLINICAL_INGESTERS: dict[RecordType, type[RecordIngester]] = {
    RecordType.PATIENT_DETAILS: PatientDetailsIngester,
    RecordType.CONSULTATION: ConsultationIngester,
    RecordType.PROCEDURE_PRESCRIPTION: ProcedurePrescriptionIngester,
    RecordType.MEDICINE_PRESCRIPTION: MedicinePrescriptionIngester,
    RecordType.INVOICE: InvoiceIngester,
    RecordType.ITEMIZED_SALES: ItemizedSalesIngester,
    RecordType.DAILY_DOCTOR_SALES: DailyDoctorSalesIngester,
}
