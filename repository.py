"""
Clinic Ingestion Service — Storage Interface
repository.py

IngestionRepository is the only seam between the pipeline and the store.
Production uses AsyncPGIngestionRepository (asyncpg_repository.py); tests
and local runs use InMemoryRepository, which mirrors the SQL semantics:
atomic find-or-create, COALESCE merges on conflict, transactional lead
chunks that roll back as a unit.
"""
from __future__ import annotations
import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from exceptions import StorageError
from models import (
    ConsultationRecord, DailyDoctorSaleRecord, InvoiceRecord,
    ItemizedSaleRecord, LeadRecord, LeadSource, LeadTag, PatientRecord,
    PrescriptionKind, PrescriptionRecord, UploadRecord,
)

logger = logging.getLogger(__name__)

# ============================================================
# Interfaces
# ============================================================

class LeadBatch:
    """Storage operations available inside one transactional lead chunk."""

    async def leads_by_external_id(self, external_ids: list[str],
                                   source_id: int) -> dict[str, int]:
        """external id -> lead_id, for leads already assigned to source_id."""
        raise NotImplementedError

    async def leads_by_phone(self, phones: list[str]) -> dict[str, int]:
        raise NotImplementedError

    async def insert_leads(self, leads: list[LeadRecord],
                           source_id: Optional[int] = None) -> list[int]:
        """Insert in order; returns the new lead ids in the same order."""
        raise NotImplementedError

    async def update_lead(self, lead_id: int, lead: LeadRecord) -> None:
        """COALESCE-merge lead onto the stored row."""
        raise NotImplementedError

    async def assign_sources(self, pairs: list[tuple[int, int]]) -> None:
        raise NotImplementedError

    async def assign_tags(self, pairs: list[tuple[int, int]]) -> None:
        raise NotImplementedError

    async def set_primary_source(self, lead_ids: list[int], source_id: int) -> None:
        raise NotImplementedError


class IngestionRepository:
    """
    Abstract DB access. In production, backed by asyncpg.
    Upsert methods return True when the row was inserted, False when an
    existing row was merged.
    """

    # -- Upload records --

    async def create_upload(self, file_name: str, table_name: str = 'unknown',
                            metadata: Optional[dict] = None) -> int:
        raise NotImplementedError

    async def get_upload(self, upload_id: int) -> Optional[UploadRecord]:
        raise NotImplementedError

    async def update_upload(self, upload_id: int, updates: dict[str, Any]) -> None:
        raise NotImplementedError

    async def latest_upload_for_table(self, table_name: str) -> Optional[UploadRecord]:
        raise NotImplementedError

    async def list_uploads(self, limit: int = 50) -> list[UploadRecord]:
        raise NotImplementedError

    # -- Entities --

    async def find_or_create_patient(self, phone_no: str, name: Optional[str] = None,
                                     mrn_no: Optional[str] = None,
                                     id_no: Optional[str] = None) -> int:
        raise NotImplementedError

    async def find_patient_by_mrn(self, mrn_no: str) -> Optional[int]:
        raise NotImplementedError

    async def find_patient_by_invoice(self, invoice_code: str) -> Optional[int]:
        raise NotImplementedError

    async def find_or_create_doctor(self, name: str, code: Optional[str] = None) -> int:
        raise NotImplementedError

    # -- Clinical records --

    async def upsert_patient(self, record: PatientRecord) -> bool:
        raise NotImplementedError

    async def upsert_consultation(self, record: ConsultationRecord) -> bool:
        raise NotImplementedError

    async def upsert_prescription(self, record: PrescriptionRecord) -> bool:
        raise NotImplementedError

    async def upsert_invoice(self, record: InvoiceRecord) -> bool:
        raise NotImplementedError

    async def upsert_itemized_sale(self, record: ItemizedSaleRecord) -> bool:
        raise NotImplementedError

    async def upsert_daily_doctor_sale(self, record: DailyDoctorSaleRecord) -> bool:
        raise NotImplementedError

    # -- Lead sources & tags --

    async def list_sources(self) -> list[LeadSource]:
        raise NotImplementedError

    async def create_source(self, source_name: str) -> LeadSource:
        raise NotImplementedError

    async def find_source_by_name(self, source_name: str) -> Optional[LeadSource]:
        raise NotImplementedError

    async def list_tags(self) -> list[LeadTag]:
        raise NotImplementedError

    async def create_tag(self, tag_name: str) -> LeadTag:
        raise NotImplementedError

    def lead_batch(self):
        """Async context manager yielding a LeadBatch inside one transaction."""
        raise NotImplementedError

    async def health_check(self) -> dict:
        raise NotImplementedError

# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

def _coalesce(existing: dict, incoming: dict) -> dict:
    """Incoming non-null values win; nulls never clobber."""
    merged = dict(existing)
    for key, value in incoming.items():
        if value is not None:
            merged[key] = value
    return merged


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLeadBatch(LeadBatch):

    def __init__(self, repo: InMemoryRepository):
        self.repo = repo

    async def leads_by_external_id(self, external_ids, source_id):
        wanted = set(external_ids)
        found = {}
        for lead_id, lead in self.repo.leads.items():
            ext = lead.get('lead_external_id')
            if ext in wanted and (lead_id, source_id) in self.repo.lead_source_assignments:
                found[ext] = lead_id
        return found

    async def leads_by_phone(self, phones):
        wanted = set(phones)
        return {
            lead['phone_number']: lead_id
            for lead_id, lead in self.repo.leads.items()
            if lead['phone_number'] in wanted
        }

    async def insert_leads(self, leads, source_id=None):
        ids = []
        for lead in leads:
            if any(l['phone_number'] == lead.phone_number for l in self.repo.leads.values()):
                raise StorageError(f"duplicate lead phone {lead.phone_number}")
            lead_id = self.repo._next_id('leads')
            self.repo.leads[lead_id] = {
                **lead.model_dump(), 'lead_id': lead_id, 'source_id': source_id,
                'created_at': _now(), 'updated_at': _now(),
            }
            ids.append(lead_id)
        return ids

    async def update_lead(self, lead_id, lead):
        stored = self.repo.leads[lead_id]
        if any(other_id != lead_id and other['phone_number'] == lead.phone_number
               for other_id, other in self.repo.leads.items()):
            raise StorageError(f"duplicate lead phone {lead.phone_number}")
        merged = _coalesce(stored, lead.model_dump())
        merged['updated_at'] = _now()
        self.repo.leads[lead_id] = merged

    async def assign_sources(self, pairs):
        self.repo.lead_source_assignments.update(pairs)

    async def assign_tags(self, pairs):
        self.repo.lead_tag_assignments.update(pairs)

    async def set_primary_source(self, lead_ids, source_id):
        for lead_id in lead_ids:
            self.repo.leads[lead_id]['source_id'] = source_id


class InMemoryRepository(IngestionRepository):
    """In-memory implementation for testing without a database."""

    def __init__(self):
        self.uploads: dict[int, UploadRecord] = {}
        self.patients: dict[int, dict] = {}
        self.doctors: dict[int, dict] = {}
        self.consultations: dict[tuple, dict] = {}
        self.procedure_prescriptions: dict[tuple, dict] = {}
        self.medicine_prescriptions: dict[tuple, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.itemized_sales: dict[str, dict] = {}
        self.daily_doctor_sales: dict[tuple, dict] = {}
        self.leads: dict[int, dict] = {}
        self.lead_sources: dict[int, LeadSource] = {}
        self.lead_tags: dict[int, LeadTag] = {}
        self.lead_source_assignments: set[tuple[int, int]] = set()
        self.lead_tag_assignments: set[tuple[int, int]] = set()
        self._phone_index: dict[str, int] = {}
        self._doctor_index: dict[tuple[str, Optional[str]], int] = {}
        self._sequences: dict[str, int] = {}
        # Round-trip counter, lets tests check resolver caching
        self.calls: dict[str, int] = {}

    def _next_id(self, name: str) -> int:
        self._sequences[name] = self._sequences.get(name, 0) + 1
        return self._sequences[name]

    def _count(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1

    # -- Upload records --

    async def create_upload(self, file_name, table_name='unknown', metadata=None):
        upload_id = self._next_id('csv_uploads')
        self.uploads[upload_id] = UploadRecord(
            upload_id=upload_id, file_name=file_name, table_name=table_name,
            metadata=metadata or {}, uploaded_at=_now(),
        )
        return upload_id

    async def get_upload(self, upload_id):
        return self.uploads.get(upload_id)

    async def update_upload(self, upload_id, updates):
        upload = self.uploads.get(upload_id)
        if upload is None:
            raise StorageError(f"Upload {upload_id} not found")
        self.uploads[upload_id] = upload.model_copy(update=updates)

    async def latest_upload_for_table(self, table_name):
        matching = [u for u in self.uploads.values() if u.table_name == table_name]
        if not matching:
            return None
        return max(matching, key=lambda u: (u.uploaded_at, u.upload_id))

    async def list_uploads(self, limit=50):
        ordered = sorted(self.uploads.values(),
                         key=lambda u: (u.uploaded_at, u.upload_id), reverse=True)
        return ordered[:limit]

    # -- Entities --

    async def find_or_create_patient(self, phone_no, name=None, mrn_no=None, id_no=None):
        self._count('find_or_create_patient')
        existing = self._phone_index.get(phone_no)
        if existing is not None:
            return existing
        patient_id = self._next_id('patients')
        self.patients[patient_id] = {
            'patient_id': patient_id, 'phone_no': phone_no, 'name': name,
            'mrn_no': mrn_no, 'id_no': id_no,
        }
        self._phone_index[phone_no] = patient_id
        return patient_id

    async def find_patient_by_mrn(self, mrn_no):
        self._count('find_patient_by_mrn')
        for patient_id, patient in self.patients.items():
            if patient.get('mrn_no') == mrn_no:
                return patient_id
        return None

    async def find_patient_by_invoice(self, invoice_code):
        invoice = self.invoices.get(invoice_code)
        return invoice.get('patient_id') if invoice else None

    async def find_or_create_doctor(self, name, code=None):
        self._count('find_or_create_doctor')
        key = (name, code)
        existing = self._doctor_index.get(key)
        if existing is not None:
            return existing
        doctor_id = self._next_id('doctors')
        self.doctors[doctor_id] = {'doctor_id': doctor_id, 'doctor_name': name, 'doctor_code': code}
        self._doctor_index[key] = doctor_id
        return doctor_id

    # -- Clinical records --

    def _upsert(self, table: dict, key: Any, row: dict) -> bool:
        if key in table:
            table[key] = _coalesce(table[key], row)
            return False
        table[key] = row
        return True

    async def upsert_patient(self, record):
        row = record.model_dump()
        patient_id = self._phone_index.get(record.phone_no)
        if patient_id is None:
            patient_id = self._next_id('patients')
            self.patients[patient_id] = {**row, 'patient_id': patient_id}
            self._phone_index[record.phone_no] = patient_id
            return True
        self.patients[patient_id] = _coalesce(self.patients[patient_id], row)
        return False

    async def upsert_consultation(self, record):
        key = (record.patient_id, record.doctor_id, record.visit_date, record.visit_time)
        return self._upsert(self.consultations, key, record.model_dump())

    async def upsert_prescription(self, record):
        table = (self.procedure_prescriptions if record.kind is PrescriptionKind.PROCEDURE
                 else self.medicine_prescriptions)
        key = (record.patient_id, record.prescribing_doctor_id,
               record.prescription_date, record.item_code)
        return self._upsert(table, key, record.model_dump())

    async def upsert_invoice(self, record):
        return self._upsert(self.invoices, record.invoice_code, record.model_dump())

    async def upsert_itemized_sale(self, record):
        return self._upsert(self.itemized_sales, record.invoice_code, record.model_dump())

    async def upsert_daily_doctor_sale(self, record):
        key = (record.sale_date, record.doctor_id)
        return self._upsert(self.daily_doctor_sales, key, record.model_dump())

    # -- Lead sources & tags --

    async def list_sources(self):
        return sorted(self.lead_sources.values(), key=lambda s: s.source_name)

    async def create_source(self, source_name):
        existing = await self.find_source_by_name(source_name)
        if existing:
            return existing
        source_id = self._next_id('lead_sources')
        source = LeadSource(source_id=source_id, source_name=source_name, created_at=_now())
        self.lead_sources[source_id] = source
        return source

    async def find_source_by_name(self, source_name):
        for source in self.lead_sources.values():
            if source.source_name == source_name:
                return source
        return None

    async def list_tags(self):
        return sorted(self.lead_tags.values(), key=lambda t: t.tag_name)

    async def create_tag(self, tag_name):
        for tag in self.lead_tags.values():
            if tag.tag_name == tag_name:
                return tag
        tag_id = self._next_id('lead_tags')
        tag = LeadTag(tag_id=tag_id, tag_name=tag_name, created_at=_now())
        self.lead_tags[tag_id] = tag
        return tag

    @asynccontextmanager
    async def lead_batch(self) -> AsyncIterator[LeadBatch]:
        snapshot = copy.deepcopy((
            self.leads, self.lead_source_assignments,
            self.lead_tag_assignments, self._sequences,
        ))
        try:
            yield InMemoryLeadBatch(self)
        except BaseException:
            (self.leads, self.lead_source_assignments,
             self.lead_tag_assignments, self._sequences) = snapshot
            raise

    async def health_check(self):
        return {'status': 'healthy', 'backend': 'memory'}

    # -- Test helpers --

    def patient_by_phone(self, phone_no: str) -> Optional[dict]:
        patient_id = self._phone_index.get(phone_no)
        return self.patients.get(patient_id) if patient_id else None

    def lead_by_phone(self, phone_number: str) -> Optional[dict]:
        for lead in self.leads.values():
            if lead['phone_number'] == phone_number:
                return lead
        return None

    def tags_of(self, lead_id: int) -> set[int]:
        return {tag for lid, tag in self.lead_tag_assignments if lid == lead_id}

    def sources_of(self, lead_id: int) -> set[int]:
        return {src for lid, src in self.lead_source_assignments if lid == lead_id}
