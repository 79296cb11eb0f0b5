"""
Clinic Ingestion Service — Entity Resolver
entity_resolver.py

Patients and doctors are created lazily the first time a record refers to
them. Every lookup is a single atomic find-or-create in the store; the
resolver only adds a per-run memo so a file that mentions the same doctor
on 5,000 rows does one round-trip instead of 5,000.
"""
from __future__ import annotations
import logging
from typing import Optional

from normalizers import extract_doctor_code, normalize_phone_number
from repository import IngestionRepository

logger = logging.getLogger(__name__)


class EntityResolver:
    """Create one per ingestion run; the cache must not outlive it."""

    def __init__(self, repo: IngestionRepository):
        self.repo = repo
        self._patients: dict[str, int] = {}
        self._patients_by_mrn: dict[str, int] = {}
        self._doctors: dict[tuple[str, Optional[str]], int] = {}

    async def find_or_create_patient(
        self,
        phone: str,
        name: Optional[str] = None,
        mrn: Optional[str] = None,
        id_no: Optional[str] = None,
    ) -> int:
        """Existing patients are returned untouched; attributes only seed new rows."""
        key = normalize_phone_number(phone)
        if not key:
            raise ValueError('patient key (phone) is empty')

        cached = self._patients.get(key)
        if cached is not None:
            return cached

        patient_id = await self.repo.find_or_create_patient(key, name=name, mrn_no=mrn, id_no=id_no)
        self._patients[key] = patient_id
        return patient_id

    async def find_patient_by_mrn(self, mrn: str) -> Optional[int]:
        key = mrn.strip()
        if not key:
            return None
        cached = self._patients_by_mrn.get(key)
        if cached is not None:
            return cached

        patient_id = await self.repo.find_patient_by_mrn(key)
        if patient_id is not None:
            self._patients_by_mrn[key] = patient_id
        return patient_id

    async def find_or_create_doctor(self, raw_name: str, code: Optional[str] = None) -> int:
        """Accepts 'Tan (042)' or an already split name + code."""
        parsed = extract_doctor_code(raw_name)
        name = parsed.name
        code = code or parsed.code
        if name.strip().lower() in ('dr.', 'dr'):
            raise ValueError('doctor name is empty')

        key = (name, code)
        cached = self._doctors.get(key)
        if cached is not None:
            return cached

        doctor_id = await self.repo.find_or_create_doctor(name, code)
        self._doctors[key] = doctor_id
        logger.debug("Resolved doctor %s (%s) -> %d", name, code, doctor_id)
        return doctor_id
