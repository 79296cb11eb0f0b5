"""
asyncpg_repository.py — Production PostgreSQL repository implementation.

Implements the IngestionRepository interface on an asyncpg connection pool.
Every find-or-create and upsert is a single INSERT ... ON CONFLICT statement,
so concurrent uploads never race each other into duplicate patients,
doctors or leads. `RETURNING (xmax = 0)` tells an insert from a merge.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import asyncpg

from config import Settings, get_settings
from exceptions import StorageError
from models import (
    ConsultationRecord, DailyDoctorSaleRecord, InvoiceRecord,
    ItemizedSaleRecord, LeadRecord, LeadSource, LeadTag, PatientRecord,
    PrescriptionKind, PrescriptionRecord, UploadRecord,
)
from repository import IngestionRepository, LeadBatch

logger = logging.getLogger(__name__)

SCHEMA_FILE = Path(__file__).with_name("schema.sql")

# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.dsn = self.settings.asyncpg_dsn
        self.schema = self.settings.db_schema
        self.min_size = self.settings.db_pool_min
        self.max_size = self.settings.db_pool_max
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create connection pool with the clinic schema on the search path."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.settings.db_command_timeout,
            server_settings={"search_path": self.schema},
        )
        logger.info(
            "Database pool initialized (schema=%s, min=%d, max=%d)",
            self.schema, self.min_size, self.max_size,
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def apply_schema(self) -> None:
        """Create the schema and tables if missing. Idempotent."""
        ddl = SCHEMA_FILE.read_text(encoding="utf-8")
        async with self.transaction() as conn:
            await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self.schema}"')
            await conn.execute(ddl)
        logger.info("Schema %s applied", self.schema)

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")


# ── Value helpers ────────────────────────────────────────────────────────────

def _db_value(value: Any) -> Any:
    """Python value -> asyncpg parameter."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, float):
        return Decimal(str(value))
    return value


def _params(row: dict) -> list:
    return [_db_value(v) for v in row.values()]


def _placeholders(count: int, start: int = 1) -> str:
    return ", ".join(f"${i}" for i in range(start, start + count))


def _upload_from_row(row: asyncpg.Record) -> UploadRecord:
    data = dict(row)
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        data["metadata"] = json.loads(metadata)
    elif metadata is None:
        data["metadata"] = {}
    return UploadRecord(**data)


UPLOAD_COLUMNS = {
    "table_name", "record_type", "upload_status", "rows_processed",
    "rows_inserted", "rows_updated", "rows_failed", "rows_skipped",
    "error_message", "metadata", "csv_date", "completed_at",
}

LEAD_COLUMNS = tuple(LeadRecord.model_fields)

# ── Lead Batch ───────────────────────────────────────────────────────────────

class AsyncPGLeadBatch(LeadBatch):
    """LeadBatch bound to one connection inside an open transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    async def leads_by_external_id(self, external_ids, source_id):
        rows = await self.conn.fetch(
            """
            SELECT l.lead_id, l.lead_external_id
            FROM leads l
            JOIN lead_source_assignments a ON a.lead_id = l.lead_id
            WHERE l.lead_external_id = ANY($1::text[]) AND a.source_id = $2
            """,
            external_ids,
            source_id,
        )
        return {r["lead_external_id"]: r["lead_id"] for r in rows}

    async def leads_by_phone(self, phones):
        rows = await self.conn.fetch(
            "SELECT lead_id, phone_number FROM leads WHERE phone_number = ANY($1::text[])",
            phones,
        )
        return {r["phone_number"]: r["lead_id"] for r in rows}

    async def insert_leads(self, leads, source_id=None):
        if not leads:
            return []
        cols = list(LEAD_COLUMNS) + ["source_id"]
        values, params = [], []
        for lead in leads:
            row = lead.model_dump()
            values.append(f"({_placeholders(len(cols), len(params) + 1)})")
            params.extend(_db_value(row[c]) for c in LEAD_COLUMNS)
            params.append(source_id)

        rows = await self.conn.fetch(
            f"""
            INSERT INTO leads ({', '.join(cols)})
            VALUES {', '.join(values)}
            RETURNING lead_id, phone_number
            """,
            *params,
        )
        # RETURNING order is not guaranteed; phones are unique within a chunk
        by_phone = {r["phone_number"]: r["lead_id"] for r in rows}
        return [by_phone[lead.phone_number] for lead in leads]

    async def update_lead(self, lead_id, lead):
        row = lead.model_dump()
        sets = ", ".join(f"{c} = COALESCE(${i}, {c})" for i, c in enumerate(row, start=1))
        await self.conn.execute(
            f"UPDATE leads SET {sets}, updated_at = now() WHERE lead_id = ${len(row) + 1}",
            *_params(row),
            lead_id,
        )

    async def assign_sources(self, pairs):
        if not pairs:
            return
        await self.conn.execute(
            """
            INSERT INTO lead_source_assignments (lead_id, source_id)
            SELECT * FROM unnest($1::bigint[], $2::bigint[])
            ON CONFLICT DO NOTHING
            """,
            [p[0] for p in pairs],
            [p[1] for p in pairs],
        )

    async def assign_tags(self, pairs):
        if not pairs:
            return
        await self.conn.execute(
            """
            INSERT INTO lead_tag_assignments (lead_id, tag_id)
            SELECT * FROM unnest($1::bigint[], $2::bigint[])
            ON CONFLICT DO NOTHING
            """,
            [p[0] for p in pairs],
            [p[1] for p in pairs],
        )

    async def set_primary_source(self, lead_ids, source_id):
        if not lead_ids:
            return
        await self.conn.execute(
            "UPDATE leads SET source_id = $1, updated_at = now() WHERE lead_id = ANY($2::bigint[])",
            source_id,
            lead_ids,
        )


# ── Ingestion Repository ─────────────────────────────────────────────────────

class AsyncPGIngestionRepository(IngestionRepository):
    """
    Production repository implementing the IngestionRepository interface.
    Upserts merge with COALESCE(EXCLUDED.col, table.col): a blank cell in
    a re-upload never erases a value an earlier upload stored.
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    # ── Upload records ───────────────────────────────────────────────────

    async def create_upload(self, file_name, table_name="unknown", metadata=None):
        async with self.db.acquire() as conn:
            upload_id = await conn.fetchval(
                """
                INSERT INTO csv_uploads (file_name, table_name, upload_status, metadata, uploaded_at)
                VALUES ($1, $2, 'queued', $3::jsonb, $4)
                RETURNING upload_id
                """,
                file_name,
                table_name,
                json.dumps(metadata or {}),
                datetime.now(timezone.utc),
            )
        logger.info("Created upload %d for %s", upload_id, file_name)
        return upload_id

    async def get_upload(self, upload_id):
        async with self.db.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM csv_uploads WHERE upload_id = $1", upload_id)
            return _upload_from_row(row) if row else None

    async def update_upload(self, upload_id, updates):
        if not updates:
            return
        unknown = set(updates) - UPLOAD_COLUMNS
        if unknown:
            raise StorageError(f"Unknown upload columns: {sorted(unknown)}")

        sets, vals, idx = [], [], 1
        for k, v in updates.items():
            if k == "metadata":
                sets.append(f"metadata = ${idx}::jsonb")
                vals.append(json.dumps(v or {}))
            else:
                sets.append(f"{k} = ${idx}")
                vals.append(v.value if isinstance(v, Enum) else v)
            idx += 1
        vals.append(upload_id)

        query = f"UPDATE csv_uploads SET {', '.join(sets)} WHERE upload_id = ${idx}"
        async with self.db.acquire() as conn:
            status = await conn.execute(query, *vals)
        if status == "UPDATE 0":
            raise StorageError(f"Upload {upload_id} not found")

    async def latest_upload_for_table(self, table_name):
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM csv_uploads
                WHERE table_name = $1
                ORDER BY uploaded_at DESC, upload_id DESC
                LIMIT 1
                """,
                table_name,
            )
            return _upload_from_row(row) if row else None

    async def list_uploads(self, limit=50):
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM csv_uploads ORDER BY uploaded_at DESC, upload_id DESC LIMIT $1",
                min(int(limit), 500),
            )
            return [_upload_from_row(r) for r in rows]

    # ── Entities ─────────────────────────────────────────────────────────

    async def find_or_create_patient(self, phone_no, name=None, mrn_no=None, id_no=None):
        # The no-op DO UPDATE makes RETURNING yield the existing id too
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO patients (phone_no, name, mrn_no, id_no)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (phone_no) DO UPDATE SET phone_no = EXCLUDED.phone_no
                RETURNING patient_id
                """,
                phone_no, name, mrn_no, id_no,
            )

    async def find_patient_by_mrn(self, mrn_no):
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                "SELECT patient_id FROM patients WHERE mrn_no = $1 ORDER BY patient_id LIMIT 1",
                mrn_no,
            )

    async def find_patient_by_invoice(self, invoice_code):
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                "SELECT patient_id FROM invoices WHERE invoice_code = $1", invoice_code
            )

    async def find_or_create_doctor(self, name, code=None):
        async with self.db.acquire() as conn:
            return await conn.fetchval(
                """
                INSERT INTO doctors (doctor_name, doctor_code)
                VALUES ($1, $2)
                ON CONFLICT ON CONSTRAINT doctors_name_code_key
                DO UPDATE SET doctor_name = EXCLUDED.doctor_name
                RETURNING doctor_id
                """,
                name, code,
            )

    # ── Clinical records ─────────────────────────────────────────────────

    async def _upsert(self, table: str, row: dict, conflict: str, key_cols: tuple[str, ...]) -> bool:
        cols = list(row)
        updates = ", ".join(
            f"{c} = COALESCE(EXCLUDED.{c}, {table}.{c})" for c in cols if c not in key_cols
        )
        query = f"""
            INSERT INTO {table} ({', '.join(cols)})
            VALUES ({_placeholders(len(cols))})
            ON CONFLICT {conflict} DO UPDATE SET {updates}, updated_at = now()
            RETURNING (xmax = 0) AS inserted
        """
        async with self.db.acquire() as conn:
            return await conn.fetchval(query, *_params(row))

    async def upsert_patient(self, record: PatientRecord) -> bool:
        return await self._upsert(
            "patients", record.model_dump(), "(phone_no)", ("phone_no",)
        )

    async def upsert_consultation(self, record: ConsultationRecord) -> bool:
        return await self._upsert(
            "consultations", record.model_dump(),
            "ON CONSTRAINT consultations_visit_key",
            ("patient_id", "doctor_id", "visit_date", "visit_time"),
        )

    async def upsert_prescription(self, record: PrescriptionRecord) -> bool:
        prefix = "procedure" if record.kind is PrescriptionKind.PROCEDURE else "medicine"
        row = record.model_dump(exclude={"kind", "item_code", "item_name"})
        row[f"{prefix}_code"] = record.item_code
        row[f"{prefix}_name"] = record.item_name
        return await self._upsert(
            f"{prefix}_prescriptions", row,
            f"ON CONSTRAINT {prefix}_prescriptions_key",
            ("patient_id", "prescribing_doctor_id", "prescription_date", f"{prefix}_code"),
        )

    async def upsert_invoice(self, record: InvoiceRecord) -> bool:
        return await self._upsert(
            "invoices", record.model_dump(), "(invoice_code)", ("invoice_code",)
        )

    async def upsert_itemized_sale(self, record: ItemizedSaleRecord) -> bool:
        return await self._upsert(
            "itemized_sales", record.model_dump(), "(invoice_code)", ("invoice_code",)
        )

    async def upsert_daily_doctor_sale(self, record: DailyDoctorSaleRecord) -> bool:
        return await self._upsert(
            "daily_doctor_sales", record.model_dump(),
            "ON CONSTRAINT daily_doctor_sales_key", ("sale_date", "doctor_id"),
        )

    # ── Lead sources & tags ──────────────────────────────────────────────

    async def list_sources(self):
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT source_id, source_name, created_at FROM lead_sources ORDER BY source_name"
            )
            return [LeadSource(**dict(r)) for r in rows]

    async def create_source(self, source_name):
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO lead_sources (source_name) VALUES ($1)
                ON CONFLICT (source_name) DO UPDATE SET source_name = EXCLUDED.source_name
                RETURNING source_id, source_name, created_at
                """,
                source_name,
            )
            return LeadSource(**dict(row))

    async def find_source_by_name(self, source_name):
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT source_id, source_name, created_at FROM lead_sources WHERE source_name = $1",
                source_name,
            )
            return LeadSource(**dict(row)) if row else None

    async def list_tags(self):
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT tag_id, tag_name, created_at FROM lead_tags ORDER BY tag_name"
            )
            return [LeadTag(**dict(r)) for r in rows]

    async def create_tag(self, tag_name):
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO lead_tags (tag_name) VALUES ($1)
                ON CONFLICT (tag_name) DO UPDATE SET tag_name = EXCLUDED.tag_name
                RETURNING tag_id, tag_name, created_at
                """,
                tag_name,
            )
            return LeadTag(**dict(row))

    @asynccontextmanager
    async def lead_batch(self) -> AsyncIterator[LeadBatch]:
        async with self.db.transaction() as conn:
            yield AsyncPGLeadBatch(conn)

    async def health_check(self) -> dict:
        async with self.db.acquire() as conn:
            uploads = await conn.fetchval("SELECT count(*) FROM csv_uploads")
        return {"status": "healthy", "backend": "postgres",
                "schema": self.db.schema, "uploads": uploads}
