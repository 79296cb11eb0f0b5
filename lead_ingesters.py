"""
Clinic Ingestion Service — Lead Ingesters
lead_ingesters.py

Marketing lead exports come in three shapes:
  1. structured vendor export (Lead ID, Username, Received date, ...)
  2. minimal export with only phone + name columns
  3. device export: headerless, positional [phone, name, device, timestamp]

All three share one pipeline: normalize rows, fold them by phone, then
write in chunks where each chunk is its own transaction.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

from config import Settings, get_settings
from exceptions import BatchTransactionFailure, IngestionError, RowSkipped
from models import (
    IngestionContext, IngestionResult, LeadRecord, RecordType, RowOutcome,
)
from normalizers import clean_text, normalize_lead_phone, parse_lead_date
from record_ingesters import RowView
from repository import IngestionRepository, LeadBatch

logger = logging.getLogger(__name__)

# Bind parameters per inserted lead row: the LeadRecord columns + source_id
LEAD_COLUMNS_PER_ROW = len(LeadRecord.model_fields) + 1


def rows_per_chunk(max_query_params: int, columns_per_row: int = LEAD_COLUMNS_PER_ROW) -> int:
    return max(1, max_query_params // columns_per_row)


@dataclass
class LeadGroup:
    """All rows of one file that share a phone number, folded together."""
    lead: LeadRecord
    occurrences: int = 1

    @property
    def phone(self) -> str:
        return self.lead.phone_number


def group_by_phone(leads: Sequence[LeadRecord]) -> list[LeadGroup]:
    """Fold by phone in first-seen order; later non-null values win."""
    groups: dict[str, LeadGroup] = {}
    for lead in leads:
        group = groups.get(lead.phone_number)
        if group is None:
            groups[lead.phone_number] = LeadGroup(lead)
        else:
            group.lead = group.lead.coalesce(lead)
            group.occurrences += 1
    return list(groups.values())

# ============================================================
# Base Lead Ingester
# ============================================================

class LeadIngester:
    record_type: RecordType = RecordType.UNKNOWN
    # Whether re-seen leads get their primary source_id rewritten
    update_primary_source: bool = True

    def __init__(
        self,
        repo: IngestionRepository,
        settings: Optional[Settings] = None,
        max_query_params: Optional[int] = None,
    ):
        self.repo = repo
        self.settings = settings or get_settings()
        self.chunk_size = rows_per_chunk(max_query_params or self.settings.db_max_query_params)

    async def ingest(self, rows: Sequence[Any],
                     context: Optional[IngestionContext] = None) -> IngestionResult:
        context = context or IngestionContext()
        result = IngestionResult()
        if not rows:
            return result

        self.prepare(rows)
        source_id = await self.resolve_source(context)

        leads: list[LeadRecord] = []
        for index, row in enumerate(rows, start=1):
            try:
                lead = self.normalize_row(row)
            except RowSkipped as e:
                logger.debug("%s row %d skipped: %s", self.record_type.value, index, e)
                result.record(RowOutcome.SKIPPED)
                continue
            except Exception as e:
                logger.warning("%s row %d failed: %s", self.record_type.value, index, e)
                result.record(RowOutcome.FAILED)
                result.errors.append(f"row {index}: {e}")
                continue
            if lead is None:
                result.record(RowOutcome.SKIPPED)
            else:
                leads.append(lead)

        groups = group_by_phone(leads)
        for start in range(0, len(groups), self.chunk_size):
            chunk = groups[start:start + self.chunk_size]
            try:
                chunk_result = await self._write_chunk(chunk, source_id, context)
            except Exception as e:
                remaining = sum(g.occurrences for g in groups[start:])
                failure = BatchTransactionFailure(
                    f"lead chunk starting at group {start} rolled back: {e}",
                    rows_affected=remaining,
                )
                logger.exception("%s: %s", self.record_type.value, failure)
                result.record(RowOutcome.FAILED, remaining)
                result.errors.append(str(failure))
                break
            result.merge(chunk_result)

        logger.info(
            "%s: %d leads in %d unique phones; %d inserted, %d updated, %d failed, %d skipped",
            self.record_type.value, len(rows), len(groups), result.inserted,
            result.updated, result.failed, result.skipped,
        )
        return result

    # -- hooks --

    def prepare(self, rows: Sequence[Any]) -> None:
        return None

    async def resolve_source(self, context: IngestionContext) -> Optional[int]:
        return context.source_ids[0] if context.source_ids else None

    def normalize_row(self, row: Any) -> Optional[LeadRecord]:
        """None means the row has no usable phone and is skipped."""
        raise NotImplementedError

    async def match_existing(self, batch: LeadBatch, chunk: list[LeadGroup],
                             source_id: Optional[int]) -> dict[str, int]:
        """phone -> existing lead_id."""
        return await batch.leads_by_phone([g.phone for g in chunk])

    # -- chunk write --

    async def _write_chunk(self, chunk: list[LeadGroup], source_id: Optional[int],
                           context: IngestionContext) -> IngestionResult:
        chunk_result = IngestionResult()
        async with self.repo.lead_batch() as batch:
            existing = await self.match_existing(batch, chunk, source_id)

            new_groups = [g for g in chunk if g.phone not in existing]
            seen_groups = [g for g in chunk if g.phone in existing]

            new_ids = await batch.insert_leads([g.lead for g in new_groups], source_id)
            for group in seen_groups:
                await batch.update_lead(existing[group.phone], group.lead)

            for group in new_groups:
                chunk_result.record(RowOutcome.INSERTED)
                chunk_result.record(RowOutcome.UPDATED, group.occurrences - 1)
            for group in seen_groups:
                chunk_result.record(RowOutcome.UPDATED, group.occurrences)

            lead_ids = list(new_ids) + [existing[g.phone] for g in seen_groups]
            source_ids = list(context.source_ids)
            if source_id is not None and source_id not in source_ids:
                source_ids.insert(0, source_id)

            if source_ids:
                await batch.assign_sources([(lid, sid) for lid in lead_ids for sid in source_ids])
            if context.tag_ids:
                await batch.assign_tags([(lid, tid) for lid in lead_ids for tid in context.tag_ids])
            if source_id is not None and self.update_primary_source and seen_groups:
                await batch.set_primary_source([existing[g.phone] for g in seen_groups], source_id)
        return chunk_result

# ============================================================
# Structured Vendor Export
# ============================================================

STRUCTURED_LEAD_FIELDS: dict[str, tuple[str, ...]] = {
    'lead_external_id': ('Lead ID',),
    'username': ('Username',),
    'name': ('Name',),
    'phone_number': ('Phone number', 'PhoneNumber'),
    'province_state': ('Province/State', 'Province', 'State'),
    'gender': ('Gender',),
    'received_date': ('Received date', 'ReceivedDate'),
    'received_time': ('Received time', 'ReceivedTime'),
    'status': ('Status',),
    'source_traffic': ('Source traffic',),
    'source_action': ('Source action',),
    'source_scenario': ('Source scenario',),
}


class StructuredLeadIngester(LeadIngester):
    """Vendor exports with a Lead ID; matched by (Lead ID, source) then phone."""
    record_type = RecordType.LEADS_STRUCTURED
    update_primary_source = False

    async def resolve_source(self, context: IngestionContext) -> Optional[int]:
        if context.source_ids:
            return context.source_ids[0]
        name = self.settings.structured_leads_default_source
        source = await self.repo.find_source_by_name(name)
        if source is None:
            raise IngestionError(f"Default lead source {name!r} not found")
        return source.source_id

    def normalize_row(self, row: Mapping[str, Any]) -> Optional[LeadRecord]:
        f = STRUCTURED_LEAD_FIELDS
        view = RowView(row)
        phone = normalize_lead_phone(view.get(f['phone_number']))
        if not phone:
            return None
        return LeadRecord(
            phone_number=phone,
            lead_external_id=view.text(f['lead_external_id']),
            username=view.text(f['username']),
            name=view.text(f['name']),
            province_state=view.text(f['province_state']),
            gender=view.text(f['gender']),
            received_date=parse_lead_date(view.get(f['received_date'])),
            received_time=view.text(f['received_time']),
            status=view.text(f['status']),
            source_traffic=view.text(f['source_traffic']),
            source_action=view.text(f['source_action']),
            source_scenario=view.text(f['source_scenario']),
        )

    async def match_existing(self, batch, chunk, source_id):
        by_phone = await batch.leads_by_phone([g.phone for g in chunk])
        external_ids = [g.lead.lead_external_id for g in chunk if g.lead.lead_external_id]
        by_external = {}
        if external_ids and source_id is not None:
            by_external = await batch.leads_by_external_id(external_ids, source_id)

        # An external-id match gets its phone rewritten, so it only stands
        # when no other lead holds that phone and no other row in the chunk
        # is claiming the lead by its current phone.
        phone_owners = set(by_phone.values())
        matched = {}
        for group in chunk:
            owner = by_phone.get(group.phone)
            lead_id = by_external.get(group.lead.lead_external_id) if group.lead.lead_external_id else None
            if lead_id is not None and lead_id != owner and (owner is not None or lead_id in phone_owners):
                logger.info(
                    "Lead ID %s conflicts on phone %s; matching by phone instead",
                    group.lead.lead_external_id, group.phone,
                )
                lead_id = owner
            if lead_id is None:
                lead_id = owner
            if lead_id is not None:
                matched[group.phone] = lead_id
        return matched

# ============================================================
# Minimal Export (phone + name)
# ============================================================

MINIMAL_PHONE_HEADERS = ('phone', 'phonenumber', 'phone number')
MINIMAL_NAME_HEADERS = ('name',)


class MinimalLeadIngester(LeadIngester):
    """Only phone and name are guaranteed; every other column is ignored."""
    record_type = RecordType.LEADS_MINIMAL

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.phone_column: Optional[str] = None
        self.name_column: Optional[str] = None

    def prepare(self, rows):
        headers = [str(h) for h in rows[0].keys()]
        self.phone_column = next(
            (h for h in headers if h.strip().lower() in MINIMAL_PHONE_HEADERS), None)
        self.name_column = next(
            (h for h in headers if h.strip().lower() in MINIMAL_NAME_HEADERS), None)
        if not self.phone_column or not self.name_column:
            raise IngestionError('Lead file must contain "phone" and "name" columns')

    def normalize_row(self, row: Mapping[str, Any]) -> Optional[LeadRecord]:
        phone = normalize_lead_phone(row.get(self.phone_column))
        if not phone:
            return None
        return LeadRecord(phone_number=phone, name=clean_text(row.get(self.name_column)))

# ============================================================
# Device Export (positional)
# ============================================================

PHONE_CELL, NAME_CELL, DEVICE_CELL, TIMESTAMP_CELL = 0, 1, 2, 3


def positional_cell(row: Any, index: int) -> Any:
    """Cell `index` of a list row, or of a dict keyed '0'..'n' / 0..n."""
    if isinstance(row, Mapping):
        value = row.get(str(index))
        return row.get(index) if value is None else value
    if isinstance(row, (list, tuple)) and index < len(row):
        return row[index]
    return None


class PositionalLeadIngester(LeadIngester):
    """Headerless device exports: [phone, name, device id, timestamp]."""
    record_type = RecordType.LEADS_POSITIONAL

    def normalize_row(self, row: Any) -> Optional[LeadRecord]:
        first = str(positional_cell(row, PHONE_CELL) or '').lower()
        if 'phone' in first or 'name' in first:
            raise RowSkipped('stray header row')

        phone = normalize_lead_phone(positional_cell(row, PHONE_CELL))
        if not phone:
            return None
        return LeadRecord(
            phone_number=phone,
            name=clean_text(positional_cell(row, NAME_CELL)),
            received_date=parse_lead_date(positional_cell(row, TIMESTAMP_CELL)),
        )

# ============================================================
# Registry
# ============================================================

LEAD_INGESTERS: dict[RecordType, type[LeadIngester]] = {
    RecordType.LEADS_STRUCTURED: StructuredLeadIngester,
    RecordType.LEADS_MINIMAL: MinimalLeadIngester,
    RecordType.LEADS_POSITIONAL: PositionalLeadIngester,
}
