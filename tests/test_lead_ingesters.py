from datetime import date

import pytest

from exceptions import IngestionError, StorageError
from lead_ingesters import (
    LEAD_COLUMNS_PER_ROW, MinimalLeadIngester, PositionalLeadIngester,
    StructuredLeadIngester, group_by_phone, positional_cell, rows_per_chunk,
)
from models import IngestionContext, LeadRecord
from repository import InMemoryLeadBatch


def counts(result):
    return (result.inserted, result.updated, result.failed, result.skipped)


def structured_row(**overrides):
    row = {
        "Lead ID": "7301",
        "Username": "jane.d",
        "Name": "Jane Doe",
        "Phone number": "+60 12-345 6789",
        "Province/State": "Selangor",
        "Gender": "Female",
        "Received date": "1/27/2026",
        "Received time": "10:42:00",
        "Status": "New",
        "Source traffic": "Paid",
    }
    row.update(overrides)
    return row


# ============================================================
# Chunking & grouping
# ============================================================

def test_chunk_size_follows_parameter_ceiling():
    assert LEAD_COLUMNS_PER_ROW == 13
    assert rows_per_chunk(32767) == 2520
    assert rows_per_chunk(26) == 2
    assert rows_per_chunk(5) == 1


def test_group_by_phone_last_non_null_value_wins():
    groups = group_by_phone([
        LeadRecord(phone_number="011", name="First", status="New"),
        LeadRecord(phone_number="022", name="Other"),
        LeadRecord(phone_number="011", name="Second"),
    ])
    assert [g.phone for g in groups] == ["011", "022"]
    assert groups[0].occurrences == 2
    assert groups[0].lead.name == "Second"
    assert groups[0].lead.status == "New"


def test_positional_cell_accepts_lists_and_dicts():
    assert positional_cell(["a", "b"], 1) == "b"
    assert positional_cell(["a"], 3) is None
    assert positional_cell({"0": "x"}, 0) == "x"
    assert positional_cell({1: "y"}, 1) == "y"


# ============================================================
# Minimal (phone + name)
# ============================================================

class TestMinimalLeads:

    async def test_same_phone_twice_last_name_wins(self, repo, settings):
        rows = [
            {"phone": "0123456789", "name": "Ali"},
            {"phone": "012-345 6789", "name": "Ali Bin Abu"},
        ]
        result = await MinimalLeadIngester(repo, settings).ingest(rows)

        assert counts(result) == (1, 1, 0, 0)
        assert len(repo.leads) == 1
        assert repo.lead_by_phone("0123456789")["name"] == "Ali Bin Abu"

    async def test_reupload_updates_and_tags_are_additive(self, repo, settings):
        first_tag = await repo.create_tag("January promo")
        second_tag = await repo.create_tag("Walk-in")
        rows = [{"Phone": "0123456789", "Name": "Ali"}]

        await MinimalLeadIngester(repo, settings).ingest(
            rows, IngestionContext(tag_ids=[first_tag.tag_id]))
        result = await MinimalLeadIngester(repo, settings).ingest(
            rows, IngestionContext(tag_ids=[second_tag.tag_id]))

        assert counts(result) == (0, 1, 0, 0)
        lead = repo.lead_by_phone("0123456789")
        assert repo.tags_of(lead["lead_id"]) == {first_tag.tag_id, second_tag.tag_id}

    async def test_primary_source_follows_latest_upload(self, repo, settings):
        facebook = await repo.create_source("Facebook")
        walk_in = await repo.create_source("Walk-in")
        rows = [{"phone": "0123456789", "name": "Ali"}]

        await MinimalLeadIngester(repo, settings).ingest(
            rows, IngestionContext(source_ids=[facebook.source_id]))
        await MinimalLeadIngester(repo, settings).ingest(
            rows, IngestionContext(source_ids=[walk_in.source_id]))

        lead = repo.lead_by_phone("0123456789")
        assert lead["source_id"] == walk_in.source_id
        assert repo.sources_of(lead["lead_id"]) == {facebook.source_id, walk_in.source_id}

    async def test_row_without_phone_is_skipped(self, repo, settings):
        rows = [{"phone": "", "name": "Nobody"}, {"phone": "0123456789", "name": "Ali"}]
        result = await MinimalLeadIngester(repo, settings).ingest(rows)
        assert counts(result) == (1, 0, 0, 1)

    async def test_missing_columns_reject_the_file(self, repo, settings):
        with pytest.raises(IngestionError):
            await MinimalLeadIngester(repo, settings).ingest([{"mobile": "012", "name": "A"}])


# ============================================================
# Structured vendor export
# ============================================================

class TestStructuredLeads:

    async def test_default_source_is_looked_up_by_name(self, repo, settings):
        source = await repo.create_source(settings.structured_leads_default_source)
        result = await StructuredLeadIngester(repo, settings).ingest([structured_row()])

        assert counts(result) == (1, 0, 0, 0)
        lead = repo.lead_by_phone("+60123456789")
        assert lead["source_id"] == source.source_id
        assert lead["lead_external_id"] == "7301"
        assert lead["received_date"] == date(2026, 1, 27)
        assert lead["province_state"] == "Selangor"
        assert repo.sources_of(lead["lead_id"]) == {source.source_id}

    async def test_missing_default_source_rejects_the_file(self, repo, settings):
        with pytest.raises(IngestionError):
            await StructuredLeadIngester(repo, settings).ingest([structured_row()])

    async def test_matched_by_external_id_within_source(self, repo, settings):
        await repo.create_source(settings.structured_leads_default_source)
        await StructuredLeadIngester(repo, settings).ingest([structured_row()])

        moved = structured_row(**{"Phone number": "0199998888", "Status": "Contacted"})
        result = await StructuredLeadIngester(repo, settings).ingest([moved])

        assert counts(result) == (0, 1, 0, 0)
        assert len(repo.leads) == 1
        (lead,) = repo.leads.values()
        assert lead["phone_number"] == "0199998888"
        assert lead["status"] == "Contacted"
        assert lead["username"] == "jane.d"

    async def test_phone_held_by_another_lead_wins_over_external_id(self, repo, settings):
        await MinimalLeadIngester(repo, settings).ingest([{"phone": "0199998888", "name": "Walk-in"}])
        await repo.create_source(settings.structured_leads_default_source)
        await StructuredLeadIngester(repo, settings).ingest(
            [structured_row(**{"Phone number": "0123456789"})])

        moved = structured_row(**{"Phone number": "0199998888", "Status": "Contacted"})
        result = await StructuredLeadIngester(repo, settings).ingest([moved])

        assert counts(result) == (0, 1, 0, 0)
        phones = sorted(lead["phone_number"] for lead in repo.leads.values())
        assert phones == ["0123456789", "0199998888"]
        walk_in = repo.lead_by_phone("0199998888")
        assert walk_in["status"] == "Contacted"
        assert walk_in["lead_external_id"] == "7301"

    async def test_store_refuses_a_second_lead_with_the_same_phone(self, repo, settings):
        await MinimalLeadIngester(repo, settings).ingest([
            {"phone": "0123456789", "name": "Ali"},
            {"phone": "0199998888", "name": "Abu"},
        ])
        ali = repo.lead_by_phone("0123456789")

        with pytest.raises(StorageError):
            async with repo.lead_batch() as batch:
                await batch.update_lead(ali["lead_id"], LeadRecord(phone_number="0199998888"))

        assert repo.lead_by_phone("0123456789")["lead_id"] == ali["lead_id"]

    async def test_primary_source_is_kept_for_known_leads(self, repo, settings):
        default = await repo.create_source(settings.structured_leads_default_source)
        other = await repo.create_source("Instagram")
        await StructuredLeadIngester(repo, settings).ingest([structured_row()])
        await StructuredLeadIngester(repo, settings).ingest(
            [structured_row()], IngestionContext(source_ids=[other.source_id]))

        lead = repo.lead_by_phone("+60123456789")
        assert lead["source_id"] == default.source_id
        assert repo.sources_of(lead["lead_id"]) == {default.source_id, other.source_id}


# ============================================================
# Device export (positional)
# ============================================================

class TestPositionalLeads:

    async def test_stray_header_row_is_skipped(self, repo, settings):
        rows = [
            ["Phone", "Name", "Device", "Timestamp"],
            ["0123456789", "Ali", "dev-01", "1/27/2026 10:00"],
            ["", "No phone", "dev-01", ""],
        ]
        result = await PositionalLeadIngester(repo, settings).ingest(rows)

        assert counts(result) == (1, 0, 0, 2)
        lead = repo.lead_by_phone("0123456789")
        assert lead["name"] == "Ali"
        assert lead["received_date"] == date(2026, 1, 27)

    async def test_source_comes_from_context(self, repo, settings):
        source = await repo.create_source("Device")
        await PositionalLeadIngester(repo, settings).ingest(
            [["0123456789", "Ali"]], IngestionContext(source_ids=[source.source_id]))
        assert repo.lead_by_phone("0123456789")["source_id"] == source.source_id


# ============================================================
# Chunk transactions
# ============================================================

async def test_failed_chunk_rolls_back_and_fails_remaining_rows(repo, settings, monkeypatch):
    tag = await repo.create_tag("Batch")
    original = InMemoryLeadBatch.insert_leads

    async def flaky_insert(self, leads, source_id=None):
        ids = await original(self, leads, source_id)
        if any(lead.phone_number == "0200000002" for lead in leads):
            raise StorageError("connection reset")
        return ids

    monkeypatch.setattr(InMemoryLeadBatch, "insert_leads", flaky_insert)

    rows = [
        {"phone": "0100000001", "name": "A"},
        {"phone": "0200000002", "name": "B"},
        {"phone": "0300000003", "name": "C"},
    ]
    # One lead per chunk
    ingester = MinimalLeadIngester(repo, settings, max_query_params=LEAD_COLUMNS_PER_ROW)
    result = await ingester.ingest(rows, IngestionContext(tag_ids=[tag.tag_id]))

    assert counts(result) == (1, 0, 2, 0)
    assert result.processed == len(rows)
    assert len(result.errors) == 1
    assert "rolled back" in result.errors[0]

    kept = repo.lead_by_phone("0100000001")
    assert kept is not None
    assert repo.tags_of(kept["lead_id"]) == {tag.tag_id}
    assert repo.lead_by_phone("0200000002") is None
    assert repo.lead_by_phone("0300000003") is None
