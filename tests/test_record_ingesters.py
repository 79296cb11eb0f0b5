from datetime import date

import pytest

from models import IngestionContext
from record_ingesters import (
    CLINICAL_INGESTERS, ConsultationIngester, DailyDoctorSalesIngester,
    InvoiceIngester, ItemizedSalesIngester, MedicinePrescriptionIngester,
    PatientDetailsIngester, ProcedurePrescriptionIngester, RowView,
    discover_doctor_columns,
)


def counts(result):
    return (result.inserted, result.updated, result.failed, result.skipped)


# ============================================================
# Row access
# ============================================================

def test_row_view_aliases_and_amounts():
    row = RowView({"Phone No": " 0123 ", "MED": "", "CONS": "50.00"})
    assert row.get(("PHONENO", "PHONE NO")) == "0123"
    assert row.text(("NAME",)) is None
    assert row.amount(("CONS",)) == 50.0
    # Blank cell is a zero amount, a missing column is no value at all
    assert row.amount(("MED",)) == 0.0
    assert row.amount(("LAB",)) is None


# ============================================================
# Patient Details
# ============================================================

class TestPatientDetails:

    async def test_scenario_inserts_one_patient(self, repo, patient_rows):
        result = await PatientDetailsIngester(repo).ingest(patient_rows)

        assert counts(result) == (1, 0, 0, 0)
        patient = repo.patient_by_phone("0123456789")
        assert patient["name"] == "Jane Doe"
        assert patient["mrn_no"] == "M001"
        assert patient["id_no"] == "A123"
        assert patient["first_visit_date"] == date(2020, 1, 15)

    async def test_reingest_is_idempotent(self, repo, patient_rows):
        first = await PatientDetailsIngester(repo).ingest(patient_rows)
        second = await PatientDetailsIngester(repo).ingest(patient_rows)

        assert second.inserted == 0
        assert second.updated == first.inserted
        assert len(repo.patients) == 1

    async def test_blank_cell_never_clobbers_stored_value(self, repo, patient_rows):
        await PatientDetailsIngester(repo).ingest(patient_rows)
        blanked = [{**patient_rows[0], "NAME": "", "MRN NO": "", "EMAIL": "jane@example.com"}]
        await PatientDetailsIngester(repo).ingest(blanked)

        patient = repo.patient_by_phone("0123456789")
        assert patient["name"] == "Jane Doe"
        assert patient["mrn_no"] == "M001"
        assert patient["email"] == "jane@example.com"

    async def test_missing_phone_fails_the_row_only(self, repo, patient_rows):
        rows = patient_rows + [{"NAME": "No Phone", "PHONE NO": ""}]
        result = await PatientDetailsIngester(repo).ingest(rows)

        assert counts(result) == (1, 0, 1, 0)
        assert result.processed == len(rows)
        assert "row 2: missing PHONE NO" in result.errors

    async def test_id_no_excel_artifact_is_cleaned(self, repo):
        rows = [{"NAME": "Ali", "PHONE NO": "0198887777", "ID NO": '="900101-14-5678"'}]
        await PatientDetailsIngester(repo).ingest(rows)
        assert repo.patient_by_phone("0198887777")["id_no"] == "900101-14-5678"


# ============================================================
# Consultations
# ============================================================

class TestConsultation:

    async def test_creates_patient_doctor_and_consultation(self, repo, consultation_row):
        result = await ConsultationIngester(repo).ingest([consultation_row])

        assert counts(result) == (1, 0, 0, 0)
        assert repo.patient_by_phone("0123456789")["name"] == "Jane Doe"
        (doctor,) = repo.doctors.values()
        assert (doctor["doctor_name"], doctor["doctor_code"]) == ("Dr. Tan", "042")

        (consultation,) = repo.consultations.values()
        assert consultation["visit_date"] == date(2026, 1, 27)
        assert consultation["visit_time"] == "14:30:00"
        assert consultation["total_payment"] == 120.5
        assert consultation["diagnosis"] == "Acute bronchitis"

    async def test_doctor_written_with_prefix_is_not_duplicated(self, repo, consultation_row):
        later = {**consultation_row, "DOCTOR'S NAME": "Dr. Tan (042)", "TIME": "4:00 PM"}
        result = await ConsultationIngester(repo).ingest([consultation_row, later])

        assert counts(result) == (2, 0, 0, 0)
        assert len(repo.doctors) == 1
        assert repo.calls["find_or_create_doctor"] == 1

    async def test_reingest_updates(self, repo, consultation_row):
        await ConsultationIngester(repo).ingest([consultation_row])
        result = await ConsultationIngester(repo).ingest([consultation_row])

        assert counts(result) == (0, 1, 0, 0)
        assert len(repo.consultations) == 1

    async def test_missing_doctor_or_date_fails(self, repo, consultation_row):
        rows = [
            {**consultation_row, "DOCTOR'S NAME": ""},
            {**consultation_row, "DATE": "not a date"},
            {**consultation_row, "PATIENT'S ICNO": ""},
        ]
        result = await ConsultationIngester(repo).ingest(rows)

        assert counts(result) == (0, 0, 3, 0)
        assert repo.consultations == {}


# ============================================================
# Prescriptions
# ============================================================

def prescription_row(**overrides):
    row = {
        "DATE": "27/01/2026",
        "IC/PASSPORT": "900101145678",
        "MRN NO": "M001",
        "NAME": "Jane Doe",
        "PRESCRIBING DOCTOR": "Lim",
        "PROCEDURE": "Wound dressing",
        "CODE": "P01",
        "QUANTITY": "1",
    }
    row.update(overrides)
    return row


class TestPrescriptions:

    async def test_patient_found_by_mrn(self, repo, patient_rows):
        await PatientDetailsIngester(repo).ingest(patient_rows)
        patient_id = repo.patient_by_phone("0123456789")["patient_id"]

        result = await ProcedurePrescriptionIngester(repo).ingest([prescription_row()])

        assert counts(result) == (1, 0, 0, 0)
        (stored,) = repo.procedure_prescriptions.values()
        assert stored["patient_id"] == patient_id
        assert stored["item_code"] == "P01"
        assert stored["item_name"] == "Wound dressing"
        assert len(repo.patients) == 1

    async def test_patient_created_from_ic_when_mrn_unknown(self, repo):
        result = await ProcedurePrescriptionIngester(repo).ingest(
            [prescription_row(**{"MRN NO": "M999"})])

        assert counts(result) == (1, 0, 0, 0)
        assert repo.patient_by_phone("900101145678")["mrn_no"] == "M999"

    async def test_short_ic_with_unknown_mrn_fails(self, repo):
        result = await ProcedurePrescriptionIngester(repo).ingest(
            [prescription_row(**{"MRN NO": "", "IC/PASSPORT": "A12"})])
        assert counts(result) == (0, 0, 1, 0)

    async def test_over_the_counter_and_empty_item_are_skipped(self, repo):
        rows = [
            prescription_row(**{"PRESCRIBING DOCTOR": "OTC"}),
            prescription_row(PROCEDURE=""),
        ]
        result = await ProcedurePrescriptionIngester(repo).ingest(rows)
        assert counts(result) == (0, 0, 0, 2)

    async def test_medicine_goes_to_its_own_table(self, repo):
        row = prescription_row(MEDICINE="Paracetamol 500mg", CODE="M10")
        del row["PROCEDURE"]
        result = await MedicinePrescriptionIngester(repo).ingest([row, row])

        assert counts(result) == (1, 1, 0, 0)
        assert len(repo.medicine_prescriptions) == 1
        assert repo.procedure_prescriptions == {}


# ============================================================
# Invoices & Itemized Sales
# ============================================================

class TestInvoicesAndSales:

    async def test_invoice(self, repo, invoice_row):
        result = await InvoiceIngester(repo).ingest([invoice_row])

        assert counts(result) == (1, 0, 0, 0)
        invoice = repo.invoices["INV-0001"]
        assert invoice["invoice_total"] == 1200.0
        assert invoice["receipt_code"] == "INV-0001"
        assert invoice["patient_id"] == repo.patient_by_phone("0123456789")["patient_id"]
        assert invoice["doctor_id"] is not None

    async def test_invoice_with_short_phone_has_no_patient(self, repo, invoice_row):
        await InvoiceIngester(repo).ingest([{**invoice_row, "PATIENT PHONE NO": "123"}])
        assert repo.invoices["INV-0001"]["patient_id"] is None
        assert repo.patients == {}

    async def test_invoice_without_code_fails(self, repo, invoice_row):
        result = await InvoiceIngester(repo).ingest([{**invoice_row, "INVOICE/RECEIPT CODE": ""}])
        assert counts(result) == (0, 0, 1, 0)

    async def test_itemized_sale_links_patient_through_invoice(self, repo, invoice_row):
        await InvoiceIngester(repo).ingest([invoice_row])
        rows = [{
            "VIST DATE": "27/01/2026", "INCOIVE CODE": "INV-0001",
            "RECEIPT CODE": "R-0001", "DOCTOR": "Tan (042)",
            "CONS": "50.00", "MED": "", "TOTAL": "50.00",
        }]
        result = await ItemizedSalesIngester(repo).ingest(rows)

        assert counts(result) == (1, 0, 0, 0)
        sale = repo.itemized_sales["INV-0001"]
        assert sale["patient_id"] == repo.invoices["INV-0001"]["patient_id"]
        assert sale["consultation_amount"] == 50.0
        assert sale["medicine_amount"] == 0.0
        assert sale["lab_amount"] is None
        # Same doctor as the invoice
        assert len(repo.doctors) == 1


# ============================================================
# Daily Doctor Sales
# ============================================================

DAILY_HEADERS = ["DATE", "Dr. A (VISIT NO)", "Dr. A (TOTAL SALES)",
                 "Dr. B (VISIT NO)", "Dr. B (TOTAL SALES)"]


def daily_row(values):
    return dict(zip(DAILY_HEADERS, values))


def test_discover_doctor_columns():
    assert discover_doctor_columns(DAILY_HEADERS) == [
        ("Dr. A", "Dr. A (VISIT NO)", "Dr. A (TOTAL SALES)"),
        ("Dr. B", "Dr. B (VISIT NO)", "Dr. B (TOTAL SALES)"),
    ]


class TestDailyDoctorSales:

    async def test_zero_activity_writes_nothing(self, repo):
        rows = [{"DATE": "27/01/2026", "Dr. A (VISIT NO)": "0", "Dr. A (TOTAL SALES)": "0.00"}]
        result = await DailyDoctorSalesIngester(repo).ingest(rows)

        assert counts(result) == (0, 0, 0, 1)
        assert repo.daily_doctor_sales == {}

    async def test_only_active_doctors_are_written(self, repo):
        rows = [daily_row(["27/01/2026", "3", "300.00", "0", "0"])]
        result = await DailyDoctorSalesIngester(repo).ingest(rows)

        assert counts(result) == (1, 0, 0, 0)
        (sale,) = repo.daily_doctor_sales.values()
        assert sale["visit_count"] == 3
        assert sale["total_sales"] == 300.0
        assert [d["doctor_name"] for d in repo.doctors.values()] == ["Dr. A"]

    async def test_total_row_is_skipped_and_rerun_updates(self, repo):
        rows = [
            daily_row(["27/01/2026", "3", "300.00", "1", "80.00"]),
            daily_row(["TOTAL", "3", "300.00", "1", "80.00"]),
        ]
        first = await DailyDoctorSalesIngester(repo).ingest(rows)
        second = await DailyDoctorSalesIngester(repo).ingest(rows)

        assert counts(first) == (1, 0, 0, 1)
        assert counts(second) == (0, 1, 0, 1)
        assert len(repo.daily_doctor_sales) == 2


# ============================================================
# Invariants
# ============================================================

async def test_outcome_counts_always_sum_to_rows(repo, patient_rows, consultation_row):
    rows = [
        consultation_row,
        {**consultation_row, "DOCTOR'S NAME": ""},
        {},
        {**consultation_row, "TIME": "9:00"},
    ]
    result = await ConsultationIngester(repo).ingest(rows, IngestionContext(upload_id=1))
    assert result.processed == len(rows)


@pytest.mark.parametrize("record_type", list(CLINICAL_INGESTERS))
async def test_every_ingester_accepts_an_empty_file(repo, record_type):
    result = await CLINICAL_INGESTERS[record_type](repo).ingest([])
    assert result.processed == 0
