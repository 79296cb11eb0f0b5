from datetime import datetime

from file_detector import (
    classify, extract_representative_date, is_positional_export, record_types,
)
from models import Confidence, RecordType
from normalizers import CLINIC_TZ

PATIENT_HEADERS = ["NAME", "ID NO", "MRN NO", "PHONE NO", "FIRST VISIT DATE"]


def test_patient_details_scenario():
    detected = classify("export.csv", PATIENT_HEADERS)
    assert detected.type is RecordType.PATIENT_DETAILS
    assert detected.confidence is Confidence.HIGH
    assert detected.table_name == "patients"
    assert detected.file_name == "export.csv"


def test_headers_are_matched_case_and_whitespace_insensitively():
    headers = [" name", "id no ", "Mrn No", "phone no", "visit total"]
    assert classify("x.csv", headers).type is RecordType.PATIENT_DETAILS


def test_clinical_rule_wins_over_generic_lead_rule():
    # Also satisfies phone + name, the minimal lead signature
    headers = PATIENT_HEADERS + ["PHONE"]
    assert classify("x.csv", headers).type is RecordType.PATIENT_DETAILS


def test_consultation():
    headers = ["DATE", "DOCTOR'S NAME", "PATIENT'S NAME", "PATIENT'S ICNO",
               "DIAGNOSIS", "TOTAL PAYMENT"]
    assert classify("x.csv", headers).type is RecordType.CONSULTATION


def test_procedure_and_medicine_prescriptions():
    base = ["DATE", "IC/PASSPORT", "MRN NO", "NAME", "PRESCRIBING DOCTOR", "CODE"]
    assert classify("x.csv", base + ["PROCEDURE"]).type is RecordType.PROCEDURE_PRESCRIPTION
    assert classify("x.csv", base + ["MEDICINE"]).type is RecordType.MEDICINE_PRESCRIPTION


def test_itemized_sales_with_remedii_misspellings():
    headers = ["VIST DATE", "INCOIVE CODE", "RECEIPT CODE", "DOCTOR", "CONS", "MED", "TOTAL"]
    assert classify("x.csv", headers).type is RecordType.ITEMIZED_SALES


def test_invoice():
    headers = ["INVOICE DATE", "PATIENT NAME", "PATIENT IC NO", "PATIENT PHONE NO",
               "INVOICE/RECEIPT CODE", "INVOICE/RECEIPT TOTAL"]
    assert classify("x.csv", headers).type is RecordType.INVOICE


def test_daily_doctor_sales_dynamic_columns():
    headers = ["DATE", "Dr. A (VISIT NO)", "Dr. A (TOTAL SALES)"]
    assert classify("x.csv", headers).type is RecordType.DAILY_DOCTOR_SALES


def test_structured_and_minimal_leads():
    structured = ["Lead ID", "Username", "Name", "Phone number", "Received date"]
    detected = classify("leads.csv", structured)
    assert detected.type is RecordType.LEADS_STRUCTURED
    assert detected.confidence is Confidence.HIGH

    minimal = classify("leads.csv", ["phone", "name"])
    assert minimal.type is RecordType.LEADS_MINIMAL
    assert minimal.confidence is Confidence.MEDIUM


def test_filename_fallback_is_medium_confidence():
    detected = classify("PATIENT DETAILS REPORT Jan 2026.csv", ["something else"])
    assert detected.type is RecordType.PATIENT_DETAILS
    assert detected.confidence is Confidence.MEDIUM

    assert classify("doctor insights report - sales.csv").type is RecordType.DAILY_DOCTOR_SALES
    assert classify("Itemise Sales Report.csv").type is RecordType.ITEMIZED_SALES
    assert classify("device_8812.xlsx").type is RecordType.LEADS_POSITIONAL


def test_headers_win_over_filename():
    detected = classify("PATIENT DETAILS REPORT.csv", ["phone", "name"])
    assert detected.type is RecordType.LEADS_MINIMAL


def test_unknown_never_raises():
    detected = classify("notes.csv", ["a", "b"])
    assert detected.type is RecordType.UNKNOWN
    assert detected.confidence is Confidence.LOW
    assert detected.table_name == "unknown"
    assert classify("", None).type is RecordType.UNKNOWN


def test_positional_export_detection():
    assert is_positional_export("device_2026_01.xlsx")
    assert is_positional_export("DEVICE_abc.csv")
    assert not is_positional_export("my_device_leads.csv")
    assert not is_positional_export("")


def test_record_types_catalogue_covers_every_known_type():
    types = {d.type for d in record_types()}
    assert types == set(RecordType) - {RecordType.UNKNOWN}


class TestRepresentativeDate:

    def test_invoice_date(self):
        rows = [{"INVOICE DATE": "27/01/2026 10:15:00"}]
        assert extract_representative_date(RecordType.INVOICE, rows) == datetime(
            2026, 1, 27, 10, 15, tzinfo=CLINIC_TZ)

    def test_first_row_only(self):
        rows = [{"DATE": "01/02/2026"}, {"DATE": "05/02/2026"}]
        assert extract_representative_date(RecordType.CONSULTATION, rows) == datetime(
            2026, 2, 1, tzinfo=CLINIC_TZ)

    def test_structured_leads_use_lead_date_heuristic(self):
        rows = [{"Received date": "1/27/2026"}]
        assert extract_representative_date(RecordType.LEADS_STRUCTURED, rows) == datetime(
            2026, 1, 27, tzinfo=CLINIC_TZ)

    def test_missing_values(self):
        assert extract_representative_date(RecordType.INVOICE, []) is None
        assert extract_representative_date(RecordType.INVOICE, [{"INVOICE DATE": ""}]) is None
        assert extract_representative_date(RecordType.LEADS_MINIMAL, [{"phone": "1"}]) is None
        assert extract_representative_date(RecordType.LEADS_POSITIONAL, [["0123", "A"]]) is None
