from datetime import datetime

import pytest

from clinical_ingest.commons.errors import FormatError, MalformedFieldError, MissingSegmentError
from clinical_ingest.parsers.assembler import ExtractionSchema, ReportAssembler
from clinical_ingest.parsers.base import SegmentTokenizer
from clinical_ingest.validation.validators import validate_transmission_or_raise

NOW = datetime(2026, 1, 2, 3, 4, 5)

ORU = """MSH|^~\\&|LAB|HOSP|EMR|CLINIC|20250817141000||ORU^R01|MSG1|P|2.5
PID|1||MRN-12345^^^HOSP^MR||Doe^John^Q||19800102|M
OBR|1|ORD1|||||20250817140900
OBX|1|NM|HGB^HEMOGLOBIN^LN||145|^g/L|120-172|N||F
OBX|2|NM|WBC^LEUKOCYTES^LN||11.9|10*9/L|4.0-11.0|H||F
OBX|3|ST|COM^COMMENT||see note
"""

NO_MSH = """PID|1||555||Roe^Richard||19600229
OBX|1|NM|GLU||5.4|mmol/L|3.9-5.5
"""

NO_PID = """MSH|^~\\&|LAB|HOSP|EMR|CLINIC|20250817141000||ORU^R01|MSG1|P|2.5
OBX|1|NM|GLU||5.4|mmol/L|3.9-5.5
"""

NO_OBX = """MSH|^~\\&|LAB|HOSP|EMR|CLINIC|20250817141000||ORU^R01|MSG1|P|2.5
PID|1||555||Roe^Richard||19600229
"""

BAD_FIELDS = """MSH|^~\\&|LAB|HOSP|EMR|CLINIC|not-a-time||ORU^R01|MSG1|P|2.5
PID|1||MRN-1||Roe^Richard||31/31/1980
OBX|1|NM|GLU||5.4||3.9-5.5
OBX|2|NM|
OBX|3|NM|K
"""


def assemble(text, **kw):
    return ReportAssembler(now=lambda: NOW, **kw).assemble(SegmentTokenizer().tokenize(text))


def test_observation_count_and_order_preserved():
    tx = assemble(ORU).transmission
    assert [o.code for o in tx.observations] == ["HGB", "WBC", "COM"]
    assert tx.observations[0].value == "145"
    assert tx.observations[0].unit == "g/L"
    assert tx.observations[0].reference_range == "120-172"
    assert tx.observations[0].abnormal_flag == "N"
    assert tx.observations[1].abnormal_flag == "H"
    # "^" would split a unit into components; 10*9/L must survive intact
    assert tx.observations[1].unit == "10*9/L"


def test_header_fields():
    tx = assemble(ORU).transmission
    assert tx.report_date == "2025-08-17T14:10:00"
    assert tx.message_type == "ORU^R01"


def test_patient_identifiers_normalized():
    ids = assemble(ORU).transmission.patient_identifiers
    assert ids.mrn == "MRN12345"
    assert ids.mrn_kind == "alphanumeric"
    assert ids.canonical_name == "DOE^JOHN^Q"
    assert ids.date_of_birth == "1980-01-02"


def test_payload_matches_canonical_schema():
    payload = assemble(ORU).transmission.to_payload()
    model = validate_transmission_or_raise(payload)
    assert len(model.observations) == 3
    assert payload["patientIdentifiers"] == {
        "mrn": "MRN12345",
        "name": {"last": "DOE", "first": "JOHN", "middle": "Q"},
        "dateOfBirth": "1980-01-02",
    }


def test_missing_pid_is_fatal():
    with pytest.raises(MissingSegmentError) as exc:
        assemble(NO_PID)
    assert exc.value.segment == "PID"
    assert exc.value.to_dict()["kind"] == "MissingSegmentError"


def test_missing_obx_is_fatal():
    with pytest.raises(MissingSegmentError) as exc:
        assemble(NO_OBX)
    assert exc.value.segment == "OBX"


def test_missing_pid_is_fatal_in_robust_mode_too():
    with pytest.raises(MissingSegmentError):
        assemble(NO_PID, robust=True)


def test_two_pids_cannot_be_attributed():
    text = ORU.replace("OBR|", "PID|2||999||Other^Person\nOBR|")
    with pytest.raises(FormatError):
        assemble(text)


def test_pid_without_identifiers_counts_as_missing():
    with pytest.raises(MissingSegmentError):
        assemble("PID|1\nOBX|1|NM|GLU||5.4\n")


def test_absent_msh_falls_back():
    result = assemble(NO_MSH)
    assert result.transmission.report_date == "2026-01-02T03:04:05"
    assert result.transmission.message_type == "UNKNOWN"
    assert any(w.segment == "MSH" for w in result.warnings)


def test_name_components_kept_positionally():
    two = assemble(NO_MSH).transmission.patient_identifiers.name
    assert (two.last, two.first, two.middle) == ("ROE", "RICHARD", None)

    four = assemble(ORU.replace("Doe^John^Q", "Doe^John^Q^Jr")).transmission
    assert four.patient_identifiers.name.extra == ("JR",)


def test_robust_mode_marks_fields_absent_and_warns():
    result = assemble(BAD_FIELDS, robust=True)
    tx = result.transmission

    assert tx.report_date == "2026-01-02T03:04:05"
    assert tx.patient_identifiers.date_of_birth is None
    assert tx.patient_identifiers.mrn == "MRN1"
    assert len(tx.observations) == 3
    assert tx.observations[1].code is None
    assert tx.observations[2].value is None

    malformed = {(w.segment, w.index) for w in result.warnings if w.kind == "MalformedFieldError"}
    assert {("MSH", 7), ("PID", 7), ("OBX", 3), ("OBX", 5)} <= malformed


def test_strict_mode_raises_on_malformed_field():
    with pytest.raises(MalformedFieldError) as exc:
        assemble(BAD_FIELDS, robust=False)
    assert exc.value.segment == "PID"
    assert exc.value.index == 7
    assert exc.value.line == 2


def test_empty_field_preserved_absent_field_omitted():
    obs = assemble(BAD_FIELDS).transmission.observations[0]
    assert obs.unit == ""
    assert obs.abnormal_flag is None
    out = obs.to_dict()
    assert out["unit"] == ""
    assert "abnormalFlag" not in out


def test_code_system_only_when_requested():
    plain = assemble(ORU).transmission.observations[0]
    assert plain.code_system is None and plain.code_text is None

    schema = ExtractionSchema(include_code_system=True)
    coded = assemble(ORU, schema=schema).transmission.observations[0]
    assert coded.code == "HGB"
    assert coded.code_text == "HEMOGLOBIN"
    assert coded.code_system == "LN"


def test_report_ids_are_unique_even_with_warnings():
    ids = {assemble(BAD_FIELDS).transmission.report_id for _ in range(5)}
    assert len(ids) == 5
