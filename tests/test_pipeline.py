import pytest
from pydantic import ValidationError

from clinical_ingest.commons.config import load_settings
from clinical_ingest.commons.errors import FormatError, MalformedFieldError, MissingSegmentError
from clinical_ingest.commons.ingest_engine import IngestEngine, PipelineState
from clinical_ingest.helpers.sources import detect_source_format, normalize_extracted_text
from clinical_ingest.parsers.models import SourceFormat
from clinical_ingest.validation.validators import validate_error_or_raise

ORU = """MSH|^~\\&|LAB|HOSP|EMR|CLINIC|20250817141000||ORU^R01|MSG1|P|2.5
PID|1||MRN-12345||Doe^John||19800102
OBX|1|NM|HGB||145|g/L|120-172|N
OBX|2|NM|WBC||11.9|10*9/L|4.0-11.0|H
"""

# what a PDF renderer typically hands back: padded separators, page breaks
PDF_TEXT = (
    "  MSH | ^~\\&|LAB|HOSP|EMR|CLINIC|20250817141000||ORU^R01|MSG1|P|2.5\n"
    "PID | 1 || MRN-12345 || Doe^John || 19800102\f"
    "OBX|1|NM|HGB||145 | g/L|120-172|N\n\n"
    "   OBX|2|NM|WBC||11.9|10*9/L|4.0-11.0|H   \n"
)


def test_ingest_reaches_matched(engine, directory):
    pid = directory.add_patient("Doe", "John", "1980-01-02", mrn="MRN-12345")
    result = engine.ingest(ORU, directory.snapshot(), "report.hl7")

    assert result.state == PipelineState.MATCHED
    assert result.decision.patient_id == pid
    payload = result.to_payload()
    assert payload["state"] == "Matched{Unique}"
    assert result.transmission.source_format == SourceFormat.HL7
    assert payload["warnings"] == []


def test_bytes_are_decoded(engine, directory):
    directory.add_patient("Doe", "John", "1980-01-02", mrn="MRN-12345")
    data = b"\xef\xbb\xbf" + ORU.encode("utf-8")
    result = engine.ingest(data, directory.snapshot(), "report.hl7")
    assert len(result.transmission.observations) == 2


def test_failure_carries_halting_state(engine):
    with pytest.raises(MissingSegmentError) as exc:
        engine.assemble(ORU.replace("PID|1||MRN-12345||Doe^John||19800102\n", ""))
    assert exc.value.state == PipelineState.TOKENIZED.value

    with pytest.raises(FormatError) as exc:
        engine.assemble(b"")
    assert exc.value.state == PipelineState.RECEIVED.value


def test_error_payload_is_well_formed(engine):
    with pytest.raises(MissingSegmentError) as exc:
        engine.assemble("MSH|^~\\&|LAB\nPID|1||42||Roe^Richard\n")
    model = validate_error_or_raise(exc.value.to_dict())
    assert model.kind.value == "MissingSegmentError"


def test_pdf_extracted_text_gives_same_report(engine):
    plain = engine.assemble(ORU).transmission
    pdf = engine.assemble(PDF_TEXT, source_format="pdf-extracted-text").transmission

    assert pdf.source_format == SourceFormat.PDF_TEXT
    assert pdf.patient_identifiers == plain.patient_identifiers
    assert pdf.report_date == plain.report_date
    assert plain.observations[1].unit == "10*9/L"
    assert [o.to_dict() for o in pdf.observations] == [o.to_dict() for o in plain.observations]


def test_normalize_extracted_text():
    out = normalize_extracted_text(PDF_TEXT)
    lines = out.split("\n")
    assert len(lines) == 4
    assert lines[1] == "PID|1||MRN-12345||Doe^John||19800102"
    assert lines[2].startswith("OBX|1|NM|HGB||145|g/L|")


def test_source_format_detection():
    assert detect_source_format("a.hl7", b"MSH|") == SourceFormat.HL7
    assert detect_source_format("a.pdf", b"") == SourceFormat.PDF_TEXT
    assert detect_source_format(None, b"%PDF-1.7") == SourceFormat.PDF_TEXT
    assert detect_source_format("a.txt", b"", declared="pdf") == SourceFormat.PDF_TEXT
    with pytest.raises(FormatError):
        detect_source_format("a.hl7", b"", declared="docx")
    with pytest.raises(FormatError):
        detect_source_format("a.docx", b"", allowed=[".hl7", ".pdf"])


def test_unsupported_extension_rejected(engine):
    with pytest.raises(FormatError) as exc:
        engine.assemble(ORU.encode(), "report.docx")
    assert exc.value.state == "Received"


def test_undecodable_bytes_rejected(engine):
    with pytest.raises(FormatError):
        engine.assemble(b"MSH|\x81\x8d\x8f", "report.hl7")


def test_unreadable_pdf_rejected(engine):
    with pytest.raises(FormatError):
        engine.assemble(b"%PDF-1.4 this is not really a pdf", "report.pdf")


def test_strict_mode_from_config():
    engine = IngestEngine({"ingest": {"robust": False}})
    with pytest.raises(MalformedFieldError):
        engine.assemble(ORU.replace("19800102", "31/31/1980"))


# ----------------- configuration -----------------


def test_settings_from_yaml(tmp_path, monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    cfg = tmp_path / "settings.yaml"
    cfg.write_text(
        "matching:\n  threshold: 0.9\n  weights: {mrn: 0.0, name: 0.7, dob: 0.3}\n"
        "ingest:\n  extensions: ['.HL7']\n",
        encoding="utf-8",
    )
    s = load_settings(str(cfg))
    assert s.matching.threshold == 0.9
    assert s.matching.tie_epsilon == 0.05
    assert s.matching.weights.mrn == 0.0
    assert s.ingest.extensions == [".hl7"]
    assert s.log_level == "INFO"


def test_log_level_from_environment(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert load_settings({}).log_level == "DEBUG"


def test_zero_weights_rejected(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    with pytest.raises(ValidationError):
        load_settings({"matching": {"weights": {"mrn": 0, "name": 0, "dob": 0}}})
