import pytest

from clinical_ingest.commons.identifiers import (
    ALPHANUMERIC,
    NUMERIC,
    canonical_name,
    dob_precision,
    mrn_kind,
    normalize_dob,
    normalize_mrn,
    normalize_name,
    normalize_timestamp,
)


def test_name_components_trimmed_and_uppercased():
    name = normalize_name("  doe ^ john   paul ^ q ")
    assert name.last == "DOE"
    assert name.first == "JOHN PAUL"
    assert name.middle == "Q"
    assert name.canonical() == "DOE^JOHN PAUL^Q"


def test_name_free_text_forms_share_component_order():
    assert canonical_name("John Doe") == "DOE^JOHN"
    assert canonical_name("Doe, John") == "DOE^JOHN"
    assert canonical_name(["Doe", "John", ""]) == "DOE^JOHN"
    assert canonical_name("John Quincy Doe") == "DOE^JOHN^QUINCY"


def test_name_extra_components_kept_positionally():
    name = normalize_name(["Doe", "John", "Q", "Jr"])
    assert name.extra == ("JR",)
    assert name.canonical() == "DOE^JOHN^Q^JR"


def test_blank_name_is_absent():
    assert normalize_name("   ") is None
    assert normalize_name(["", "", ""]) is None
    assert normalize_name(None) is None


@pytest.mark.parametrize(
    "raw",
    ["Doe^John^Q", "John Doe", "  o'brien ,  mary  ann ", "DOE^JOHN", ["a", "", "c"]],
)
def test_name_normalization_is_idempotent(raw):
    once = normalize_name(raw)
    assert normalize_name(once) == once
    assert canonical_name(once.canonical()) == once.canonical()


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("01/02/1980", "1980-01-02"),  # month first when both readings are valid
        ("25/12/1980", "1980-12-25"),  # only day-first is valid
        ("1980-12-25", "1980-12-25"),
        ("19801225", "1980-12-25"),
        ("20250817141000", "2025-08-17"),
        ("20250817141000+0200", "2025-08-17"),
        ("198012", "1980-12"),
        ("1980", "1980"),
        ("1980/12/25", "1980-12-25"),
    ],
)
def test_dob_formats(raw, expected):
    assert normalize_dob(raw) == expected


@pytest.mark.parametrize("raw", ["not a date", "1980-02-30", "31/31/1980", "", None, "19801"])
def test_unparseable_dob_is_absent(raw):
    assert normalize_dob(raw) is None


@pytest.mark.parametrize("raw", ["01/02/1980", "19801225", "198012", "1980", "garbage"])
def test_dob_normalization_is_idempotent(raw):
    once = normalize_dob(raw)
    assert normalize_dob(once) == once


def test_dob_precision():
    assert dob_precision("1980-12-25") == 3
    assert dob_precision("1980-12") == 2
    assert dob_precision("1980") == 1
    assert dob_precision(None) == 0


def test_mrn_strips_punctuation_and_uppercases():
    assert normalize_mrn("mrn-12345") == "MRN12345"
    assert normalize_mrn(" 00-123 45 ") == "0012345"
    assert normalize_mrn("---") is None
    assert normalize_mrn(None) is None


def test_mrn_kind():
    assert mrn_kind("0012345") == NUMERIC
    assert mrn_kind("MRN12345") == ALPHANUMERIC
    assert mrn_kind(None) is None


@pytest.mark.parametrize("raw", ["MRN-12345", "mrn 12345", "12-34-5"])
def test_mrn_normalization_is_idempotent(raw):
    once = normalize_mrn(raw)
    assert normalize_mrn(once) == once


def test_timestamps():
    assert normalize_timestamp("20250817141000") == "2025-08-17T14:10:00"
    assert normalize_timestamp("202508171410") == "2025-08-17T14:10:00"
    assert normalize_timestamp("20250817") == "2025-08-17"
    assert normalize_timestamp("yesterday") is None
    assert normalize_timestamp("20251317") is None
