from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple


class SegmentKind(str, Enum):
    MSH = "MSH"
    PID = "PID"
    OBX = "OBX"
    UNRECOGNIZED = "UNRECOGNIZED"


class SourceFormat(str, Enum):
    HL7 = "hl7"
    PDF_TEXT = "pdf-extracted-text"


@dataclass(frozen=True)
class Delimiters:
    field: str = "|"
    component: str = "^"
    repetition: str = "~"
    escape: str = "\\"
    subcomponent: str = "&"

    @property
    def encoding_chars(self) -> str:
        return self.component + self.repetition + self.escape + self.subcomponent


@dataclass(frozen=True)
class IngestWarning:
    kind: str
    message: str
    line: Optional[int] = None
    segment: Optional[str] = None
    index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class RawSegment:
    tag: str
    fields: Tuple[str, ...]
    line: int
    raw: str = ""
    kind: SegmentKind = SegmentKind.UNRECOGNIZED
    warning: Optional[IngestWarning] = None


@dataclass(frozen=True)
class TokenizedReport:
    segments: Tuple[RawSegment, ...]
    delimiters: Delimiters
    warnings: Tuple[IngestWarning, ...] = ()

    def of_kind(self, kind: SegmentKind) -> Tuple[RawSegment, ...]:
        return tuple(s for s in self.segments if s.kind == kind)


@dataclass(frozen=True)
class CanonicalField:
    value: str = ""
    components: Optional[Tuple[str, ...]] = None
    present: bool = True

    ABSENT: ClassVar["CanonicalField"]

    @property
    def is_absent(self) -> bool:
        return not self.present

    @property
    def is_empty(self) -> bool:
        return self.present and self.value == ""

    def component(self, index: int) -> Optional[str]:
        """1-based component, None when out of range or not split."""
        comps = self.components if self.components is not None else (self.value,)
        if not self.present or index < 1 or index > len(comps):
            return None
        return comps[index - 1]


CanonicalField.ABSENT = CanonicalField(value="", components=None, present=False)


@dataclass(frozen=True)
class PersonName:
    last: Optional[str] = None
    first: Optional[str] = None
    middle: Optional[str] = None
    extra: Tuple[str, ...] = ()

    @property
    def components(self) -> Tuple[str, ...]:
        comps = [self.last or "", self.first or "", self.middle or "", *self.extra]
        while comps and not comps[-1]:
            comps.pop()
        return tuple(comps)

    def canonical(self) -> str:
        return "^".join(self.components)

    def display(self) -> str:
        parts = [self.first, self.middle, self.last]
        return " ".join(p for p in parts if p)

    def is_empty(self) -> bool:
        return not self.components


@dataclass(frozen=True)
class PatientIdentifiers:
    mrn: Optional[str] = None
    mrn_kind: Optional[str] = None  # numeric | alphanumeric
    name: Optional[PersonName] = None
    date_of_birth: Optional[str] = None  # ISO-8601, possibly partial (YYYY, YYYY-MM)

    @property
    def canonical_name(self) -> Optional[str]:
        if self.name is None or self.name.is_empty():
            return None
        return self.name.canonical()

    def is_trivial(self) -> bool:
        return not (self.mrn or self.canonical_name or self.date_of_birth)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.mrn:
            out["mrn"] = self.mrn
        if self.canonical_name:
            out["name"] = {
                k: v
                for k, v in (
                    ("last", self.name.last),
                    ("first", self.name.first),
                    ("middle", self.name.middle),
                )
                if v
            }
        if self.date_of_birth:
            out["dateOfBirth"] = self.date_of_birth
        return out


@dataclass(frozen=True)
class ClinicalObservation:
    code: Optional[str]
    value: Optional[str]
    unit: Optional[str] = None
    reference_range: Optional[str] = None
    abnormal_flag: Optional[str] = None
    code_text: Optional[str] = None
    code_system: Optional[str] = None
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        pairs = (
            ("code", self.code),
            ("value", self.value),
            ("unit", self.unit),
            ("referenceRange", self.reference_range),
            ("abnormalFlag", self.abnormal_flag),
            ("codeText", self.code_text),
            ("codeSystem", self.code_system),
        )
        return {k: v for k, v in pairs if v is not None}


@dataclass(frozen=True)
class Transmission:
    report_id: str
    report_date: str
    message_type: str
    observations: Tuple[ClinicalObservation, ...]
    patient_identifiers: PatientIdentifiers
    source_format: SourceFormat = SourceFormat.HL7

    def __post_init__(self):
        if not self.observations:
            raise ValueError("a transmission needs at least one observation")
        if self.patient_identifiers.is_trivial():
            raise ValueError("a transmission needs at least one patient identifier")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "reportId": self.report_id,
            "reportDate": self.report_date,
            "messageType": self.message_type,
            "observations": [o.to_dict() for o in self.observations],
            "patientIdentifiers": self.patient_identifiers.to_dict(),
        }


@dataclass(frozen=True)
class AssembledReport:
    transmission: Transmission
    warnings: Tuple[IngestWarning, ...] = field(default_factory=tuple)
