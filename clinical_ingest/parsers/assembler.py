import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from clinical_ingest.commons.errors import (
    ErrorKind,
    FormatError,
    MalformedFieldError,
    MissingSegmentError,
)
from clinical_ingest.commons.identifiers import (
    mrn_kind,
    normalize_dob,
    normalize_mrn,
    normalize_name,
    normalize_timestamp,
)
from clinical_ingest.commons.logger import logger
from clinical_ingest.parsers.fields import FieldDecoder
from clinical_ingest.parsers.models import (
    AssembledReport,
    CanonicalField,
    ClinicalObservation,
    IngestWarning,
    PatientIdentifiers,
    RawSegment,
    SegmentKind,
    SourceFormat,
    TokenizedReport,
    Transmission,
)

UNKNOWN_MESSAGE_TYPE = "UNKNOWN"


@dataclass(frozen=True)
class ExtractionSchema:
    """Field index -> split into components?"""

    msh: Dict[int, bool] = field(default_factory=lambda: {7: False, 9: True})
    pid: Dict[int, bool] = field(default_factory=lambda: {3: True, 5: True, 7: False})
    obx: Dict[int, bool] = field(
        default_factory=lambda: {3: True, 5: False, 6: True, 7: False, 8: False}
    )
    include_code_system: bool = False


class ReportAssembler:
    def __init__(
        self,
        schema: Optional[ExtractionSchema] = None,
        robust: bool = True,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.schema = schema or ExtractionSchema()
        self.robust = robust
        self.now = now

    def assemble(
        self, report: TokenizedReport, source_format: SourceFormat = SourceFormat.HL7
    ) -> AssembledReport:
        pids = report.of_kind(SegmentKind.PID)
        if not pids:
            raise MissingSegmentError("PID")
        if len(pids) > 1:
            raise FormatError(
                f"expected exactly one PID segment, found {len(pids)}", line=pids[1].line
            )
        obxs = report.of_kind(SegmentKind.OBX)
        if not obxs:
            raise MissingSegmentError("OBX")

        decoder = FieldDecoder(report.delimiters)
        warnings: List[IngestWarning] = list(report.warnings)

        report_date, message_type = self._header(report, decoder, warnings)
        identifiers = self._identifiers(pids[0], decoder, warnings)
        if identifiers.is_trivial():
            raise MissingSegmentError("PID", "PID segment carries no usable patient identifiers")
        observations = tuple(self._observation(s, decoder, warnings) for s in obxs)

        transmission = Transmission(
            report_id=uuid.uuid4().hex,
            report_date=report_date,
            message_type=message_type,
            observations=observations,
            patient_identifiers=identifiers,
            source_format=source_format,
        )
        if warnings:
            logger.warning(
                f"Report {transmission.report_id} assembled with {len(warnings)} warning(s)"
            )
        return AssembledReport(transmission=transmission, warnings=tuple(warnings))

    # ---------- helpers ----------

    def _malformed(
        self, warnings: List[IngestWarning], seg: RawSegment, index: int, message: str
    ) -> None:
        """Robust mode records a warning; strict mode raises."""
        if not self.robust:
            raise MalformedFieldError(seg.tag, index, message, line=seg.line)
        warnings.append(
            IngestWarning(
                kind=ErrorKind.MALFORMED_FIELD.value,
                message=message,
                line=seg.line,
                segment=seg.tag,
                index=index,
            )
        )

    def _header(self, report: TokenizedReport, decoder: FieldDecoder, warnings: List[IngestWarning]):
        fallback_date = self.now().isoformat(timespec="seconds")
        mshs = report.of_kind(SegmentKind.MSH)
        if not mshs:
            warnings.append(
                IngestWarning(
                    kind=ErrorKind.MISSING_SEGMENT.value,
                    message="MSH segment absent; using ingestion time and UNKNOWN message type",
                    segment="MSH",
                )
            )
            return fallback_date, UNKNOWN_MESSAGE_TYPE

        # MSH problems never abort assembly, whatever the mode
        msh = mshs[0]
        fields = decoder.decode_schema(msh, self.schema.msh)
        ts = fields.get(7, CanonicalField.ABSENT)
        report_date = normalize_timestamp(ts.value)
        if report_date is None:
            report_date = fallback_date
            if ts.value:
                warnings.append(
                    IngestWarning(
                        kind=ErrorKind.MALFORMED_FIELD.value,
                        message=f"unparseable MSH-7 timestamp {ts.value!r}",
                        line=msh.line,
                        segment="MSH",
                        index=7,
                    )
                )

        mtype = fields.get(9, CanonicalField.ABSENT)
        comps = [c.strip() for c in (mtype.components or ())]
        while comps and not comps[-1]:
            comps.pop()
        message_type = "^".join(comps) if comps else UNKNOWN_MESSAGE_TYPE
        return report_date, message_type

    def _identifiers(
        self, pid: RawSegment, decoder: FieldDecoder, warnings: List[IngestWarning]
    ) -> PatientIdentifiers:
        fields = decoder.decode_schema(pid, self.schema.pid)

        mrn = None
        f3 = fields.get(3)
        if f3 is not None and not f3.is_empty:
            mrn = normalize_mrn(f3.component(1))
            if mrn is None:
                self._malformed(warnings, pid, 3, "PID-3 has no usable MRN")

        name = None
        f5 = fields.get(5)
        if f5 is not None and not f5.is_empty:
            name = normalize_name(f5.components)
            if name is None:
                self._malformed(warnings, pid, 5, "PID-5 patient name is blank")

        dob = None
        f7 = fields.get(7)
        if f7 is not None and not f7.is_empty:
            dob = normalize_dob(f7.value)
            if dob is None:
                self._malformed(warnings, pid, 7, "PID-7 date of birth unparseable")

        return PatientIdentifiers(mrn=mrn, mrn_kind=mrn_kind(mrn), name=name, date_of_birth=dob)

    def _observation(
        self, obx: RawSegment, decoder: FieldDecoder, warnings: List[IngestWarning]
    ) -> ClinicalObservation:
        fields = decoder.decode_schema(obx, self.schema.obx)

        code = code_text = code_system = None
        f3 = fields.get(3)
        if f3 is not None and (f3.component(1) or "").strip():
            code = f3.component(1).strip()
            if self.schema.include_code_system:
                code_text = f3.component(2) or None
                code_system = f3.component(3) or None
        else:
            self._malformed(warnings, obx, 3, "OBX-3 observation identifier is missing")

        value = None
        f5 = fields.get(5)
        if f5 is None:
            self._malformed(warnings, obx, 5, "OBX-5 observation value is absent")
        else:
            value = f5.value

        unit = None
        f6 = fields.get(6)
        if f6 is not None:
            # coded units arrive as "^g/L"; first non-empty component wins
            unit = next((c for c in (f6.components or ()) if c), "")

        f7 = fields.get(7)
        f8 = fields.get(8)
        return ClinicalObservation(
            code=code,
            value=value,
            unit=unit,
            reference_range=f7.value if f7 is not None else None,
            abnormal_flag=f8.value if f8 is not None else None,
            code_text=code_text,
            code_system=code_system,
            line=obx.line,
        )
