from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from clinical_ingest.commons.config import load_settings
from clinical_ingest.commons.errors import FormatError, IngestError
from clinical_ingest.commons.logger import logger
from clinical_ingest.helpers.sources import (
    decode_bytes,
    detect_source_format,
    extract_pdf_text,
    normalize_extracted_text,
)
from clinical_ingest.matching.engine import MatchEngine
from clinical_ingest.matching.models import DirectoryEntry, MatchDecision
from clinical_ingest.parsers.assembler import ExtractionSchema, ReportAssembler
from clinical_ingest.parsers.base import SegmentTokenizer
from clinical_ingest.parsers.models import (
    AssembledReport,
    IngestWarning,
    SourceFormat,
    Transmission,
)
from clinical_ingest.validation.validators import validate_transmission_or_raise


class PipelineState(str, Enum):
    RECEIVED = "Received"
    TOKENIZED = "Tokenized"
    ASSEMBLED = "Assembled"
    MATCHED = "Matched"


@dataclass(frozen=True)
class IngestResult:
    transmission: Transmission
    decision: MatchDecision
    warnings: Tuple[IngestWarning, ...] = field(default_factory=tuple)
    state: PipelineState = PipelineState.MATCHED

    def to_payload(self) -> Dict[str, Any]:
        return {
            "state": f"{self.state.value}{{{self.decision.kind.capitalize()}}}",
            "transmission": self.transmission.to_payload(),
            "decision": self.decision.to_dict(),
            "warnings": [w.to_dict() for w in self.warnings],
        }


class IngestEngine:
    """Facade over the whole pipeline.

    Received -> Tokenized -> Assembled -> Matched. Each step only advances on
    success; a failure is raised with the state it halted at and nothing is
    committed anywhere.
    """

    def __init__(self, config_path_or_obj: Any = None, now: Callable[[], datetime] = datetime.now):
        self.settings = load_settings(config_path_or_obj)
        ingest = self.settings.ingest
        self.tokenizer = SegmentTokenizer()
        self.assembler = ReportAssembler(
            schema=ExtractionSchema(include_code_system=ingest.include_code_system),
            robust=ingest.robust,
            now=now,
        )
        self.matcher = MatchEngine(self.settings.matching)

    def to_text(
        self,
        data: Union[bytes, str],
        filename: Optional[str] = None,
        source_format: Optional[str] = None,
    ) -> Tuple[str, SourceFormat]:
        if isinstance(data, str):
            fmt = detect_source_format(filename, b"", source_format, self.settings.ingest.extensions)
            text = data
        else:
            fmt = detect_source_format(filename, data, source_format, self.settings.ingest.extensions)
            if data[:4] == b"%PDF":
                text = extract_pdf_text(data)
            else:
                text = decode_bytes(data, self.settings.ingest.encodings)
        if fmt == SourceFormat.PDF_TEXT:
            text = normalize_extracted_text(text)
        return text, fmt

    def assemble(
        self,
        data: Union[bytes, str],
        filename: Optional[str] = None,
        source_format: Optional[str] = None,
    ) -> AssembledReport:
        state = PipelineState.RECEIVED
        try:
            text, fmt = self.to_text(data, filename, source_format)
            tokenized = self.tokenizer.tokenize(text)
            state = PipelineState.TOKENIZED
            assembled = self.assembler.assemble(tokenized, fmt)
            self._check_payload(assembled.transmission)
            return assembled
        except IngestError as ex:
            ex.state = state.value
            logger.warning(f"Ingest halted at {state.value}: {ex.kind.value}: {ex.message}")
            raise

    @staticmethod
    def _check_payload(transmission: Transmission) -> None:
        try:
            validate_transmission_or_raise(transmission.to_payload())
        except ValidationError as ex:
            raise FormatError(
                f"transmission violates the canonical schema ({ex.error_count()} error(s))"
            ) from ex

    def match(self, transmission: Transmission, snapshot: Sequence[DirectoryEntry]) -> MatchDecision:
        return self.matcher.match(transmission.patient_identifiers, snapshot)

    def ingest(
        self,
        data: Union[bytes, str],
        snapshot: Sequence[DirectoryEntry],
        filename: Optional[str] = None,
        source_format: Optional[str] = None,
    ) -> IngestResult:
        assembled = self.assemble(data, filename, source_format)
        decision = self.match(assembled.transmission, snapshot)
        logger.info(
            f"Report {assembled.transmission.report_id}: "
            f"{len(assembled.transmission.observations)} observation(s), decision={decision.kind}"
        )
        return IngestResult(
            transmission=assembled.transmission,
            decision=decision,
            warnings=assembled.warnings,
        )
