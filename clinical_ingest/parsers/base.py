import re
from typing import List, Optional

from clinical_ingest.commons.errors import ErrorKind, FormatError
from clinical_ingest.parsers.models import (
    Delimiters,
    IngestWarning,
    RawSegment,
    SegmentKind,
    TokenizedReport,
)

_LINE_SPLIT = re.compile(r"\r\n|\n|\r")
_TAG = re.compile(r"[A-Z][A-Z0-9]{2}")
_KNOWN = {k.value: k for k in (SegmentKind.MSH, SegmentKind.PID, SegmentKind.OBX)}


def split_segments(text: str, line_terminator: Optional[str] = None) -> List[tuple]:
    """(line_number, line) for every non-blank line, numbering 1-based on the source."""
    lines = _LINE_SPLIT.split(text) if line_terminator is None else text.split(line_terminator)
    return [(i, line.rstrip()) for i, line in enumerate(lines, start=1) if line.strip()]


def detect_delimiters(lines: List[tuple]) -> Delimiters:
    """
    Separators declared by the first MSH line:
    - field sep = 4th character (MSH-1)
    - MSH-2 = component, repetition, escape, subcomponent
    """
    stripped = (line.lstrip() for _, line in lines)
    msh = next((line for line in stripped if line.startswith("MSH")), "")
    if len(msh) < 4:
        return Delimiters()
    field_sep = msh[3]
    if field_sep.isalnum() or field_sep.isspace():
        return Delimiters()
    parts = msh.split(field_sep)
    enc = parts[1] if len(parts) > 1 else ""
    default = Delimiters()
    return Delimiters(
        field=field_sep,
        component=enc[0] if len(enc) > 0 else default.component,
        repetition=enc[1] if len(enc) > 1 else default.repetition,
        escape=enc[2] if len(enc) > 2 else default.escape,
        subcomponent=enc[3] if len(enc) > 3 else default.subcomponent,
    )


class SegmentTokenizer:
    def __init__(self, line_terminator: Optional[str] = None):
        self.line_terminator = line_terminator

    def tokenize(self, text: str) -> TokenizedReport:
        if not text or not text.strip():
            raise FormatError("report is empty")

        lines = split_segments(text, self.line_terminator)
        delims = detect_delimiters(lines)
        if not any(delims.field in line for _, line in lines):
            raise FormatError(f"no field separator '{delims.field}' found on any line")

        segments = [self._classify(n, line, delims) for n, line in lines]
        warnings = tuple(s.warning for s in segments if s.warning is not None)
        return TokenizedReport(segments=tuple(segments), delimiters=delims, warnings=warnings)

    def _classify(self, number: int, line: str, delims: Delimiters) -> RawSegment:
        # Leading whitespace only matters for PDF-extracted text; tags are positional.
        body = line.lstrip()
        tag = body[:3]
        rest = body[3:]
        well_formed = _TAG.fullmatch(tag) is not None and (rest == "" or rest.startswith(delims.field))
        if not well_formed:
            return RawSegment(
                tag=tag,
                fields=(),
                line=number,
                raw=line,
                kind=SegmentKind.UNRECOGNIZED,
                warning=IngestWarning(
                    kind=ErrorKind.FORMAT.value,
                    message=f"unrecognized segment: {body[:20]!r}",
                    line=number,
                ),
            )
        fields = tuple(rest[1:].split(delims.field)) if rest else ()
        return RawSegment(
            tag=tag,
            fields=fields,
            line=number,
            raw=line,
            kind=_KNOWN.get(tag, SegmentKind.UNRECOGNIZED),
        )
