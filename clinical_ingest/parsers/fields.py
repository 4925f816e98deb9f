from typing import Dict, Iterable, Mapping, Optional

from clinical_ingest.parsers.models import CanonicalField, Delimiters, RawSegment, SegmentKind


class FieldDecoder:
    """Field/component access on tokenized segments.

    Field numbers follow HL7: PID-5 is the fifth value after the tag. For MSH
    the field separator itself is MSH-1, so MSH-2 is the first stored value.
    """

    def __init__(self, delimiters: Optional[Delimiters] = None):
        self.delimiters = delimiters or Delimiters()

    def _position(self, segment: RawSegment, index: int) -> int:
        return index - 2 if segment.kind == SegmentKind.MSH else index - 1

    def field(self, segment: RawSegment, index: int, components: bool = False) -> CanonicalField:
        if segment.kind == SegmentKind.MSH and index == 1:
            return CanonicalField(value=self.delimiters.field)
        pos = self._position(segment, index)
        if pos < 0 or pos >= len(segment.fields):
            return CanonicalField.ABSENT
        raw = segment.fields[pos]
        # only the first repetition is meaningful for identifiers and results
        if self.delimiters.repetition and not (segment.kind == SegmentKind.MSH and index == 2):
            raw = raw.split(self.delimiters.repetition, 1)[0]
        if not components:
            return CanonicalField(value=raw)
        return CanonicalField(value=raw, components=tuple(raw.split(self.delimiters.component)))

    def decode(
        self, segment: RawSegment, indices: Iterable[int], split: Iterable[int] = ()
    ) -> Dict[int, CanonicalField]:
        """Requested fields by index; absent indices are omitted, empty ones kept."""
        split = set(split)
        out: Dict[int, CanonicalField] = {}
        for idx in indices:
            fld = self.field(segment, idx, components=idx in split)
            if fld.is_absent:
                continue
            out[idx] = fld
        return out

    def decode_schema(self, segment: RawSegment, schema: Mapping[int, bool]) -> Dict[int, CanonicalField]:
        """`schema` maps field index -> whether to split components."""
        return self.decode(segment, schema.keys(), [i for i, s in schema.items() if s])

    def encode(self, segment: RawSegment) -> str:
        """Re-join a segment with the same delimiters."""
        if not segment.fields and segment.kind == SegmentKind.UNRECOGNIZED and segment.warning:
            return segment.raw.strip()
        if not segment.fields:
            return segment.tag
        return segment.tag + self.delimiters.field + self.delimiters.field.join(segment.fields)
