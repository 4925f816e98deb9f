import io
import re
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from pypdf import PdfReader
from pypdf.errors import PdfReadError

from clinical_ingest.commons.errors import FormatError, ReportIOError
from clinical_ingest.parsers.models import SourceFormat

PDF_MAGIC = b"%PDF"
_FORM_FEED = re.compile(r"[\f\v]")
_MSH_SEP = re.compile(r"^[ \t]*MSH[ \t]*([^\sA-Za-z0-9])", re.MULTILINE)


def read_source(path: Union[str, Path]) -> bytes:
    p = Path(path)
    try:
        data = p.read_bytes()
    except OSError as ex:
        raise ReportIOError(f"cannot read {p.name}: {ex.strerror or ex}") from ex
    if not data.strip():
        raise ReportIOError(f"{p.name} is empty")
    return data


def detect_source_format(
    filename: Optional[str], data: bytes, declared: Optional[str] = None, allowed: Iterable[str] = ()
) -> SourceFormat:
    """
    Declared tag wins ('hl7' | 'pdf-extracted-text' | 'pdf'); otherwise the
    file extension, then the PDF magic number.
    """
    if declared:
        tag = declared.lower()
        if tag == "pdf":
            return SourceFormat.PDF_TEXT
        try:
            return SourceFormat(tag)
        except ValueError:
            raise FormatError(f"unsupported source format {declared!r}")

    suffix = Path(filename).suffix.lower() if filename else ""
    allowed = [a.lower() for a in allowed]
    if suffix and allowed and suffix not in allowed:
        raise FormatError(f"unsupported file extension {suffix!r}")
    if suffix == ".pdf" or data[:4] == PDF_MAGIC:
        return SourceFormat.PDF_TEXT
    return SourceFormat.HL7


def decode_bytes(data: bytes, encodings: Sequence[str] = ("utf-8-sig", "cp1252")) -> str:
    for enc in encodings:
        try:
            return data.decode(enc)
        except (UnicodeDecodeError, LookupError):
            continue
    raise FormatError(f"undecodable input (tried {', '.join(encodings)})")


def extract_pdf_text(data: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except (PdfReadError, ValueError) as ex:
        raise FormatError(f"unreadable PDF: {ex}") from ex
    return "\n".join(pages)


def normalize_extracted_text(text: str, field_sep: Optional[str] = None) -> str:
    """
    Text pulled out of a PDF: page breaks become line breaks, lines are
    trimmed and the padding renderers put around field separators is dropped.
    """
    text = _FORM_FEED.sub("\n", text)
    if field_sep is None:
        m = _MSH_SEP.search(text)
        field_sep = m.group(1) if m else "|"
    pad = re.compile(r"[ \t]*" + re.escape(field_sep) + r"[ \t]*")
    lines = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        lines.append(pad.sub(field_sep, line))
    return "\n".join(lines)
