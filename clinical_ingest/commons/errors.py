from enum import Enum
from typing import Any, Dict, Optional, Sequence


class ErrorKind(str, Enum):
    IO = "IOError"
    FORMAT = "FormatError"
    MISSING_SEGMENT = "MissingSegmentError"
    MALFORMED_FIELD = "MalformedFieldError"
    NO_MATCH = "NoMatchError"
    AMBIGUOUS_MATCH = "AmbiguousMatchError"
    DIRECTORY_CONFLICT = "DirectoryConflictError"


class IngestError(Exception):
    """Base of every error the ingestion core reports.

    `to_dict()` yields the error payload `{kind, message, line?}`.
    """

    kind: ErrorKind = ErrorKind.FORMAT

    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line
        # pipeline state at which processing halted, set by IngestEngine
        self.state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.line is not None:
            out["line"] = self.line
        return out


class ReportIOError(IngestError):
    kind = ErrorKind.IO


class FormatError(IngestError):
    kind = ErrorKind.FORMAT


class MissingSegmentError(IngestError):
    kind = ErrorKind.MISSING_SEGMENT

    def __init__(self, segment: str, message: Optional[str] = None):
        super().__init__(message or f"required segment {segment} is missing")
        self.segment = segment


class MalformedFieldError(IngestError):
    kind = ErrorKind.MALFORMED_FIELD

    def __init__(self, segment: str, index: int, message: str, line: Optional[int] = None):
        super().__init__(message, line=line)
        self.segment = segment
        self.index = index


class NoMatchError(IngestError):
    kind = ErrorKind.NO_MATCH

    def __init__(self, best_score: float):
        super().__init__(f"no patient matched (best score {best_score:.3f})")
        self.best_score = best_score


class AmbiguousMatchError(IngestError):
    kind = ErrorKind.AMBIGUOUS_MATCH

    def __init__(self, candidates: Sequence[str]):
        ids = ", ".join(candidates)
        super().__init__(f"ambiguous match between patients: {ids}")
        self.candidates = tuple(candidates)


class DirectoryConflictError(IngestError):
    kind = ErrorKind.DIRECTORY_CONFLICT

    def __init__(self, patient_id: str, report_id: str):
        super().__init__(f"could not append report {report_id} to patient {patient_id}")
        self.patient_id = patient_id
        self.report_id = report_id


# Collaborator errors (auth / directory). Not part of the ingestion payload.
class AuthenticationError(Exception):
    pass


class PermissionDeniedError(Exception):
    pass


class DuplicatePatientError(Exception):
    pass


class PatientNotFoundError(Exception):
    pass
