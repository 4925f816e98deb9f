from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Literal, Optional, Tuple, Union

from clinical_ingest.commons.errors import AmbiguousMatchError, NoMatchError


class MatchStage(str, Enum):
    EXACT_MRN = "exact_mrn"
    EXACT_NAME_DOB = "exact_name_dob"
    FUZZY = "fuzzy"


@dataclass(frozen=True)
class DirectoryEntry:
    """One patient of a directory snapshot, identifiers already normalized."""

    patient_id: str
    normalized_mrn: Optional[str] = None
    normalized_name: Optional[str] = None
    normalized_dob: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    patient_id: str
    entry: DirectoryEntry
    score: float = 1.0
    mrn_sim: Optional[float] = None  # None: term dropped
    name_sim: float = 0.0
    dob_sim: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patientId": self.patient_id,
            "score": round(self.score, 4),
            "mrnSim": None if self.mrn_sim is None else round(self.mrn_sim, 4),
            "nameSim": round(self.name_sim, 4),
            "dobSim": round(self.dob_sim, 4),
        }


@dataclass(frozen=True)
class Unique:
    patient_id: str
    confidence: float
    stage: MatchStage
    kind: Literal["unique"] = "unique"

    def require_unique(self) -> "Unique":
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "patientId": self.patient_id,
            "confidence": round(self.confidence, 4),
            "stage": self.stage.value,
        }


@dataclass(frozen=True)
class Ambiguous:
    candidates: Tuple[MatchCandidate, ...]
    stage: MatchStage
    kind: Literal["ambiguous"] = "ambiguous"

    def require_unique(self) -> Unique:
        raise AmbiguousMatchError([c.patient_id for c in self.candidates])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "stage": self.stage.value,
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass(frozen=True)
class Rejected:
    best_score: float
    candidates: Tuple[MatchCandidate, ...] = ()
    kind: Literal["rejected"] = "rejected"

    def require_unique(self) -> Unique:
        raise NoMatchError(self.best_score)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "bestScore": round(self.best_score, 4),
            "candidates": [c.to_dict() for c in self.candidates],
        }


MatchDecision = Union[Unique, Ambiguous, Rejected]
