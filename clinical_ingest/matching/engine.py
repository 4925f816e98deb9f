from typing import List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

from clinical_ingest.commons.identifiers import dob_precision, mrn_kind
from clinical_ingest.commons.logger import logger
from clinical_ingest.commons.types import MatchingCfg
from clinical_ingest.matching.models import (
    Ambiguous,
    DirectoryEntry,
    MatchCandidate,
    MatchDecision,
    MatchStage,
    Rejected,
    Unique,
)
from clinical_ingest.parsers.models import PatientIdentifiers

_PARTIAL_DOB = {1: 0.5, 2: 0.75}
_PRECISION = 10
REVIEW_CANDIDATES = 3


def name_similarity(a: Optional[str], b: Optional[str]) -> float:
    """1 - edit distance / longest length, on canonical name strings."""
    if not a or not b:
        return 0.0
    return 1.0 - Levenshtein.distance(a, b) / max(len(a), len(b))


def dob_similarity(a: Optional[str], b: Optional[str]) -> float:
    if not a or not b:
        return 0.0
    shared = min(dob_precision(a), dob_precision(b))
    if a.split("-")[:shared] != b.split("-")[:shared]:
        return 0.0
    return 1.0 if shared == 3 else _PARTIAL_DOB[shared]


def mrn_similarity(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """Character overlap of two mismatching MRNs; None drops the term."""
    if not a or not b:
        return None
    if mrn_kind(a) != mrn_kind(b):
        # numeric vs prefixed scheme: only the digits are comparable
        a = "".join(ch for ch in a if ch.isdigit())
        b = "".join(ch for ch in b if ch.isdigit())
        if not a or not b:
            return 0.0
    return Levenshtein.normalized_similarity(a, b)


class MatchEngine:
    """Stateless resolver of patient identifiers against a directory snapshot.

    Stage 1: exact MRN. Stage 2: exact name + DOB. Stage 3: weighted fuzzy
    score, accepted only above `threshold` and with a margin of at least
    `tie_epsilon` over the runner-up. Duplicates found by stages 1-2 are
    always reported as ambiguous.
    """

    def __init__(self, cfg: Optional[MatchingCfg] = None):
        self.cfg = cfg or MatchingCfg()

    def match(self, ids: PatientIdentifiers, snapshot: Sequence[DirectoryEntry]) -> MatchDecision:
        if ids.mrn:
            hits = [e for e in snapshot if e.normalized_mrn == ids.mrn]
            decision = self._exact(hits, MatchStage.EXACT_MRN)
            if decision is not None:
                return decision

        name = ids.canonical_name
        if name and ids.date_of_birth:
            hits = [
                e
                for e in snapshot
                if e.normalized_name == name and e.normalized_dob == ids.date_of_birth
            ]
            decision = self._exact(hits, MatchStage.EXACT_NAME_DOB)
            if decision is not None:
                return decision

        return self._fuzzy(ids, snapshot)

    def _exact(self, hits: List[DirectoryEntry], stage: MatchStage) -> Optional[MatchDecision]:
        if not hits:
            return None
        if len(hits) == 1:
            logger.debug(f"{stage.value}: unique hit {hits[0].patient_id}")
            return Unique(patient_id=hits[0].patient_id, confidence=1.0, stage=stage)
        logger.info(f"{stage.value}: {len(hits)} directory entries share the identifier")
        cands = tuple(
            MatchCandidate(patient_id=e.patient_id, entry=e, score=1.0)
            for e in sorted(hits, key=lambda e: e.patient_id)
        )
        return Ambiguous(candidates=cands, stage=stage)

    def score(self, ids: PatientIdentifiers, entry: DirectoryEntry) -> MatchCandidate:
        w = self.cfg.weights
        mrn_sim = mrn_similarity(ids.mrn, entry.normalized_mrn)
        name_sim = name_similarity(ids.canonical_name, entry.normalized_name)
        dob_sim = dob_similarity(ids.date_of_birth, entry.normalized_dob)

        if mrn_sim is None:
            total = w.name + w.dob
            score = (w.name * name_sim + w.dob * dob_sim) / total if total else 0.0
        else:
            total = w.mrn + w.name + w.dob
            score = (w.mrn * mrn_sim + w.name * name_sim + w.dob * dob_sim) / total

        return MatchCandidate(
            patient_id=entry.patient_id,
            entry=entry,
            score=round(score, _PRECISION),
            mrn_sim=mrn_sim,
            name_sim=name_sim,
            dob_sim=dob_sim,
        )

    def rank(self, ids: PatientIdentifiers, snapshot: Sequence[DirectoryEntry]) -> List[MatchCandidate]:
        scored = [self.score(ids, e) for e in snapshot]
        return sorted(scored, key=lambda c: (-c.score, c.patient_id))

    def _fuzzy(self, ids: PatientIdentifiers, snapshot: Sequence[DirectoryEntry]) -> MatchDecision:
        ranked = self.rank(ids, snapshot)
        if not ranked:
            return Rejected(best_score=0.0)

        top = ranked[0]
        if top.score < self.cfg.threshold:
            logger.info(f"fuzzy: best score {top.score:.3f} below threshold {self.cfg.threshold}")
            return Rejected(best_score=top.score, candidates=tuple(ranked[:REVIEW_CANDIDATES]))

        if len(ranked) > 1:
            margin = round(top.score - ranked[1].score, _PRECISION)
            if margin < self.cfg.tie_epsilon:
                close = tuple(
                    c
                    for c in ranked
                    if round(top.score - c.score, _PRECISION) < self.cfg.tie_epsilon
                )
                logger.info(f"fuzzy: {len(close)} candidates within {self.cfg.tie_epsilon}")
                return Ambiguous(candidates=close, stage=MatchStage.FUZZY)

        return Unique(patient_id=top.patient_id, confidence=top.score, stage=MatchStage.FUZZY)
