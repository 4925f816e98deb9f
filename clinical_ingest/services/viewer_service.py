from typing import List

from clinical_ingest.commons.identifiers import clean_name_part, normalize_mrn
from clinical_ingest.services.auth_service import AuthService, Session
from clinical_ingest.services.directory import PatientDirectory


class ViewerService:
    """Read-only search and display over the patient directory."""

    def __init__(self, directory: PatientDirectory, auth: AuthService = None):
        self.directory = directory
        self.auth = auth

    def _check(self, session: Session):
        if self.auth is not None:
            self.auth.current_user(session)

    def search(self, session: Session, query: str) -> List[dict]:
        """Patients whose MRN equals the query or whose name contains it."""
        self._check(session)
        mrn = normalize_mrn(query)
        needle = clean_name_part(query)
        hits = []
        for p in self.directory.patients():
            name = (p.get("normalized_name") or "").replace("^", " ")
            if (mrn and p.get("normalized_mrn") == mrn) or (needle and needle in name):
                hits.append(self._summary(p))
        return sorted(hits, key=lambda h: (h["name"], h["patient_id"]))

    def show(self, session: Session, patient_id: str) -> dict:
        self._check(session)
        p = self.directory.get(patient_id)
        out = self._summary(p)
        out["transmissions"] = sorted(p["transmissions"], key=lambda t: t.get("reportDate", ""))
        return out

    @staticmethod
    def _summary(p: dict) -> dict:
        name = p.get("name") or {}
        display = " ".join(x for x in (name.get("first"), name.get("middle"), name.get("last")) if x)
        return {
            "patient_id": p["patient_id"],
            "name": display,
            "mrn": p.get("mrn"),
            "dob": p.get("dob"),
            "reports": len(p.get("transmissions", [])),
        }
