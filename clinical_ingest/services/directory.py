import contextlib
import copy
import json
import os
import tempfile
import threading
import uuid
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from filelock import FileLock, Timeout

from clinical_ingest.commons.errors import DuplicatePatientError, PatientNotFoundError
from clinical_ingest.commons.identifiers import canonical_name, normalize_dob, normalize_mrn
from clinical_ingest.commons.logger import logger
from clinical_ingest.matching.models import DirectoryEntry
from clinical_ingest.parsers.models import Transmission


class AppendResult(str, Enum):
    OK = "ok"
    CONFLICT = "conflict"


class PatientDirectory:
    """
    Patient store backed by a JSON document ({"patients": [...]}), or memory
    only when no path is given.

    Several processes may share the file (a long-running watcher next to CLI
    uploads). Every write reloads the document under an inter-process lock
    (`<file>.lock`) before modifying it, and the file is always replaced
    atomically. Within a process, appends to one patient are additionally
    serialised by a per-patient lock.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, lock_timeout: float = 5.0):
        self.path = Path(path) if path else None
        self.lock_timeout = lock_timeout
        self._store_lock = threading.RLock()
        self._locks_guard = threading.Lock()
        self._patient_locks: Dict[str, threading.Lock] = {}
        self._patients: Dict[str, dict] = {}
        self._stamp: Optional[tuple] = None
        self._file_lock: Optional[FileLock] = None
        if self.path is not None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock = FileLock(str(self.path.with_name(self.path.name + ".lock")))
            self._refresh(force=True)

    # ---------- persistence ----------

    def _file_stamp(self) -> Optional[tuple]:
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_mtime_ns, st.st_size)

    def _refresh(self, force: bool = False):
        """Re-read the backing file if another writer replaced it."""
        if self.path is None:
            return
        stamp = self._file_stamp()
        if not force and stamp == self._stamp:
            return
        patients: Dict[str, dict] = {}
        if stamp is not None:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            for rec in data.get("patients", []):
                rec.setdefault("transmissions", [])
                patients[rec["patient_id"]] = rec
        self._patients = patients
        self._stamp = stamp
        logger.debug(f"Directory loaded: {len(patients)} patient(s) from {self.path}")

    def _persist(self):
        if self.path is None:
            return
        doc = {"patients": list(self._patients.values())}
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._stamp = self._file_stamp()

    @contextlib.contextmanager
    def _writing(self):
        """Store lock + file lock, with the in-memory copy reloaded from disk."""
        with self._store_lock:
            if self._file_lock is None:
                yield
                return
            with self._file_lock.acquire(timeout=self.lock_timeout):
                self._refresh(force=True)
                yield

    def _lock_for(self, patient_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._patient_locks.setdefault(patient_id, threading.Lock())

    # ---------- patients ----------

    def add_patient(
        self,
        last_name: str,
        first_name: str,
        date_of_birth: Optional[str] = None,
        mrn: Optional[str] = None,
        middle_name: Optional[str] = None,
        patient_id: Optional[str] = None,
        allow_duplicate_mrn: bool = False,
    ) -> str:
        norm_mrn = normalize_mrn(mrn)
        dob = normalize_dob(date_of_birth) if date_of_birth else None
        if date_of_birth and dob is None:
            raise ValueError(f"unrecognised date of birth {date_of_birth!r}")
        name = canonical_name([last_name, first_name, middle_name or ""])
        if not name:
            raise ValueError("patient name is required")

        with self._writing():
            if norm_mrn and not allow_duplicate_mrn:
                clash = next(
                    (p for p in self._patients.values() if p.get("normalized_mrn") == norm_mrn),
                    None,
                )
                if clash is not None:
                    raise DuplicatePatientError(
                        f"MRN {mrn} already assigned to patient {clash['patient_id']}"
                    )
            pid = patient_id or uuid.uuid4().hex[:12]
            if pid in self._patients:
                raise DuplicatePatientError(f"patient id {pid} already exists")
            self._patients[pid] = {
                "patient_id": pid,
                "mrn": mrn,
                "normalized_mrn": norm_mrn,
                "name": {"last": last_name, "first": first_name, "middle": middle_name},
                "normalized_name": name,
                "dob": dob,
                "created_at": datetime.now().isoformat(timespec="seconds"),
                "transmissions": [],
            }
            try:
                self._persist()
            except OSError:
                del self._patients[pid]
                raise
        logger.info(f"Patient {pid} registered")
        return pid

    def get(self, patient_id: str) -> dict:
        with self._store_lock:
            self._refresh()
            rec = self._patients.get(patient_id)
            if rec is None:
                raise PatientNotFoundError(patient_id)
            return copy.deepcopy(rec)

    def patients(self) -> List[dict]:
        with self._store_lock:
            self._refresh()
            return [copy.deepcopy(p) for p in self._patients.values()]

    def snapshot(self) -> Tuple[DirectoryEntry, ...]:
        """Immutable view handed to the matcher."""
        with self._store_lock:
            self._refresh()
            return tuple(
                DirectoryEntry(
                    patient_id=p["patient_id"],
                    normalized_mrn=p.get("normalized_mrn"),
                    normalized_name=p.get("normalized_name"),
                    normalized_dob=p.get("dob"),
                )
                for p in self._patients.values()
            )

    # ---------- transmissions ----------

    def append_transmission(self, patient_id: str, transmission: Transmission) -> AppendResult:
        """Append if the patient still exists on disk; never overwrites."""
        lock = self._lock_for(patient_id)
        if not lock.acquire(timeout=self.lock_timeout):
            logger.warning(f"Append to {patient_id} timed out waiting for the patient lock")
            return AppendResult.CONFLICT
        try:
            with self._writing():
                rec = self._patients.get(patient_id)
                if rec is None:
                    logger.warning(f"Append to {patient_id}: patient no longer exists")
                    return AppendResult.CONFLICT
                if any(t["reportId"] == transmission.report_id for t in rec["transmissions"]):
                    logger.warning(
                        f"Append to {patient_id}: report {transmission.report_id} already stored"
                    )
                    return AppendResult.CONFLICT
                rec["transmissions"].append(transmission.to_payload())
                try:
                    self._persist()
                except OSError:
                    rec["transmissions"].pop()
                    raise
            return AppendResult.OK
        except Timeout:
            logger.warning(f"Append to {patient_id} timed out waiting for {self._file_lock.lock_file}")
            return AppendResult.CONFLICT
        finally:
            lock.release()

    def transmissions(self, patient_id: str) -> List[dict]:
        return self.get(patient_id)["transmissions"]
