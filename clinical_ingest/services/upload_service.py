import asyncio
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Optional, Union

from clinical_ingest.commons.errors import (
    AmbiguousMatchError,
    DirectoryConflictError,
    IngestError,
    NoMatchError,
)
from clinical_ingest.commons.ingest_engine import IngestEngine, IngestResult
from clinical_ingest.commons.logger import logger
from clinical_ingest.helpers.file_transport import FileWatcher
from clinical_ingest.helpers.router import ReportRouter
from clinical_ingest.helpers.sources import read_source
from clinical_ingest.matching.models import Unique
from clinical_ingest.services.auth_service import AuthService, Session
from clinical_ingest.services.directory import AppendResult, PatientDirectory


class UploadService:
    """Runs reports through the pipeline and commits unique matches.

    Only a `Unique` decision reaches the directory. Ambiguous and rejected
    reports go to review/ for a human, parse failures to error/.
    """

    def __init__(
        self,
        engine: IngestEngine,
        directory: PatientDirectory,
        auth: Optional[AuthService] = None,
        router: Optional[ReportRouter] = None,
    ):
        self.engine = engine
        self.directory = directory
        self.auth = auth
        self.paths = engine.settings.paths
        self.router = router or ReportRouter(self.paths)
        self.workers = engine.settings.ingest.workers

    # ---------- single report ----------

    def upload(
        self, session: Session, path: Union[str, Path], source_format: Optional[str] = None
    ) -> IngestResult:
        """Interactive upload: the caller must hold a clinical role."""
        if self.auth is not None:
            self.auth.require_upload(session)
        logger.info(f"{session.username} uploads {Path(path).name}")
        try:
            data = read_source(path)
        except IngestError as ex:
            logger.error(f"{ex.kind.value}: {ex.message}")
            raise
        return self.process_bytes(data, str(path), source_format)

    def process_bytes(
        self, data: bytes, src: Optional[str] = None, source_format: Optional[str] = None
    ) -> IngestResult:
        self.router.archive_raw(data, src)
        try:
            result = self.engine.ingest(data, self.directory.snapshot(), src, source_format)
        except IngestError as ex:
            self.router.route_error(data, src, {"source": src, "error": ex.to_dict(), "state": ex.state})
            raise

        decision = result.decision
        if not isinstance(decision, Unique):
            doc = result.to_payload()
            try:
                decision.require_unique()
            except (AmbiguousMatchError, NoMatchError) as ex:
                doc["error"] = ex.to_dict()
                self.router.route_review(data, src, doc)
                raise

        outcome = self.directory.append_transmission(decision.patient_id, result.transmission)
        if outcome is not AppendResult.OK:
            err = DirectoryConflictError(decision.patient_id, result.transmission.report_id)
            doc = result.to_payload()
            doc["error"] = err.to_dict()
            self.router.route_review(data, src, doc)
            raise err

        self.router.route_success(src, result.to_payload())
        return result

    def process_file(self, path: Union[str, Path]) -> IngestResult:
        data = read_source(path)
        return self.process_bytes(data, str(path))

    def _safe_process(self, data: bytes, src: str) -> Optional[IngestResult]:
        # one bad report must never stop the others
        try:
            return self.process_bytes(data, src)
        except IngestError as ex:
            logger.warning(f"{Path(src).name}: {ex.kind.value}: {ex.message}")
        except Exception as ex:
            logger.exception(f"Unexpected failure processing {src}: {ex}")
        return None

    # ---------- inbox ----------

    def process_backlog(self, glob_pat: Optional[str] = None) -> Dict[str, int]:
        inbox = Path(self.paths.inbox)
        inbox.mkdir(parents=True, exist_ok=True)
        files = sorted(p for p in inbox.glob(glob_pat or self.engine.settings.ingest.inbox_glob) if p.is_file())
        summary = {"total": len(files), "committed": 0, "failed": 0}
        if not files:
            return summary
        logger.info(f"Backlog: {len(files)} file(s) in {inbox}")

        def _one(p: Path) -> Optional[IngestResult]:
            try:
                data = read_source(p)
            except IngestError as ex:
                logger.warning(f"{p.name}: {ex.message}")
                self.router.route_unreadable(str(p), {"source": str(p), "error": ex.to_dict()})
                return None
            return self._safe_process(data, str(p))

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            for res in pool.map(_one, files):
                summary["committed" if res is not None else "failed"] += 1
        logger.info(f"Backlog done: {summary}")
        return summary

    async def handle_incoming(self, data: bytes, src: str) -> Optional[IngestResult]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._safe_process, data, src)

    async def run_watch_mode(self, glob_pat: Optional[str] = None, stop_event: Optional[asyncio.Event] = None):
        glob_pat = glob_pat or self.engine.settings.ingest.inbox_glob
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.process_backlog, glob_pat)

        watcher = FileWatcher(
            self.paths.inbox,
            glob_pat,
            self.handle_incoming,
            loop,
            retries=self.engine.settings.ingest.read_retries,
        )
        watcher.start()
        logger.info(f"Watching {self.paths.inbox} for reports...")
        try:
            await (stop_event or asyncio.Event()).wait()
        finally:
            watcher.stop()
