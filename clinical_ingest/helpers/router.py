import json
import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from clinical_ingest.commons.logger import logger
from clinical_ingest.commons.types import PathsCfg
from clinical_ingest.validation.validators import validate_error_or_raise


def _safe_name(src: Optional[str], default: str) -> str:
    if not src:
        return default
    return re.sub(r"[^a-zA-Z0-9_.\-]", "_", Path(src).name) or default


def _replace_none(obj):
    if isinstance(obj, dict):
        return {k: _replace_none(v) for k, v in obj.items() if v is not None}
    elif isinstance(obj, list):
        return [_replace_none(x) for x in obj]
    return obj


class ReportRouter:
    """Places sources and outcome documents in archive/, error/ and review/."""

    def __init__(self, paths: PathsCfg):
        self.paths = paths
        for d in (paths.archive, paths.error, paths.review):
            Path(d).mkdir(parents=True, exist_ok=True)

    def _stamp(self) -> str:
        return datetime.now().strftime("%Y%m%d-%H%M%S-%f")

    def archive_raw(self, data: bytes, src: Optional[str]) -> Path:
        base = Path(self.paths.archive) / "raw"
        base.mkdir(parents=True, exist_ok=True)
        p = base / f"{self._stamp()}_{_safe_name(src, 'report.hl7')}"
        p.write_bytes(data)
        return p

    @staticmethod
    def _check(doc: dict):
        # error documents follow the {kind, message, line?} contract
        if "error" in doc:
            validate_error_or_raise(doc["error"])

    def _sidecar(self, target: Path, doc: dict) -> Path:
        sidecar = target.with_name(target.name + ".json")
        sidecar.write_text(
            json.dumps(_replace_none(doc), ensure_ascii=False, indent=2), encoding="utf-8"
        )
        return sidecar

    def _write(self, folder: str, data: bytes, src: Optional[str], doc: dict) -> Path:
        self._check(doc)
        target = Path(folder) / f"{self._stamp()}_{_safe_name(src, 'report.hl7')}"
        target.write_bytes(data)
        return self._sidecar(target, doc)

    def route_success(self, src: Optional[str], doc: dict) -> Path:
        out = Path(self.paths.archive) / f"{self._stamp()}_{_safe_name(src, 'report')}.json"
        out.write_text(json.dumps(_replace_none(doc), ensure_ascii=False, indent=2), encoding="utf-8")
        self._consume(src)
        logger.info(f"Report committed and archived: {out}")
        return out

    def route_error(self, data: bytes, src: Optional[str], doc: dict) -> Path:
        p = self._write(self.paths.error, data, src, doc)
        self._consume(src)
        logger.error(f"Report rejected, moved to {p.parent}: {doc.get('error', {}).get('message')}")
        return p

    def route_review(self, data: bytes, src: Optional[str], doc: dict) -> Path:
        p = self._write(self.paths.review, data, src, doc)
        self._consume(src)
        logger.warning(f"Report needs manual patient resolution: {p}")
        return p

    def route_unreadable(self, src: str, doc: dict) -> Path:
        """
        A source whose bytes could not be read. Inbox files are moved (never
        rewritten) to error/; if even the move fails the file stays where it
        is and only the sidecar is written.
        """
        self._check(doc)
        sp = Path(src)
        target = Path(self.paths.error) / f"{self._stamp()}_{_safe_name(src, 'report.hl7')}"
        if self._in_inbox(sp):
            try:
                shutil.move(str(sp), str(target))
            except OSError as ex:
                logger.error(f"Could not move unreadable {sp.name} out of the inbox: {ex}")
        p = self._sidecar(target, doc)
        logger.error(f"Unreadable report {sp.name}: {doc.get('error', {}).get('message')}")
        return p

    def _in_inbox(self, sp: Path) -> bool:
        inbox = Path(self.paths.inbox).resolve()
        return sp.exists() and sp.resolve().parent == inbox

    def _consume(self, src: Optional[str]):
        """Inbox files leave the inbox once routed; archive/raw keeps the bytes."""
        if src and self._in_inbox(Path(src)):
            Path(src).unlink()
