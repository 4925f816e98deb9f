import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from clinical_ingest.commons.config import load_settings
from clinical_ingest.commons.errors import (
    AuthenticationError,
    DuplicatePatientError,
    IngestError,
    PatientNotFoundError,
    PermissionDeniedError,
)
from clinical_ingest.commons.ingest_engine import IngestEngine
from clinical_ingest.commons.logger import setup_logging
from clinical_ingest.services.auth_service import AuthService, Session
from clinical_ingest.services.directory import PatientDirectory
from clinical_ingest.services.upload_service import UploadService
from clinical_ingest.services.viewer_service import ViewerService

app = typer.Typer(add_completion=False, help="Clinical report ingestion")

CONFIG_OPT = typer.Option(None, "--config", "-c", help="settings.yaml to load")


def _bootstrap(config: Optional[str]):
    settings = load_settings(config)
    logger = setup_logging(settings.paths.logs_root, settings.log_level)
    auth = AuthService(
        settings.paths.users_file,
        roles=settings.auth.roles,
        upload_roles=settings.auth.upload_roles,
    )
    directory = PatientDirectory(
        settings.paths.directory_file, lock_timeout=settings.directory.lock_timeout_sec
    )
    return settings, logger, auth, directory


def _login(auth: AuthService, username: str, password: str) -> Session:
    try:
        return auth.login(username, password)
    except AuthenticationError as ex:
        typer.echo(f"Login failed: {ex}", err=True)
        raise typer.Exit(code=1)


def _dump(obj):
    typer.echo(json.dumps(obj, ensure_ascii=False, indent=2))


@app.command()
def register(
    username: str = typer.Option(..., prompt=True),
    role: str = typer.Option(..., prompt=True, help="doctor | nurse | admin"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    config: Optional[str] = CONFIG_OPT,
):
    """Create an account."""
    _, _, auth, _ = _bootstrap(config)
    try:
        auth.register(username, password, role)
    except ValueError as ex:
        typer.echo(str(ex), err=True)
        raise typer.Exit(code=1)
    typer.echo(f"Registered {username} ({role})")


@app.command("add-patient")
def add_patient(
    last: str = typer.Option(...),
    first: str = typer.Option(...),
    dob: Optional[str] = typer.Option(None, help="date of birth"),
    mrn: Optional[str] = typer.Option(None),
    middle: Optional[str] = typer.Option(None),
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    config: Optional[str] = CONFIG_OPT,
):
    _, _, auth, directory = _bootstrap(config)
    _login(auth, username, password)
    try:
        pid = directory.add_patient(last, first, dob, mrn=mrn, middle_name=middle)
    except (DuplicatePatientError, ValueError) as ex:
        typer.echo(str(ex), err=True)
        raise typer.Exit(code=1)
    typer.echo(pid)


@app.command()
def upload(
    path: Path = typer.Argument(..., exists=False),
    source_format: Optional[str] = typer.Option(None, "--format", help="hl7 | pdf-extracted-text"),
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    config: Optional[str] = CONFIG_OPT,
):
    """Ingest one report and attach it to its patient when the match is unique."""
    settings, logger, auth, directory = _bootstrap(config)
    session = _login(auth, username, password)
    svc = UploadService(IngestEngine(settings), directory, auth)
    try:
        result = svc.upload(session, path, source_format)
    except PermissionDeniedError as ex:
        typer.echo(str(ex), err=True)
        raise typer.Exit(code=2)
    except IngestError as ex:
        _dump(ex.to_dict())
        raise typer.Exit(code=1)
    _dump(result.to_payload())


@app.command("process-inbox")
def process_inbox(config: Optional[str] = CONFIG_OPT):
    """One pass over the inbox backlog."""
    settings, logger, auth, directory = _bootstrap(config)
    logger.info("Processing pending reports")
    svc = UploadService(IngestEngine(settings), directory, auth)
    _dump(svc.process_backlog())


@app.command()
def watch(config: Optional[str] = CONFIG_OPT):
    """Backlog pass, then keep ingesting files as they land in the inbox."""
    settings, logger, auth, directory = _bootstrap(config)
    svc = UploadService(IngestEngine(settings), directory, auth)
    try:
        asyncio.run(svc.run_watch_mode())
    except KeyboardInterrupt:
        logger.info("Watcher stopped")


@app.command()
def search(
    query: str = typer.Argument(...),
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    config: Optional[str] = CONFIG_OPT,
):
    _, _, auth, directory = _bootstrap(config)
    session = _login(auth, username, password)
    _dump(ViewerService(directory, auth).search(session, query))


@app.command()
def show(
    patient_id: str = typer.Argument(...),
    username: str = typer.Option(..., prompt=True),
    password: str = typer.Option(..., prompt=True, hide_input=True),
    config: Optional[str] = CONFIG_OPT,
):
    _, _, auth, directory = _bootstrap(config)
    session = _login(auth, username, password)
    try:
        _dump(ViewerService(directory, auth).show(session, patient_id))
    except PatientNotFoundError:
        typer.echo(f"Unknown patient {patient_id}", err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
