"""Shared fixtures: settings rooted in tmp_path and fast collaborators."""

from datetime import datetime

import pytest
from argon2 import PasswordHasher

from clinical_ingest.commons.config import load_settings
from clinical_ingest.commons.ingest_engine import IngestEngine
from clinical_ingest.services.auth_service import AuthService
from clinical_ingest.services.directory import PatientDirectory

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5)


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        {
            "paths": {
                "logs_root": str(tmp_path / "logs"),
                "inbox": str(tmp_path / "inbox"),
                "archive": str(tmp_path / "archive"),
                "error": str(tmp_path / "error"),
                "review": str(tmp_path / "review"),
                "directory_file": str(tmp_path / "patients.json"),
                "users_file": str(tmp_path / "users.json"),
            },
            "ingest": {"workers": 2},
        }
    )


@pytest.fixture
def engine(settings):
    return IngestEngine(settings, now=lambda: FIXED_NOW)


@pytest.fixture
def directory(settings):
    return PatientDirectory(settings.paths.directory_file, lock_timeout=2.0)


@pytest.fixture
def auth(settings):
    # cheap Argon2 parameters keep the suite fast
    hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)
    return AuthService(settings.paths.users_file, hasher=hasher)
