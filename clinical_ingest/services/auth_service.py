import json
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from clinical_ingest.commons.errors import AuthenticationError, PermissionDeniedError
from clinical_ingest.commons.logger import logger


@dataclass(frozen=True)
class Session:
    """Authenticated caller, passed explicitly through every call."""

    username: str
    role: str


class AuthService:
    """
    Accounts stored as {"users": [{"username", "password_hash", "role"}]}.
    Passwords are salted Argon2id hashes; verification is constant time.
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        roles: Iterable[str] = ("doctor", "nurse", "admin"),
        upload_roles: Iterable[str] = ("doctor", "nurse"),
        hasher: Optional[PasswordHasher] = None,
    ):
        self.path = Path(path) if path else None
        self.roles = set(roles)
        self.upload_roles = set(upload_roles)
        self.hasher = hasher or PasswordHasher()
        self._lock = threading.Lock()
        self._users: Dict[str, dict] = {}
        if self.path and self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                for u in json.load(f).get("users", []):
                    self._users[u["username"]] = u

    def _persist(self):
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"users": list(self._users.values())}, f, indent=2)
        os.replace(tmp, self.path)

    def register(self, username: str, password: str, role: str) -> Session:
        username = (username or "").strip()
        role = (role or "").strip().lower()
        if not username or not password:
            raise ValueError("username and password are required")
        if role not in self.roles:
            raise ValueError(f"unknown role {role!r}; expected one of {sorted(self.roles)}")
        with self._lock:
            if username in self._users:
                raise ValueError(f"user {username!r} already exists")
            self._users[username] = {
                "username": username,
                "password_hash": self.hasher.hash(password),
                "role": role,
            }
            self._persist()
        logger.info(f"User {username} registered as {role}")
        return Session(username=username, role=role)

    def login(self, username: str, password: str) -> Session:
        user = self._users.get(username)
        if user is None:
            raise AuthenticationError("unknown user or wrong password")
        try:
            self.hasher.verify(user["password_hash"], password)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            logger.warning(f"Failed login for {username}")
            raise AuthenticationError("unknown user or wrong password")

        if self.hasher.check_needs_rehash(user["password_hash"]):
            with self._lock:
                user["password_hash"] = self.hasher.hash(password)
                self._persist()
        return Session(username=username, role=user["role"])

    def current_user(self, session: Session) -> dict:
        if session.username not in self._users:
            raise AuthenticationError("session user no longer exists")
        return {"username": session.username, "role": session.role}

    def require_upload(self, session: Session) -> None:
        if self.current_user(session)["role"] not in self.upload_roles:
            raise PermissionDeniedError(f"role {session.role!r} may not upload reports")
