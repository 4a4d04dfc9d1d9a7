"""
Credential persistence.

TokenManager only depends on the TokenStore protocol (load/save/clear).
Two backends ship with the package: an in-memory store and a JSON file
written atomically with user-only permissions.
"""

import json
import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog
from pydantic import ValidationError

from restbridge.models import Credential

logger = structlog.get_logger(__name__)


class TokenStoreError(Exception):
    """Raised when a stored credential cannot be read or written."""
    pass


@runtime_checkable
class TokenStore(Protocol):
    """Storage backend for the current credential."""

    def load(self) -> Credential | None: ...

    def save(self, credential: Credential) -> None: ...

    def clear(self) -> None: ...


class MemoryTokenStore:
    """Process-local store, used for tests and ephemeral sessions."""

    def __init__(self, credential: Credential | None = None):
        self._credential = credential
        self._lock = threading.Lock()
        self.save_count = 0

    def load(self) -> Credential | None:
        with self._lock:
            return self._credential

    def save(self, credential: Credential) -> None:
        with self._lock:
            self._credential = credential
            self.save_count += 1

    def clear(self) -> None:
        with self._lock:
            self._credential = None


class FileTokenStore:
    """
    Persists the credential as JSON on disk.

    Uses atomic write (write to temp, then rename) to prevent corruption,
    and restricts the file to the current user since it holds secrets.

    Usage:
        store = FileTokenStore()  # ~/.restbridge/credentials.json
        store.save(credential)
        credential = store.load()
    """

    def __init__(self, path: str | Path | None = None):
        """
        Initialize file store.

        Args:
            path: Credential file. If None, uses ~/.restbridge/credentials.json.
        """
        if path is None:
            path = Path.home() / ".restbridge" / "credentials.json"

        self.path = Path(path)
        self._log = logger.bind(token_file=str(self.path))

    def load(self) -> Credential | None:
        """Return the stored credential, or None if there is none."""
        if not self.path.exists():
            self._log.debug("No credential file")
            return None

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
            return Credential.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise TokenStoreError(
                f"Failed to read credential from {self.path} (file may be corrupted): {e}"
            ) from e

    def save(self, credential: Credential) -> None:
        """Write the credential atomically with 0600 permissions."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.path.with_suffix(".tmp")
            fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(credential.model_dump_json(indent=2))
            os.replace(temp_file, self.path)
            os.chmod(self.path, 0o600)
        except OSError as e:
            self._log.error("Failed to save credential", error=str(e))
            raise TokenStoreError(f"Failed to write credential to {self.path}: {e}") from e

        self._log.debug("Saved credential")

    def clear(self) -> None:
        """Delete the credential file."""
        if self.path.exists():
            self.path.unlink()
            self._log.info("Cleared credential file")
