"""
Credential Store

File-backed pool of identity records handed out to workers round-robin.
File format: one ``identity:secret`` per line, ``#`` starts a comment line.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from .models import Credential

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Round-robin credential pool.

    Worker ``id`` receives entry ``(id - 1) mod count``.
    """

    def __init__(self, path: Union[str, Path, None] = None, credentials: Optional[List[Credential]] = None):
        self.path = Path(path) if path else None
        self.credentials: List[Credential] = list(credentials or [])
        if self.path and not self.credentials:
            self.load()

    def load(self) -> int:
        """
        (Re)load the pool from disk.

        Returns:
            Number of credentials loaded
        """
        if self.path is None:
            return len(self.credentials)

        if not self.path.exists():
            logger.warning(f"Credentials file not found at: {self.path}")
            self.credentials = []
            return 0

        try:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            logger.error(f"Error loading credentials: {e}")
            self.credentials = []
            return 0

        loaded = []
        for line_number, line in enumerate(lines, 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            identity, sep, secret = line.partition(":")
            if not sep or not identity:
                logger.warning(f"{self.path}:{line_number}: expected identity:secret, skipping")
                continue
            loaded.append(Credential(identity=identity, secret=secret))

        self.credentials = loaded
        logger.info(f"Loaded {len(loaded)} credentials from {self.path.name}")
        if not loaded:
            logger.warning("No credentials found; add entries in the format identity:secret")
        return len(loaded)

    def count(self) -> int:
        return len(self.credentials)

    def get(self, index: int) -> Optional[Credential]:
        if index < 0 or index >= len(self.credentials):
            return None
        return self.credentials[index]

    def for_worker(self, worker_id: int) -> Optional[Credential]:
        """Credential for a worker; reloads once if the pool is empty."""
        if not self.credentials:
            self.load()
        if not self.credentials:
            return None
        return self.get((worker_id - 1) % len(self.credentials))
