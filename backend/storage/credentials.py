"""
Source credential directory.

Purging forces the next client initialisation to re-authenticate.
"""

from __future__ import annotations

import shutil
from pathlib import Path


class CredentialStore:
    def __init__(self, auth_dir: Path) -> None:
        self._auth_dir = Path(auth_dir)

    @property
    def auth_dir(self) -> Path:
        return self._auth_dir

    def exists(self) -> bool:
        return self._auth_dir.exists()

    def purge(self) -> bool:
        """Delete the credential directory. Returns False if it was absent."""
        if not self._auth_dir.exists():
            return False
        shutil.rmtree(self._auth_dir)
        return True
