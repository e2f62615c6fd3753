"""Owner-only permissions for the ledger, audit log and key material."""

from __future__ import annotations

import os
from pathlib import Path


SQLITE_SIDECARS = ("-wal", "-shm", "-journal")


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def restrict_sqlite_files(db_path: Path) -> None:
    """Apply 0600 to the database and whichever journal sidecars SQLite has created."""
    ensure_private_file(db_path)
    for suffix in SQLITE_SIDECARS:
        sidecar = db_path.with_name(db_path.name + suffix)
        if sidecar.exists():
            os.chmod(sidecar, 0o600)
