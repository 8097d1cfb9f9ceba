"""
Owner-only files for the relay's local state.

The SQLite store, the audit log and the audit HMAC key are created 0600.
Directories created on the way are 0700; directories that already exist
keep their mode.
"""

from __future__ import annotations

import os
from pathlib import Path


DIR_MODE = 0o700
FILE_MODE = 0o600


def private_file(path: Path) -> Path:
    """Create ``path`` and any missing parent directories, owner-only."""
    path = Path(path)
    for directory in reversed(path.parents):
        if not directory.exists():
            directory.mkdir(mode=DIR_MODE)
            # mkdir's mode is filtered through the umask
            os.chmod(directory, DIR_MODE)
    if not path.exists():
        path.touch(mode=FILE_MODE)
    os.chmod(path, FILE_MODE)
    return path
