"""
Recollect Platform Paths
------------------------
Resolves per-user data directories via platformdirs.
"""

import os
from pathlib import Path

import platformdirs

_APP_NAME = "recollect"


def get_data_dir() -> Path:
    """Return the data directory, honouring RECOLLECT_DATA_DIR when set."""
    override = os.environ.get("RECOLLECT_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path(platformdirs.user_data_dir(_APP_NAME, appauthor=False))
