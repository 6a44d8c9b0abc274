"""Helper binary resolution by logical name."""

import os
import shutil
from pathlib import Path

from machine_stubber._logging import get_logger
from machine_stubber.exceptions import BinaryNotFoundError
from machine_stubber.settings import Settings

logger = get_logger(__name__)


def find_helper_binary(name: str, settings: Settings) -> Path:
    """Resolve a helper binary (hypervisor, qemu-img, vfkit, gvproxy) to a path.

    Searches settings.helper_binaries_dir in order, then PATH.

    Raises:
        BinaryNotFoundError: Binary is in none of the locations
    """
    for directory in settings.helper_binaries_dir:
        candidate = directory / name
        if candidate.is_file() and os.access(candidate, os.X_OK):
            logger.debug("Found helper binary", extra={"binary": name, "path": str(candidate)})
            return candidate

    found = shutil.which(name)
    if found is not None:
        return Path(found)

    raise BinaryNotFoundError(
        f"could not find {name!r} in helper binary dirs or $PATH",
        context={"binary": name, "search_dirs": [str(d) for d in settings.helper_binaries_dir]},
    )
