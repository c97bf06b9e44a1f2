"""Filesystem helpers for pdcsetup."""

import logging
import os
import shutil

from pdcsetup.errors import CopyFailure
from pdcsetup.errors_catalog import actionable_error


class FileSystemService:
    """Encapsulates file side effects of provisioning."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def copy_file(self, source: str, destination: str):
        if not os.path.isfile(source):
            raise CopyFailure(actionable_error("image_not_found", path=source))

        parent = os.path.dirname(os.path.abspath(destination))
        try:
            os.makedirs(parent, exist_ok=True)
            shutil.copyfile(source, destination)
        except OSError as exc:
            raise CopyFailure(f"Failed to copy {source} to {destination}: {exc}") from exc
        self.logger.debug("Copied %s to %s", source, destination)

