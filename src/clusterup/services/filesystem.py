"""Filesystem helpers for ClusterUp."""

import logging
import os
import sys

from rich.console import Console


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except Exception as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def ensure_dirs(self, *paths: str, mode: int):
        for path in paths:
            os.makedirs(path, exist_ok=True)
            self.set_permissions(path, mode)

    def write_private_file(self, path: str, content: str, mode: int):
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as file_obj:
            file_obj.write(content)
        self.set_permissions(path, mode)
        self.logger.debug("Wrote private file: %s", path)
