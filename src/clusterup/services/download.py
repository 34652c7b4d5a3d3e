"""Release downloads with progress reporting and checksum verification."""

import hashlib
import os
from typing import Optional

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from clusterup.errors import ClusterUpError


class DownloadService:
    """Fetches tool releases over HTTPS."""

    CHUNK_SIZE = 64 * 1024

    def __init__(self, validation_service, logger, console, requests_module, timeout: float = 60.0):
        self.validation_service = validation_service
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.timeout = timeout

    def fetch_text(self, url: str, description: str) -> str:
        self.validation_service.enforce_https_policy(url, description, self.logger, self.console)
        try:
            response = self.requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except self.requests.RequestException as exc:
            raise ClusterUpError(f"Download failed for {description}: {exc}") from exc
        return response.text

    def download_file(
        self,
        url: str,
        dest_path: str,
        description: str = "Downloading...",
        expected_sha256: Optional[str] = None,
    ):
        """Streams ``url`` into ``dest_path``; the file is removed if its digest differs."""
        self.validation_service.enforce_https_policy(url, description, self.logger, self.console)
        self.logger.info("Downloading %s to %s", url, dest_path)
        os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)

        try:
            digest = self._stream(url, dest_path, description)
        except self.requests.RequestException as exc:
            raise ClusterUpError(f"Download failed for {description}: {exc}") from exc

        if expected_sha256 and digest != expected_sha256.lower():
            os.remove(dest_path)
            raise ClusterUpError(
                f"Checksum mismatch for {description}. Expected {expected_sha256}, but got {digest}."
            )

    def _stream(self, url: str, dest_path: str, description: str) -> str:
        hasher = hashlib.sha256()
        with self.requests.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("Content-Length", 0)) or None

            columns = (
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                DownloadColumn(),
                TimeElapsedColumn(),
            )
            with Progress(*columns, console=self.console) as progress, open(dest_path, "wb") as file_obj:
                task = progress.add_task(f"[cyan]{description}", total=total)
                for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                    if chunk:
                        file_obj.write(chunk)
                        hasher.update(chunk)
                        progress.update(task, advance=len(chunk))
        return hasher.hexdigest()
