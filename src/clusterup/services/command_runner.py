"""Subprocess execution service for ClusterUp."""

import os
import subprocess
import time
from typing import Dict, List, Optional

from clusterup.errors import ClusterUpError, CommandError, CommandTimeout, ToolMissing


class CommandRunner:
    """Runs external commands with consistent error handling."""

    def __init__(self, logger):
        self.logger = logger
        self.extra_paths: List[str] = []

    def add_search_path(self, directory: str):
        if directory not in self.extra_paths:
            self.extra_paths.insert(0, directory)

    def search_path(self) -> str:
        return os.pathsep.join(self.extra_paths + [os.environ.get("PATH", "")])

    def _build_env(self) -> Optional[Dict[str, str]]:
        if not self.extra_paths:
            return None
        env = dict(os.environ)
        env["PATH"] = self.search_path()
        return env

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        input_text: Optional[str] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        redact: bool = False,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        max_attempts = max(1, retry_count + 1)

        for attempt in range(1, max_attempts + 1):
            try:
                result = subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=timeout,
                    input=input_text,
                    env=self._build_env(),
                )
            except FileNotFoundError as exc:
                raise ToolMissing(
                    cmd[0],
                    f"Required command not found: {cmd[0]}. Please install it and try again.",
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        retry_backoff_seconds,
                        cmd_str,
                    )
                    time.sleep(retry_backoff_seconds)
                    continue
                raise CommandTimeout(
                    f"Command timed out after {timeout}s: {cmd_str}",
                    cmd=cmd,
                    stdout=_as_text(exc.stdout),
                    stderr=_as_text(exc.stderr),
                ) from exc
            except Exception as exc:
                raise ClusterUpError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout and not redact:
                self.logger.debug("Command output: %s", result.stdout.strip())

            if result.returncode == 0:
                return result

            stderr = (result.stderr or "").strip() if capture_output else ""
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if stderr:
                message = f"{message}\n{stderr}"

            if attempt < max_attempts:
                self.logger.warning(
                    "Command failed on attempt %s/%s and will be retried in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    retry_backoff_seconds,
                    message,
                )
                time.sleep(retry_backoff_seconds)
                continue

            if check:
                raise CommandError(
                    message,
                    cmd=cmd,
                    returncode=result.returncode,
                    stdout=result.stdout or "",
                    stderr=result.stderr or "",
                )

            self.logger.warning(message)
            return result

        raise ClusterUpError(f"Command failed after retries: {cmd_str}")


def _as_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
