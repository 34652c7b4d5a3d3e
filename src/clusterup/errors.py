"""Domain errors for ClusterUp."""

from typing import List, Optional, Sequence


class ClusterUpError(RuntimeError):
    """Raised when the run cannot continue safely."""


class ToolMissing(ClusterUpError):
    """A required external command is not installed."""

    def __init__(self, tool: str, message: Optional[str] = None):
        self.tool = tool
        super().__init__(message or f"Required command not found: {tool}.")


class MissingConfiguration(ClusterUpError):
    """Required configuration values are absent or still placeholders."""

    def __init__(self, fields: Sequence[str], message: Optional[str] = None):
        self.fields: List[str] = list(fields)
        super().__init__(
            message or f"Missing or placeholder configuration values: {', '.join(self.fields)}"
        )


class InvalidConfiguration(ClusterUpError):
    """Configuration values are present but malformed."""


class CommandError(ClusterUpError):
    """An external command exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        cmd: Sequence[str],
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
    ):
        super().__init__(message)
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout or ""
        self.stderr = stderr or ""

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


class CommandTimeout(CommandError):
    """An external command exceeded its timeout."""


class ExternalToolFailure(ClusterUpError):
    """A pipeline step failed inside an external tool."""

    def __init__(self, message: str, output: str = ""):
        self.output = output.strip()
        if self.output and self.output not in message:
            message = f"{message}\n{self.output}"
        super().__init__(message)


class ProvisioningFailure(ExternalToolFailure):
    pass


class RemoteBootstrapFailure(ExternalToolFailure):
    def __init__(self, node_name: str, stage: str, message: str, output: str = ""):
        self.node_name = node_name
        self.stage = stage
        super().__init__(message, output=output)


class BuildFailure(ExternalToolFailure):
    pass


class PublishFailure(ExternalToolFailure):
    pass


class ApplyRejected(ExternalToolFailure):
    pass


class ReadinessTimeout(ClusterUpError):
    """A controller did not report ready before its deadline."""

    def __init__(self, namespace: str, resource: str, timeout_seconds: float, detail: str = ""):
        self.namespace = namespace
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        message = (
            f"Timed out after {timeout_seconds:g}s waiting for {resource} "
            f"in namespace '{namespace}' to become ready."
        )
        if detail:
            message = f"{message}\n{detail.strip()}"
        super().__init__(message)
