"""External tool detection and installation for ClusterUp."""

import os
import platform
import shutil
import sys
from typing import Callable, Dict, List, Optional, Sequence

from clusterup.constants import REQUIRED_TOOLS, SCRIPT_MODE, TERRAFORM_RELEASE_URL
from clusterup.errors import ClusterUpError, ToolMissing
from clusterup.errors_catalog import actionable_error

_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class ToolchainService:
    """Checks required commands and installs the ones that can be fetched."""

    INSTALL_HINTS = {
        "terraform": "Install Terraform or rerun with `--install-missing-tools`.",
        "ssh": "Install an OpenSSH client (e.g. `apt-get install openssh-client`).",
        "docker": "Install Docker Engine and make sure the current user can reach the daemon.",
        "kubectl": "Install kubectl: https://kubernetes.io/docs/tasks/tools/",
    }
    INSTALLABLE = ("terraform",)
    OCI_CONFIG_PATH = "~/.oci/config"

    def __init__(
        self,
        download_service,
        archive_service,
        filesystem_service,
        logger,
        console,
        which: Callable = shutil.which,
    ):
        self.download_service = download_service
        self.archive_service = archive_service
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console
        self.which = which

    def find_missing(self, search_path: str, tools: Sequence[str] = REQUIRED_TOOLS) -> List[str]:
        return [tool for tool in tools if not self.which(tool, path=search_path)]

    def ensure_tools(
        self,
        command_runner,
        tools_dir: str,
        install_missing: bool,
        terraform_version: str,
    ) -> Dict[str, str]:
        self.console.print("[blue]Checking required tools...[/blue]")
        installed_dir = os.path.join(tools_dir, "bin")
        if os.path.isfile(os.path.join(installed_dir, "terraform")):
            command_runner.add_search_path(installed_dir)
        missing = self.find_missing(command_runner.search_path())

        for tool in missing:
            if not (install_missing and tool in self.INSTALLABLE):
                raise ToolMissing(
                    tool,
                    actionable_error("tool_missing", tool=tool, hint=self.INSTALL_HINTS[tool]),
                )

        if "terraform" in missing:
            bin_dir = self.install_terraform(terraform_version, tools_dir)
            command_runner.add_search_path(bin_dir)

        resolved = {tool: self.which(tool, path=command_runner.search_path()) for tool in REQUIRED_TOOLS}
        for tool, path in resolved.items():
            if not path:
                raise ToolMissing(
                    tool,
                    actionable_error("tool_missing", tool=tool, hint=self.INSTALL_HINTS[tool]),
                )
            self.logger.debug("Using %s at %s", tool, path)

        self.warn_if_missing_oci_config()
        self.console.print("[green]All required tools are available.[/green]")
        return resolved

    def warn_if_missing_oci_config(self):
        if not os.path.exists(os.path.expanduser(self.OCI_CONFIG_PATH)):
            self.logger.warning(
                "OCI config not found at %s. Terraform's OCI provider needs it; run `oci setup config`.",
                self.OCI_CONFIG_PATH,
            )

    @staticmethod
    def release_platform(system: Optional[str] = None, machine: Optional[str] = None):
        system = system or sys.platform
        machine = (machine or platform.machine()).lower()
        os_name = "darwin" if system == "darwin" else "linux" if system.startswith("linux") else None
        arch = _ARCHITECTURES.get(machine)
        if os_name is None or arch is None:
            raise ClusterUpError(f"No Terraform release available for {system}/{machine}.")
        return os_name, arch

    @staticmethod
    def parse_checksums(checksums: str, filename: str) -> str:
        for line in checksums.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1] == filename:
                return parts[0].lower()
        raise ClusterUpError(f"No checksum published for {filename}.")

    def install_terraform(self, version: str, tools_dir: str) -> str:
        os_name, arch = self.release_platform()
        url = TERRAFORM_RELEASE_URL.format(version=version, os=os_name, arch=arch)
        filename = url.rsplit("/", 1)[-1]
        sums_url = f"{url.rsplit('/', 1)[0]}/terraform_{version}_SHA256SUMS"

        self.console.print(f"[yellow]Terraform not found, installing {version}...[/yellow]")
        expected_sha256 = self.parse_checksums(
            self.download_service.fetch_text(sums_url, "Terraform checksums"),
            filename,
        )

        bin_dir = os.path.join(tools_dir, "bin")
        zip_path = os.path.join(tools_dir, filename)
        self.download_service.download_file(
            url,
            zip_path,
            "Downloading Terraform...",
            expected_sha256=expected_sha256,
        )
        self.archive_service.safe_extract_zip(zip_path, bin_dir)
        os.remove(zip_path)
        self.filesystem_service.set_permissions(os.path.join(bin_dir, "terraform"), SCRIPT_MODE)

        self.logger.info("Terraform %s installed into %s", version, bin_dir)
        self.console.print("[green]Terraform installed successfully.[/green]")
        return bin_dir
