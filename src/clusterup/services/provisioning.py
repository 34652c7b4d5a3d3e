"""Terraform provisioning service for ClusterUp."""

import json
from typing import Callable, Dict, List, Optional

from clusterup.errors import CommandError, ProvisioningFailure
from clusterup.models import NodeRole, ProvisionedNode, RunConfiguration


class ProvisioningService:
    """Applies the rendered infrastructure definition and reads node addresses.

    Re-running against the same working directory converges to the same
    resources because Terraform reconciles against its own state file there.
    """

    OUTPUTS = {
        NodeRole.CONTROL_PLANE: "control_plane_ip",
        NodeRole.WORKER: "worker_ip",
    }

    def __init__(self, logger, console, terraform_bin: str = "terraform"):
        self.logger = logger
        self.console = console
        self.terraform_bin = terraform_bin

    def _terraform(self, terraform_dir: str, *args: str) -> List[str]:
        return [self.terraform_bin, f"-chdir={terraform_dir}", *args]

    def provision(
        self,
        terraform_dir: str,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> List[ProvisionedNode]:
        self.console.print("[blue]Provisioning cloud VMs with Terraform...[/blue]")
        self.logger.info("Provisioning nodes in %s from %s", config.region, terraform_dir)

        self._invoke(
            "terraform init",
            self._terraform(terraform_dir, "init", "-input=false", "-no-color"),
            run_cmd,
            timeout,
        )
        self._invoke(
            "terraform apply",
            self._terraform(terraform_dir, "apply", "-auto-approve", "-input=false", "-no-color"),
            run_cmd,
            timeout,
        )

        nodes = self.read_nodes(terraform_dir, config, run_cmd, timeout)
        for node in nodes:
            self.logger.info("%s node %s: %s", node.role.value, node.name, node.public_address)
        self.console.print("[green]Cloud VMs provisioned.[/green]")
        return nodes

    def read_nodes(
        self,
        terraform_dir: str,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> List[ProvisionedNode]:
        result = self._invoke(
            "terraform output",
            self._terraform(terraform_dir, "output", "-json"),
            run_cmd,
            timeout,
        )
        outputs = self.parse_outputs(result.stdout or "")
        names = {
            NodeRole.CONTROL_PLANE: config.control_plane_name,
            NodeRole.WORKER: config.worker_name,
        }

        nodes = []
        for role, output_name in self.OUTPUTS.items():
            address = outputs.get(output_name)
            if not address:
                raise ProvisioningFailure(
                    f"Terraform output '{output_name}' is missing or empty; "
                    f"the {role.value} node has no public address."
                )
            nodes.append(ProvisionedNode(role=role, name=names[role], public_address=address))
        return nodes

    @staticmethod
    def parse_outputs(raw: str) -> Dict[str, str]:
        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError as exc:
            raise ProvisioningFailure(f"Could not parse terraform output JSON: {exc}", output=raw) from exc
        if not isinstance(data, dict):
            raise ProvisioningFailure("Terraform output JSON must be an object.", output=raw)

        values = {}
        for key, entry in data.items():
            value = entry.get("value") if isinstance(entry, dict) else entry
            if isinstance(value, str):
                values[key] = value.strip()
        return values

    def _invoke(self, label: str, cmd: List[str], run_cmd: Callable, timeout: Optional[float]):
        try:
            return run_cmd(cmd, capture_output=True, timeout=timeout)
        except CommandError as exc:
            raise ProvisioningFailure(f"{label} failed: {exc}", output=exc.output) from exc
