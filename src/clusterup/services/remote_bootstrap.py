"""Remote node bootstrap service for ClusterUp."""

import os
import subprocess
from typing import Callable, Dict, List, Optional

from clusterup.constants import SECRET_MODE
from clusterup.errors import CommandError, RemoteBootstrapFailure
from clusterup.errors_catalog import actionable_error
from clusterup.models import NodeProgress, NodeRole, NodeState, ProvisionedNode, RunConfiguration


class RemoteBootstrapService:
    """Runs the fixed bootstrap sequence on each node over ssh.

    Every stage is one ssh session fed a rendered script on stdin. The worker
    join is gated on the control plane having initialized the cluster.
    """

    ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"
    READINESS_CHECK_RETRIES = 5
    READINESS_CHECK_BACKOFF_SECONDS = 10.0

    def __init__(
        self,
        renderer,
        filesystem_service,
        logger,
        console,
        ssh_bin: str = "ssh",
        connect_timeout: int = 20,
    ):
        self.renderer = renderer
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console
        self.ssh_bin = ssh_bin
        self.connect_timeout = connect_timeout
        self.progress: Dict[str, NodeProgress] = {}

    def ssh_command(self, node: ProvisionedNode, config: RunConfiguration, remote_cmd: List[str]) -> List[str]:
        return [
            self.ssh_bin,
            "-i",
            os.path.expanduser(config.ssh_private_key),
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            f"{config.ssh_user}@{node.public_address}",
            *remote_cmd,
        ]

    def run_script(
        self,
        node: ProvisionedNode,
        config: RunConfiguration,
        script: str,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        return run_cmd(
            self.ssh_command(node, config, ["bash", "-s"]),
            capture_output=True,
            timeout=timeout,
            input_text=script,
        )

    def _progress_for(self, node: ProvisionedNode) -> NodeProgress:
        progress = NodeProgress(node=node)
        self.progress[node.name] = progress
        return progress

    def _run_stage(
        self,
        progress: NodeProgress,
        stage: str,
        script: str,
        target: NodeState,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float],
    ):
        node = progress.node
        self.console.print(f"[blue]{node.name} ({node.public_address}): {stage}...[/blue]")
        self.logger.info("Running stage '%s' on %s", stage, node.name)
        try:
            self.run_script(node, config, script, run_cmd, timeout)
        except CommandError as exc:
            progress.fail(str(exc))
            raise RemoteBootstrapFailure(
                node.name,
                stage,
                actionable_error(
                    "bootstrap_failed",
                    node=node.name,
                    stage=stage,
                    address=node.public_address,
                ),
                output=exc.output or str(exc),
            ) from exc
        progress.advance(target)

    def _install_prerequisites(
        self,
        progress: NodeProgress,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float],
    ):
        self._run_stage(
            progress,
            "install container runtime",
            self.renderer.render("install-runtime.sh.j2", config),
            NodeState.RUNTIME_INSTALLED,
            config,
            run_cmd,
            timeout,
        )
        self._run_stage(
            progress,
            "install cluster tools",
            self.renderer.render("install-tools.sh.j2", config),
            NodeState.TOOLS_INSTALLED,
            config,
            run_cmd,
            timeout,
        )

    def bootstrap_control_plane(
        self,
        node: ProvisionedNode,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> NodeProgress:
        if node.role != NodeRole.CONTROL_PLANE:
            raise ValueError(f"{node.name} is not a control-plane node")

        progress = self._progress_for(node)
        self._install_prerequisites(progress, config, run_cmd, timeout)
        self._run_stage(
            progress,
            "initialize cluster",
            self.renderer.render_control_plane_init(config, node.public_address),
            NodeState.CLUSTER_INITIALIZED,
            config,
            run_cmd,
            timeout,
        )
        progress.advance(NodeState.DONE)
        self.console.print(f"[green]Control plane {node.name} initialized.[/green]")
        return progress

    def ensure_control_plane_ready(
        self,
        control_plane: ProvisionedNode,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ):
        known = self.progress.get(control_plane.name)
        if known is not None and not known.cluster_ready:
            raise RemoteBootstrapFailure(
                control_plane.name,
                "control-plane readiness",
                f"Control plane is in state '{known.state.value}', not initialized.",
            )

        cmd = self.ssh_command(
            control_plane,
            config,
            ["sudo", "kubectl", "--kubeconfig", self.ADMIN_KUBECONFIG, "get", "--raw=/readyz"],
        )
        try:
            run_cmd(
                cmd,
                capture_output=True,
                timeout=timeout,
                retry_count=self.READINESS_CHECK_RETRIES,
                retry_backoff_seconds=self.READINESS_CHECK_BACKOFF_SECONDS,
            )
        except CommandError as exc:
            raise RemoteBootstrapFailure(
                control_plane.name,
                "control-plane readiness",
                "Control plane API server is not ready.",
                output=exc.output,
            ) from exc

    def fetch_join_command(
        self,
        control_plane: ProvisionedNode,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> str:
        cmd = self.ssh_command(
            control_plane,
            config,
            ["sudo", "kubeadm", "token", "create", "--print-join-command"],
        )
        try:
            result = run_cmd(cmd, capture_output=True, timeout=timeout, redact=True)
        except CommandError as exc:
            raise RemoteBootstrapFailure(
                control_plane.name,
                "create join token",
                "Could not create a join token on the control plane.",
                output=exc.output,
            ) from exc

        lines = (result.stdout or "").strip().splitlines()
        join_command = lines[-1].strip() if lines else ""
        if not join_command.startswith("kubeadm join "):
            raise RemoteBootstrapFailure(
                control_plane.name,
                "create join token",
                "Control plane returned an unexpected join command.",
            )
        return join_command

    def bootstrap_worker(
        self,
        node: ProvisionedNode,
        control_plane: ProvisionedNode,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> NodeProgress:
        if node.role != NodeRole.WORKER:
            raise ValueError(f"{node.name} is not a worker node")

        progress = self._progress_for(node)
        known = self.progress.get(control_plane.name)
        if known is not None and not known.cluster_ready:
            message = actionable_error(
                "worker_gated",
                node=node.name,
                control_plane=control_plane.name,
            )
            progress.fail(message)
            raise RemoteBootstrapFailure(node.name, "join gate", message)

        self._install_prerequisites(progress, config, run_cmd, timeout)

        try:
            self.ensure_control_plane_ready(control_plane, config, run_cmd, timeout)
            join_command = self.fetch_join_command(control_plane, config, run_cmd, timeout)
        except RemoteBootstrapFailure as exc:
            progress.fail(str(exc))
            raise

        self._run_stage(
            progress,
            "join cluster",
            self.renderer.render_worker_join(config, join_command),
            NodeState.CLUSTER_JOINED,
            config,
            run_cmd,
            timeout,
        )
        progress.advance(NodeState.DONE)
        self.console.print(f"[green]Worker {node.name} joined the cluster.[/green]")
        return progress

    def fetch_kubeconfig(
        self,
        control_plane: ProvisionedNode,
        config: RunConfiguration,
        destination: str,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> str:
        cmd = self.ssh_command(control_plane, config, ["sudo", "cat", self.ADMIN_KUBECONFIG])
        try:
            result = run_cmd(cmd, capture_output=True, timeout=timeout, redact=True)
        except CommandError as exc:
            raise RemoteBootstrapFailure(
                control_plane.name,
                "fetch kubeconfig",
                "Could not read the admin kubeconfig from the control plane.",
                output=exc.output,
            ) from exc

        content = result.stdout or ""
        if "clusters:" not in content:
            raise RemoteBootstrapFailure(
                control_plane.name,
                "fetch kubeconfig",
                "Control plane returned an empty or invalid kubeconfig.",
            )

        self.filesystem_service.write_private_file(destination, content, SECRET_MODE)
        self.logger.info("Cluster kubeconfig written to %s", destination)
        return destination
