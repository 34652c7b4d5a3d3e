import logging
import os
import subprocess
import uuid
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import requests
from rich.console import Console
from rich.table import Table

from .constants import DIR_MODE, FILE_MODE, SCRIPT_MODE
from .errors import ClusterUpError, ReadinessTimeout
from .errors_catalog import actionable_error
from .models import NodeRole, ProvisionedNode, RunConfiguration, RunContext
from .services.archive import ArchiveService
from .services.cluster_deploy import ClusterDeployService
from .services.command_runner import CommandRunner
from .services.download import DownloadService
from .services.filesystem import FileSystemService
from .services.image_build import ImageBuildService
from .services.manifest import ManifestService
from .services.provisioning import ProvisioningService
from .services.remote_bootstrap import RemoteBootstrapService
from .services.renderer import TemplateRenderer
from .services.state import StateService
from .services.toolchain import ToolchainService
from .services.validation import ValidationService

console = Console()
logger = logging.getLogger("clusterup")


class ClusterUp:
    """Provisions two nodes, bootstraps Kubernetes and deploys the service behind TLS."""

    PROVISION_STEPS = (
        "validate_configuration",
        "check_toolchain",
        "render_artifacts",
        "provision_infrastructure",
        "bootstrap_control_plane",
        "bootstrap_worker",
        "fetch_kubeconfig",
        "build_image",
        "publish_image",
    )

    def __init__(
        self,
        config: RunConfiguration,
        output_dir: str = "output",
        resume: bool = False,
        state_file: Optional[str] = None,
        dry_run: bool = False,
        install_missing_tools: bool = False,
        terraform_version: str = "1.5.0",
        allow_insecure_http: bool = False,
        retry_count: int = 2,
        retry_backoff_seconds: float = 5.0,
        provision_timeout_minutes: int = 30,
        remote_timeout_minutes: int = 20,
        command_timeout_minutes: int = 15,
        readiness_timeout_seconds: int = 300,
    ):
        self.config = config
        self.resume = resume
        self.dry_run = dry_run
        self.install_missing_tools = install_missing_tools
        self.terraform_version = terraform_version
        self.allow_insecure_http = allow_insecure_http
        self.retry_count = retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.provision_timeout = provision_timeout_minutes * 60
        self.remote_timeout = remote_timeout_minutes * 60
        self.command_timeout = command_timeout_minutes * 60
        self.readiness_timeout = readiness_timeout_seconds

        self.output_dir = os.path.abspath(output_dir)
        self.tools_dir = os.path.join(self.output_dir, ".tools")
        self.state_file = state_file or os.path.join(self.output_dir, "run-state.json")
        self.manifest_file = os.path.join(self.output_dir, "run-manifest.json")
        self.state_service = StateService(state_file=self.state_file, logger=logger)
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.state: Optional[Dict[str, Any]] = None
        self.current_step_name: Optional[str] = None
        self.nodes: List[ProvisionedNode] = []

        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.archive_service = ArchiveService()
        self.validation_service = ValidationService(
            allow_insecure_http=self.allow_insecure_http,
            requests_module=requests,
        )
        self.command_runner = CommandRunner(logger=logger)
        self.download_service = DownloadService(
            validation_service=self.validation_service,
            logger=logger,
            console=console,
            requests_module=requests,
        )
        self.toolchain_service = ToolchainService(
            download_service=self.download_service,
            archive_service=self.archive_service,
            filesystem_service=self.filesystem_service,
            logger=logger,
            console=console,
        )
        self.renderer = TemplateRenderer()
        self.provisioning_service = ProvisioningService(logger=logger, console=console)
        self.remote_bootstrap_service = RemoteBootstrapService(
            renderer=self.renderer,
            filesystem_service=self.filesystem_service,
            logger=logger,
            console=console,
        )
        self.image_build_service = ImageBuildService(logger=logger, console=console)
        self.cluster_deploy_service = ClusterDeployService(logger=logger, console=console)

        self.run_context = self._build_run_context()

    def _build_run_context(self) -> RunContext:
        # Work directories are stable across runs so Terraform keeps its state.
        return RunContext(
            run_id=uuid.uuid4().hex[:10],
            work_dir=self.output_dir,
            terraform_dir=os.path.join(self.output_dir, "terraform"),
            build_dir=os.path.join(self.output_dir, "build"),
            manifests_dir=os.path.join(self.output_dir, "manifests"),
            bootstrap_dir=os.path.join(self.output_dir, "bootstrap"),
            kubeconfig_path=os.path.join(self.output_dir, "kubeconfig"),
        )

    def _build_resume_metadata(self) -> Dict[str, Any]:
        return self.config.to_dict()

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        metadata = self._build_resume_metadata()
        metadata.update(
            {
                "image_ref": self.config.image_ref,
                "resume_enabled": self.resume,
                "state_file": self.state_file if self.resume else None,
            }
        )
        return metadata

    def _initialize_state(self) -> bool:
        if not self.resume:
            return False

        os.makedirs(self.output_dir, exist_ok=True)
        state, resumed = self.state_service.initialize(
            metadata=self._build_resume_metadata(),
            run_context=asdict(self.run_context),
            resume=True,
        )
        self.state = state

        if resumed:
            context_data = state.get("run_context")
            if not isinstance(context_data, dict):
                raise ClusterUpError("State file is missing run context. Start a fresh run without --resume.")
            self.run_context = RunContext(**context_data)
            self.nodes = self.state_service.get_nodes(state)
            logger.info(
                "Resuming previous run '%s' at step '%s'.",
                self.run_context.run_id,
                state.get("current_step") or "<none>",
            )
            if state.get("status") == "success":
                raise ClusterUpError(
                    "The state file already belongs to a successful run. Remove it or choose another --state-file."
                )
            state["status"] = "running"
            self.state_service.save(state)
        else:
            logger.info("Resume state initialized at %s", self.state_file)

        return resumed

    def _run_step(
        self,
        name: str,
        callback,
        *args,
        skip_when_completed: bool = True,
        **kwargs,
    ):
        if (
            self.resume
            and self.state
            and skip_when_completed
            and self.state_service.is_step_completed(self.state, name)
        ):
            logger.info("Skipping completed step from state: %s", name)
            self.manifest_service.step_started(name, details={"resumed": True})
            self.manifest_service.step_finished(name, "skipped", details={"resumed": True})
            return None, True

        if self.state:
            self.state_service.mark_step_started(self.state, name)
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            if self.state:
                self.state_service.mark_step_failed(self.state, name, str(exc))
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        if self.state:
            self.state_service.mark_step_completed(self.state, name)
        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result, False

    def _run_cmd(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        **kwargs,
    ) -> subprocess.CompletedProcess:
        return self.command_runner.run(cmd, check=check, capture_output=capture_output, **kwargs)

    def _node(self, role: NodeRole) -> ProvisionedNode:
        for node in self.nodes:
            if node.role == role:
                return node
        raise ClusterUpError(
            f"No provisioned {role.value} node is known. Rerun without --resume to provision again."
        )

    def validate_configuration(self):
        console.print("[blue]Validating configuration...[/blue]")
        self.validation_service.validate_configuration(self.config, logger=logger, console=console)
        console.print("[green]Configuration is valid.[/green]")

    def check_toolchain(self):
        self.toolchain_service.ensure_tools(
            self.command_runner,
            tools_dir=self.tools_dir,
            install_missing=self.install_missing_tools,
            terraform_version=self.terraform_version,
        )
        self.image_build_service.validate_environment(self._run_cmd)

        for label, url in (
            ("cert-manager manifest", self.cluster_deploy_service.cert_manager_manifest_url(self.config)),
            ("ingress-nginx manifest", self.config.ingress_nginx_manifest_url),
            ("CNI manifest", self.config.cni_manifest_url),
        ):
            self.validation_service.check_url_reachable(url, label, logger, console)

    def render_artifacts(self) -> Dict[str, str]:
        logger.info("Rendering artifacts into %s", self.run_context.work_dir)
        self.filesystem_service.ensure_dirs(
            self.run_context.work_dir,
            self.run_context.terraform_dir,
            self.run_context.build_dir,
            self.run_context.manifests_dir,
            self.run_context.bootstrap_dir,
            mode=DIR_MODE,
        )
        artifacts = self.renderer.render_all(self.config)
        written = self.renderer.write_artifacts(
            artifacts,
            self.run_context,
            self.filesystem_service,
            file_mode=FILE_MODE,
            script_mode=SCRIPT_MODE,
        )
        for name, path in written.items():
            self.manifest_service.add_artifact(name, path)
        return written

    def provision_infrastructure(self) -> List[ProvisionedNode]:
        nodes = self.provisioning_service.provision(
            self.run_context.terraform_dir,
            self.config,
            self._run_cmd,
            timeout=self.provision_timeout,
        )
        self.nodes = nodes
        if self.state:
            self.state_service.set_nodes(self.state, nodes)
        self.manifest_service.set_nodes(nodes)
        self._print_nodes()
        return nodes

    def _record_node_progress(self):
        if self.state:
            self.state_service.record_node_progress(
                self.state, self.remote_bootstrap_service.progress.values()
            )

    def bootstrap_control_plane(self):
        try:
            return self.remote_bootstrap_service.bootstrap_control_plane(
                self._node(NodeRole.CONTROL_PLANE),
                self.config,
                self._run_cmd,
                timeout=self.remote_timeout,
            )
        finally:
            self._record_node_progress()

    def bootstrap_worker(self):
        try:
            return self.remote_bootstrap_service.bootstrap_worker(
                self._node(NodeRole.WORKER),
                self._node(NodeRole.CONTROL_PLANE),
                self.config,
                self._run_cmd,
                timeout=self.remote_timeout,
            )
        finally:
            self._record_node_progress()

    def fetch_kubeconfig(self) -> str:
        path = self.remote_bootstrap_service.fetch_kubeconfig(
            self._node(NodeRole.CONTROL_PLANE),
            self.config,
            self.run_context.kubeconfig_path,
            self._run_cmd,
            timeout=self.remote_timeout,
        )
        self.manifest_service.add_artifact("kubeconfig", path)
        return path

    def build_image(self) -> str:
        return self.image_build_service.build(
            self.run_context.build_dir,
            self.config,
            self._run_cmd,
            timeout=self.command_timeout,
        )

    def publish_image(self) -> str:
        image_ref = self.image_build_service.publish(
            self.config,
            self._run_cmd,
            timeout=self.command_timeout,
            retry_count=self.retry_count,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )
        self.manifest_service.add_artifact("image", image_ref)
        return image_ref

    def deployment_steps(self):
        return self.cluster_deploy_service.deployment_steps(
            self.run_context,
            self.config,
            self._run_cmd,
            command_timeout=self.command_timeout,
            readiness_timeout=self.readiness_timeout,
            retry_count=self.retry_count,
            retry_backoff_seconds=self.retry_backoff_seconds,
        )

    def plan(self) -> List[str]:
        return list(self.PROVISION_STEPS) + [name for name, _ in self.deployment_steps()]

    def _print_nodes(self):
        if not self.nodes:
            return
        table = Table(title="Provisioned nodes")
        table.add_column("Role")
        table.add_column("Name")
        table.add_column("Public address")
        for node in self.nodes:
            table.add_row(node.role.value, node.name, node.public_address)
        console.print(table)

    def _print_plan(self, written: Dict[str, str]):
        table = Table(title="Planned steps")
        table.add_column("#", justify="right")
        table.add_column("Step")
        for index, name in enumerate(self.plan(), start=1):
            table.add_row(str(index), name)
        console.print(table)
        for name, path in written.items():
            console.print(f"[dim]{name}:[/dim] {path}")
        console.print(f"Image: [bold]{self.config.image_ref}[/bold]")
        console.print(f"Service URL: [bold]https://{self.config.domain}[/bold]")

    def _report_failure(self, exc: Exception):
        failed_step = self.current_step_name or "run"
        console.print(f"[bold red]Step '{failed_step}' failed:[/bold red] {exc}")
        if isinstance(exc, ReadinessTimeout):
            console.print(
                actionable_error(
                    "readiness_timeout",
                    resource=exc.resource,
                    namespace=exc.namespace,
                    kubeconfig=self.run_context.kubeconfig_path,
                )
            )
        elif failed_step == "provision_infrastructure":
            console.print(actionable_error("provisioning_failed"))

        self._print_nodes()
        if self.state:
            completed = ", ".join(self.state_service.completed_steps(self.state)) or "<none>"
            console.print(f"Completed steps: {completed}")
            console.print(f"State file: {self.state_file}")
        console.print(f"Run manifest: {self.manifest_file}")

    def _run_dry(self) -> int:
        self._run_step("validate_configuration", self.validate_configuration)
        written, _ = self._run_step("render_artifacts", self.render_artifacts)
        self._print_plan(written)
        console.print("[green]Dry run complete. No external tools were invoked.[/green]")
        return 0

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None

        try:
            logger.info("Starting ClusterUp...")
            self.manifest_service.start_run(
                run_id=self.run_context.run_id,
                metadata=self._build_manifest_metadata(),
                dry_run=self.dry_run,
            )

            if self.dry_run:
                exit_code = self._run_dry()
                manifest_status = "success"
                return exit_code

            # Configuration must be valid before any state is written or tool invoked.
            self._run_step("validate_configuration", self.validate_configuration, skip_when_completed=False)
            if self._initialize_state():
                self.manifest_service.set_run_id(self.run_context.run_id)
            if self.nodes:
                self.manifest_service.set_nodes(self.nodes)

            self._run_step("check_toolchain", self.check_toolchain, skip_when_completed=False)
            self._run_step("render_artifacts", self.render_artifacts, skip_when_completed=False)
            self._run_step("provision_infrastructure", self.provision_infrastructure)
            self._run_step("bootstrap_control_plane", self.bootstrap_control_plane)
            self._run_step("bootstrap_worker", self.bootstrap_worker)
            self._run_step("fetch_kubeconfig", self.fetch_kubeconfig)
            self._run_step("build_image", self.build_image)
            self._run_step("publish_image", self.publish_image)

            for name, action in self.deployment_steps():
                self._run_step(name, action)

            if self.state:
                self.state_service.mark_status(self.state, "success")
            service_url = f"https://{self.config.domain}"
            self.manifest_service.add_artifact("service_url", service_url)
            self._print_nodes()
            console.print(f"[bold green]Setup complete.[/bold green] Visit {service_url} to access your API.")
            manifest_status = "success"
            manifest_error = None
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            if self.state:
                self.state_service.mark_status(self.state, "aborted", "Operation cancelled by user.")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            exit_code = 1
            return exit_code
        except ClusterUpError as exc:
            self._report_failure(exc)
            logger.error(str(exc))
            if self.state:
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            if self.state:
                self.state_service.mark_status(self.state, "failed", str(exc))
            manifest_status = "failed"
            manifest_error = str(exc)
            exit_code = 1
            return exit_code
        finally:
            self.manifest_service.finalize(manifest_status, error=manifest_error)
            if manifest_status != "success" and not self.dry_run:
                logger.warning(
                    "Provisioned resources were left in place for inspection. "
                    "Rerun with --resume to continue from the last completed step."
                )
