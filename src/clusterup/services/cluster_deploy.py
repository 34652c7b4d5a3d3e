"""Cluster deployment service for ClusterUp."""

import os
import time
from functools import partial
from typing import Callable, List, Optional, Tuple

from clusterup.constants import (
    CERT_MANAGER_DEPLOYMENTS,
    CERT_MANAGER_MANIFEST_URL,
    CERT_MANAGER_NAMESPACE,
    INGRESS_NGINX_DEPLOYMENT,
    INGRESS_NGINX_NAMESPACE,
)
from clusterup.errors import ApplyRejected, CommandError, CommandTimeout, ReadinessTimeout
from clusterup.models import RunConfiguration, RunContext


class ClusterDeployService:
    """Applies manifests in dependency order and waits on controller readiness.

    Every apply is declarative, so re-running against an already deployed
    cluster reconciles the same resources instead of creating new ones.
    """

    POLL_INTERVAL_SECONDS = 5.0
    ROLLOUT_GRACE_SECONDS = 30.0

    def __init__(self, logger, console, kubectl_bin: str = "kubectl"):
        self.logger = logger
        self.console = console
        self.kubectl_bin = kubectl_bin

    def kubectl(self, kubeconfig: str, *args: str) -> List[str]:
        return [self.kubectl_bin, "--kubeconfig", kubeconfig, *args]

    def apply(
        self,
        kubeconfig: str,
        source: str,
        run_cmd: Callable,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ):
        self.logger.info("Applying %s", source)
        try:
            run_cmd(
                self.kubectl(kubeconfig, "apply", "-f", source),
                capture_output=True,
                timeout=timeout,
                retry_count=retry_count,
                retry_backoff_seconds=retry_backoff_seconds,
            )
        except CommandError as exc:
            raise ApplyRejected(f"Cluster rejected {source}: {exc}", output=exc.output) from exc

    def wait_for_rollout(
        self,
        kubeconfig: str,
        namespace: str,
        deployment: str,
        run_cmd: Callable,
        timeout_seconds: float,
        poll_interval: Optional[float] = None,
    ):
        resource = f"deployment/{deployment}"
        poll_interval = self.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout_seconds
        last_detail = ""

        self.console.print(f"[yellow]Waiting for {resource} in {namespace} to become ready...[/yellow]")
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeout(namespace, resource, timeout_seconds, last_detail)

            cmd = self.kubectl(
                kubeconfig,
                "rollout",
                "status",
                resource,
                "-n",
                namespace,
                f"--timeout={max(1, int(remaining))}s",
            )
            try:
                run_cmd(cmd, capture_output=True, timeout=remaining + self.ROLLOUT_GRACE_SECONDS)
                self.console.print(f"[green]{resource} is ready.[/green]")
                return
            except CommandTimeout as exc:
                raise ReadinessTimeout(namespace, resource, timeout_seconds, exc.output) from exc
            except CommandError as exc:
                last_detail = exc.output
                if "timed out" in last_detail.lower():
                    raise ReadinessTimeout(namespace, resource, timeout_seconds, last_detail) from exc
                # NotFound right after the controller manifest is applied
                self.logger.debug("%s not ready yet: %s", resource, last_detail)

            time.sleep(min(poll_interval, max(0.0, deadline - time.monotonic())))

    def wait_for_deployments(
        self,
        kubeconfig: str,
        namespace: str,
        deployments,
        run_cmd: Callable,
        timeout_seconds: float,
    ):
        for deployment in deployments:
            self.wait_for_rollout(kubeconfig, namespace, deployment, run_cmd, timeout_seconds)

    @staticmethod
    def cert_manager_manifest_url(config: RunConfiguration) -> str:
        return CERT_MANAGER_MANIFEST_URL.format(version=config.cert_manager_version)

    def deployment_steps(
        self,
        run_context: RunContext,
        config: RunConfiguration,
        run_cmd: Callable,
        command_timeout: Optional[float],
        readiness_timeout: float,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> List[Tuple[str, Callable[[], None]]]:
        """Returns the ordered (step name, action) pairs of a deployment."""
        kubeconfig = run_context.kubeconfig_path
        apply = partial(
            self.apply,
            kubeconfig,
            run_cmd=run_cmd,
            timeout=command_timeout,
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
        )
        manifest = partial(os.path.join, run_context.manifests_dir)

        return [
            ("apply_workload", partial(apply, manifest("workload.yaml"))),
            ("install_cert_manager", partial(apply, self.cert_manager_manifest_url(config))),
            (
                "wait_for_cert_manager",
                partial(
                    self.wait_for_deployments,
                    kubeconfig,
                    CERT_MANAGER_NAMESPACE,
                    CERT_MANAGER_DEPLOYMENTS,
                    run_cmd,
                    readiness_timeout,
                ),
            ),
            ("apply_certificate_resources", partial(apply, manifest("certificate.yaml"))),
            ("install_ingress_controller", partial(apply, config.ingress_nginx_manifest_url)),
            (
                "wait_for_ingress_controller",
                partial(
                    self.wait_for_deployments,
                    kubeconfig,
                    INGRESS_NGINX_NAMESPACE,
                    (INGRESS_NGINX_DEPLOYMENT,),
                    run_cmd,
                    readiness_timeout,
                ),
            ),
            ("apply_ingress_route", partial(apply, manifest("ingress.yaml"))),
        ]
