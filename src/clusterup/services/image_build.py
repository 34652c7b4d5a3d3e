"""Container image build and publish services for ClusterUp."""

import os
from typing import Callable, Optional

from clusterup.constants import REGISTRY_PASSWORD_ENV
from clusterup.errors import BuildFailure, CommandError, PublishFailure
from clusterup.models import RunConfiguration


class ImageBuildService:
    """Builds the service image from the rendered build context and pushes it."""

    def __init__(self, logger, console, docker_bin: str = "docker", environ=None):
        self.logger = logger
        self.console = console
        self.docker_bin = docker_bin
        self.environ = os.environ if environ is None else environ

    def validate_environment(self, run_cmd: Callable):
        try:
            run_cmd([self.docker_bin, "version", "--format", "{{.Server.Version}}"], capture_output=True)
        except CommandError as exc:
            raise BuildFailure("Docker daemon is not reachable.", output=exc.output) from exc

    def build(
        self,
        build_dir: str,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
    ) -> str:
        image_ref = config.image_ref
        self.console.print(f"[blue]Building image {image_ref}...[/blue]")
        self.logger.info("Building %s from %s", image_ref, build_dir)
        try:
            run_cmd(
                [self.docker_bin, "build", "-t", image_ref, build_dir],
                capture_output=True,
                timeout=timeout,
            )
        except CommandError as exc:
            raise BuildFailure(f"docker build failed for {image_ref}: {exc}", output=exc.output) from exc
        self.console.print("[green]Image built.[/green]")
        return image_ref

    def login(self, config: RunConfiguration, run_cmd: Callable, timeout: Optional[float] = None) -> bool:
        password = self.environ.get(REGISTRY_PASSWORD_ENV)
        if not config.registry_username or not password:
            self.logger.debug("No registry credentials configured; using existing docker login.")
            return False

        try:
            run_cmd(
                [
                    self.docker_bin,
                    "login",
                    config.registry,
                    "--username",
                    config.registry_username,
                    "--password-stdin",
                ],
                capture_output=True,
                timeout=timeout,
                input_text=password,
            )
        except CommandError as exc:
            raise PublishFailure(f"docker login to {config.registry} failed.", output=exc.output) from exc
        return True

    def publish(
        self,
        config: RunConfiguration,
        run_cmd: Callable,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> str:
        image_ref = config.image_ref
        self.login(config, run_cmd, timeout)
        self.console.print(f"[blue]Pushing image {image_ref}...[/blue]")
        try:
            run_cmd(
                [self.docker_bin, "push", image_ref],
                capture_output=True,
                timeout=timeout,
                retry_count=retry_count,
                retry_backoff_seconds=retry_backoff_seconds,
            )
        except CommandError as exc:
            raise PublishFailure(f"docker push failed for {image_ref}: {exc}", output=exc.output) from exc
        self.console.print("[green]Image published.[/green]")
        return image_ref
