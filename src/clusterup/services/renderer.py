"""Template rendering service for ClusterUp artifacts."""

import os
from typing import Any, Dict, List, Optional

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from clusterup.constants import (
    CERTIFICATE_NAME,
    INGRESS_CLASS,
    ISSUER_NAME,
    KUBE_API_PORT,
    TLS_SECRET_NAME,
)
from clusterup.errors import ClusterUpError
from clusterup.models import RenderedArtifact, RunConfiguration, RunContext


class TemplateRenderer:
    """Renders every text artifact of a run from fixed templates.

    Rendering is a pure function of its inputs: the same configuration always
    produces byte-identical artifacts. Undefined placeholders are errors.
    """

    # (artifact name, template, path relative to the run work dir, executable)
    STATIC_ARTIFACTS = (
        ("infrastructure", "main.tf.j2", "terraform/main.tf", False),
        ("dockerfile", "Dockerfile.j2", "build/Dockerfile", False),
        ("service_source", "api.erl.j2", "build/api.erl", False),
        ("workload_manifest", "workload.yaml.j2", "manifests/workload.yaml", False),
        ("certificate_manifest", "certificate.yaml.j2", "manifests/certificate.yaml", False),
        ("ingress_manifest", "ingress.yaml.j2", "manifests/ingress.yaml", False),
        ("install_runtime_script", "install-runtime.sh.j2", "bootstrap/install-runtime.sh", True),
        ("install_tools_script", "install-tools.sh.j2", "bootstrap/install-tools.sh", True),
    )

    def __init__(self, environment: Optional[Environment] = None):
        self.env = environment or Environment(
            loader=PackageLoader("clusterup", "templates"),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def build_context(self, config: RunConfiguration) -> Dict[str, Any]:
        context = config.to_dict()
        context.update(
            {
                "image_ref": config.image_ref,
                "ssh_public_key_path": config.public_key_path,
                "api_port": KUBE_API_PORT,
                "ingress_class": INGRESS_CLASS,
                "issuer_name": ISSUER_NAME,
                "certificate_name": CERTIFICATE_NAME,
                "tls_secret_name": TLS_SECRET_NAME,
            }
        )
        return context

    def render(self, template_name: str, config: RunConfiguration, **extra: Any) -> str:
        context = self.build_context(config)
        context.update(extra)
        try:
            return self.env.get_template(template_name).render(**context)
        except TemplateError as exc:
            raise ClusterUpError(f"Could not render template '{template_name}': {exc}") from exc

    def render_all(self, config: RunConfiguration) -> List[RenderedArtifact]:
        return [
            RenderedArtifact(
                name=name,
                relative_path=relative_path,
                content=self.render(template_name, config),
                executable=executable,
            )
            for name, template_name, relative_path, executable in self.STATIC_ARTIFACTS
        ]

    def render_control_plane_init(self, config: RunConfiguration, control_plane_address: str) -> str:
        return self.render(
            "init-control-plane.sh.j2",
            config,
            control_plane_address=control_plane_address,
        )

    def render_worker_join(self, config: RunConfiguration, join_command: str) -> str:
        return self.render("join-worker.sh.j2", config, join_command=join_command)

    def write_artifacts(
        self,
        artifacts: List[RenderedArtifact],
        run_context: RunContext,
        filesystem_service,
        file_mode: int,
        script_mode: int,
    ) -> Dict[str, str]:
        written = {}
        for artifact in artifacts:
            path = os.path.join(run_context.work_dir, artifact.relative_path)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8", newline="\n") as file_obj:
                file_obj.write(artifact.content)
            filesystem_service.set_permissions(path, script_mode if artifact.executable else file_mode)
            written[artifact.name] = path
        return written
