import logging
import os
from dataclasses import fields

import click
from rich.logging import RichHandler

from .constants import DEFAULT_CONFIG_FILE
from .core import ClusterUp, ClusterUpError
from .models import RunConfiguration
from .services.config_loader import ConfigLoader


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _env(name: str) -> str:
    return f"CLUSTERUP_{name.upper()}"


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    envvar=_env("config"),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--region", envvar=_env("region"), help="OCI region (default: us-phoenix-1).")
@click.option("--compartment-id", envvar=_env("compartment_id"), help="OCI compartment OCID.")
@click.option("--availability-domain", envvar=_env("availability_domain"), help="OCI availability domain.")
@click.option("--subnet-id", envvar=_env("subnet_id"), help="OCI subnet OCID for both nodes.")
@click.option("--node-image-id", envvar=_env("node_image_id"), help="OCI image OCID for both nodes.")
@click.option("--control-plane-shape", envvar=_env("control_plane_shape"), help="Compute shape of the control plane.")
@click.option("--worker-shape", envvar=_env("worker_shape"), help="Compute shape of the worker.")
@click.option("--control-plane-name", envvar=_env("control_plane_name"), help="Display name of the control plane.")
@click.option("--worker-name", envvar=_env("worker_name"), help="Display name of the worker.")
@click.option(
    "--ssh-private-key",
    envvar=_env("ssh_private_key"),
    help="Private key used to reach the nodes (default: ~/.ssh/id_rsa).",
)
@click.option(
    "--ssh-public-key",
    envvar=_env("ssh_public_key"),
    help="Public key authorized on the nodes (default: <private key>.pub).",
)
@click.option("--ssh-user", envvar=_env("ssh_user"), help="Remote login user (default: ubuntu).")
@click.option("--registry", envvar=_env("registry"), help="Container registry host (default: iad.ocir.io).")
@click.option("--registry-namespace", envvar=_env("registry_namespace"), help="Registry namespace / project.")
@click.option(
    "--registry-username",
    envvar=_env("registry_username"),
    help="Registry user for `docker login`; password is read from CLUSTERUP_REGISTRY_PASSWORD.",
)
@click.option("--image-name", envvar=_env("image_name"), help="Image repository name.")
@click.option("--image-tag", envvar=_env("image_tag"), help="Image tag.")
@click.option("--domain", envvar=_env("domain"), help="DNS name served over TLS.")
@click.option("--email", envvar=_env("email"), help="ACME registration contact email.")
@click.option("--namespace", envvar=_env("namespace"), help="Target Kubernetes namespace (default: default).")
@click.option("--app-name", envvar=_env("app_name"), help="Workload name prefix (default: erlang-api).")
@click.option("--replicas", type=int, envvar=_env("replicas"), help="Deployment replicas (default: 2).")
@click.option("--container-port", type=int, envvar=_env("container_port"), help="Container port (default: 8080).")
@click.option("--service-port", type=int, envvar=_env("service_port"), help="Service port (default: 80).")
@click.option("--pod-network-cidr", envvar=_env("pod_network_cidr"), help="Pod network CIDR.")
@click.option("--kubernetes-version", envvar=_env("kubernetes_version"), help="Kubernetes package stream, e.g. v1.30.")
@click.option("--cert-manager-version", envvar=_env("cert_manager_version"), help="cert-manager release.")
@click.option("--ingress-nginx-manifest-url", envvar=_env("ingress_nginx_manifest_url"), help="ingress-nginx manifest.")
@click.option("--cni-manifest-url", envvar=_env("cni_manifest_url"), help="CNI manifest applied on init.")
@click.option("--acme-server", envvar=_env("acme_server"), help="ACME directory URL.")
@click.option("--output-dir", type=click.Path(), envvar=_env("output_dir"), help="Work directory (default: output).")
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), envvar=_env("log_file"), help="Path to log file")
@click.option(
    "--resume",
    is_flag=True,
    default=None,
    help="Resume a previously interrupted run using the execution state file.",
)
@click.option(
    "--state-file",
    required=False,
    type=click.Path(),
    envvar=_env("state_file"),
    help="Path to the run state file (default: output/run-state.json).",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=None,
    help="Validate configuration, render artifacts and print the plan without running any tool.",
)
@click.option(
    "--install-missing-tools",
    is_flag=True,
    default=None,
    help="Download Terraform into the work directory when it is not installed.",
)
@click.option("--terraform-version", envvar=_env("terraform_version"), help="Terraform release to install.")
@click.option(
    "--allow-insecure-http",
    is_flag=True,
    default=None,
    help="Allow HTTP manifest URLs (insecure). By default only HTTPS URLs are accepted.",
)
@click.option(
    "--retry-count",
    type=int,
    envvar=_env("retry_count"),
    help="Number of retries for transient apply/push failures.",
)
@click.option(
    "--retry-backoff-seconds",
    type=float,
    envvar=_env("retry_backoff_seconds"),
    help="Backoff time in seconds between retries.",
)
@click.option(
    "--provision-timeout-minutes",
    type=int,
    envvar=_env("provision_timeout_minutes"),
    help="Timeout for each Terraform command in minutes.",
)
@click.option(
    "--remote-timeout-minutes",
    type=int,
    envvar=_env("remote_timeout_minutes"),
    help="Timeout for each remote bootstrap session in minutes.",
)
@click.option(
    "--command-timeout-minutes",
    type=int,
    envvar=_env("command_timeout_minutes"),
    help="Timeout for docker and kubectl commands in minutes.",
)
@click.option(
    "--readiness-timeout-seconds",
    type=int,
    envvar=_env("readiness_timeout_seconds"),
    help="Timeout for each controller readiness wait in seconds.",
)
def main(config, verbose, log_file, **options):
    """Provision a two-node Kubernetes cluster on OCI and deploy the API behind TLS."""
    logger = logging.getLogger("clusterup")

    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = config_loader.load(resolved_config)
    except ClusterUpError as exc:
        raise click.ClickException(str(exc)) from exc

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")

    deployment = {}
    for item in fields(RunConfiguration):
        value = _resolve_option(options.get(item.name), config_values, item.name)
        if value is not None:
            deployment[item.name] = value
    try:
        run_config = RunConfiguration(**deployment)
    except TypeError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc

    output_dir = _resolve_option(options["output_dir"], config_values, "output_dir", default="output")
    resume = bool(_resolve_option(options["resume"], config_values, "resume", default=False))
    state_file = _resolve_option(options["state_file"], config_values, "state_file")
    dry_run = bool(_resolve_option(options["dry_run"], config_values, "dry_run", default=False))
    install_missing_tools = bool(
        _resolve_option(
            options["install_missing_tools"],
            config_values,
            "install_missing_tools",
            default=False,
        )
    )
    terraform_version = str(
        _resolve_option(options["terraform_version"], config_values, "terraform_version", default="1.5.0")
    )
    allow_insecure_http = bool(
        _resolve_option(options["allow_insecure_http"], config_values, "allow_insecure_http", default=False)
    )
    retry_count = int(_resolve_option(options["retry_count"], config_values, "retry_count", default=2))
    retry_backoff_seconds = float(
        _resolve_option(options["retry_backoff_seconds"], config_values, "retry_backoff_seconds", default=5.0)
    )
    provision_timeout_minutes = int(
        _resolve_option(
            options["provision_timeout_minutes"],
            config_values,
            "provision_timeout_minutes",
            default=30,
        )
    )
    remote_timeout_minutes = int(
        _resolve_option(options["remote_timeout_minutes"], config_values, "remote_timeout_minutes", default=20)
    )
    command_timeout_minutes = int(
        _resolve_option(options["command_timeout_minutes"], config_values, "command_timeout_minutes", default=15)
    )
    readiness_timeout_seconds = int(
        _resolve_option(
            options["readiness_timeout_seconds"],
            config_values,
            "readiness_timeout_seconds",
            default=300,
        )
    )

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    try:
        cluster = ClusterUp(
            config=run_config,
            output_dir=output_dir,
            resume=resume,
            state_file=state_file,
            dry_run=dry_run,
            install_missing_tools=install_missing_tools,
            terraform_version=terraform_version,
            allow_insecure_http=allow_insecure_http,
            retry_count=retry_count,
            retry_backoff_seconds=retry_backoff_seconds,
            provision_timeout_minutes=provision_timeout_minutes,
            remote_timeout_minutes=remote_timeout_minutes,
            command_timeout_minutes=command_timeout_minutes,
            readiness_timeout_seconds=readiness_timeout_seconds,
        )
    except ClusterUpError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(cluster.run())


if __name__ == "__main__":
    main()
