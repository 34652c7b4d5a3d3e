"""Actionable error catalog for ClusterUp."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "missing_configuration": {
        "what": "Required configuration is missing or still a placeholder: {fields}.",
        "next": "Set real values in `.clusterup.yml`, CLUSTERUP_* environment variables or CLI options.",
    },
    "insecure_http": {
        "what": "{label} uses insecure HTTP.",
        "next": "Switch to HTTPS or use `--allow-insecure-http` only for trusted endpoints.",
    },
    "ssh_key_not_found": {
        "what": "SSH key file not found: {path}",
        "next": "Generate a key pair with `ssh-keygen` or point `--ssh-private-key` at an existing key.",
    },
    "tool_missing": {
        "what": "Required command `{tool}` was not found on PATH.",
        "next": "{hint}",
    },
    "provisioning_failed": {
        "what": "Terraform could not provision the cluster nodes.",
        "next": "Check OCI credentials (~/.oci/config), quotas and the identifiers in your configuration, then rerun.",
    },
    "bootstrap_failed": {
        "what": "Bootstrapping node {node} failed during stage '{stage}'.",
        "next": "SSH into {address} to inspect the node, then rerun with `--resume`.",
    },
    "worker_gated": {
        "what": "Worker {node} cannot join: control plane {control_plane} is not initialized.",
        "next": "Bootstrap the control plane first and rerun with `--resume`.",
    },
    "readiness_timeout": {
        "what": "{resource} in namespace '{namespace}' did not become ready in time.",
        "next": "Inspect it with `kubectl --kubeconfig {kubeconfig} -n {namespace} describe {resource}`, "
        "then rerun with `--resume` or raise `--readiness-timeout-seconds`.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
