"""Configuration loader for ClusterUp."""

from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from clusterup.errors import ClusterUpError
from clusterup.models import RunConfiguration


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    DEPLOYMENT_KEYS = frozenset(f.name for f in fields(RunConfiguration))
    RUNTIME_KEYS = frozenset(
        {
            "output_dir",
            "verbose",
            "log_file",
            "resume",
            "state_file",
            "dry_run",
            "install_missing_tools",
            "terraform_version",
            "allow_insecure_http",
            "retry_count",
            "retry_backoff_seconds",
            "provision_timeout_minutes",
            "remote_timeout_minutes",
            "command_timeout_minutes",
            "readiness_timeout_seconds",
        }
    )
    SUPPORTED_KEYS = DEPLOYMENT_KEYS | RUNTIME_KEYS

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ClusterUpError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ClusterUpError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ClusterUpError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ClusterUpError(f"Unknown configuration keys: {unknown_list}")

        return parsed
