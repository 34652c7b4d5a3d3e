"""Configuration and URL validation helpers for ClusterUp."""

import ipaddress
import os
import re
from dataclasses import fields
from typing import List, Optional
from urllib.parse import urlparse

import requests

from clusterup.constants import PLACEHOLDER_PREFIXES, PLACEHOLDER_VALUES
from clusterup.errors import ClusterUpError, InvalidConfiguration, MissingConfiguration
from clusterup.errors_catalog import actionable_error
from clusterup.models import RunConfiguration

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
IMAGE_NAME_RE = re.compile(r"^[a-z0-9]+([._-][a-z0-9]+)*(/[a-z0-9]+([._-][a-z0-9]+)*)*$")
IMAGE_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
K8S_MINOR_RE = re.compile(r"^v\d+\.\d+$")
SEMVER_TAG_RE = re.compile(r"^v\d+\.\d+\.\d+$")

URL_FIELDS = ("ingress_nginx_manifest_url", "cni_manifest_url", "acme_server")
INTEGER_FIELDS = ("replicas", "container_port", "service_port")


class ValidationService:
    """Validates run configuration and protocol policy."""

    def __init__(self, allow_insecure_http: bool = False, requests_module=requests):
        self.allow_insecure_http = allow_insecure_http
        self.requests = requests_module

    @staticmethod
    def is_placeholder(value) -> bool:
        if not isinstance(value, str):
            return False
        clean = value.strip().lower()
        return clean in PLACEHOLDER_VALUES or clean.startswith(PLACEHOLDER_PREFIXES)

    def find_missing(self, config: RunConfiguration) -> List[str]:
        missing = []
        for item in fields(config):
            value = getattr(config, item.name)
            if item.name in RunConfiguration.REQUIRED_FIELDS and (
                value is None or (isinstance(value, str) and not value.strip())
            ):
                missing.append(item.name)
            elif self.is_placeholder(value):
                missing.append(item.name)
        return missing

    def validate_configuration(self, config: RunConfiguration, logger, console):
        missing = self.find_missing(config)
        if missing:
            raise MissingConfiguration(
                missing,
                actionable_error("missing_configuration", fields=", ".join(missing)),
            )

        problems = self.find_invalid(config)
        if problems:
            raise InvalidConfiguration("Invalid configuration: " + "; ".join(problems))

        for field_name in URL_FIELDS:
            self.enforce_https_policy(getattr(config, field_name), field_name, logger, console)

    def find_invalid(self, config: RunConfiguration) -> List[str]:
        # Unquoted YAML numbers such as 2 or 1.30 arrive here as int or float.
        problems = [
            f"{item.name} must be a string (quote it in YAML)"
            for item in fields(config)
            if item.name not in INTEGER_FIELDS
            and getattr(config, item.name) is not None
            and not isinstance(getattr(config, item.name), str)
        ]
        if problems:
            return problems

        if not DOMAIN_RE.match(config.domain):
            problems.append(f"domain '{config.domain}' is not a valid DNS name")
        if not EMAIL_RE.match(config.email):
            problems.append(f"email '{config.email}' is not a valid address")
        for field_name in ("namespace", "app_name", "control_plane_name", "worker_name"):
            value = getattr(config, field_name)
            if not DNS_LABEL_RE.match(value):
                problems.append(f"{field_name} '{value}' must be a lowercase DNS-1123 label")
        if not IMAGE_NAME_RE.match(config.image_name):
            problems.append(f"image_name '{config.image_name}' is not a valid image name")
        if not IMAGE_TAG_RE.match(config.image_tag):
            problems.append(f"image_tag '{config.image_tag}' is not a valid image tag")
        if not K8S_MINOR_RE.match(config.kubernetes_version):
            problems.append(
                f"kubernetes_version '{config.kubernetes_version}' must look like v1.30"
            )
        if not SEMVER_TAG_RE.match(config.cert_manager_version):
            problems.append(
                f"cert_manager_version '{config.cert_manager_version}' must look like v1.8.0"
            )

        try:
            ipaddress.ip_network(config.pod_network_cidr)
        except ValueError:
            problems.append(f"pod_network_cidr '{config.pod_network_cidr}' is not a valid CIDR")

        for field_name in ("container_port", "service_port"):
            value = getattr(config, field_name)
            if not isinstance(value, int) or not 1 <= value <= 65535:
                problems.append(f"{field_name} must be a port number between 1 and 65535")
        if not isinstance(config.replicas, int) or config.replicas < 1:
            problems.append("replicas must be a positive integer")

        for field_name in URL_FIELDS:
            value = getattr(config, field_name)
            if not self.is_url(value):
                problems.append(f"{field_name} '{value}' must be an http(s) URL")

        for path in (config.ssh_private_key, config.public_key_path):
            if not os.path.isfile(os.path.expanduser(path)):
                problems.append(actionable_error("ssh_key_not_found", path=path))

        return problems

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def enforce_https_policy(self, location: str, label: str, logger, console):
        if not self.is_url(location):
            return

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise InvalidConfiguration(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
            console.print(
                f"[yellow]Warning:[/yellow] Using insecure HTTP for {label}. "
                "Prefer HTTPS whenever possible."
            )

    def check_url_reachable(self, location: str, label: str, logger, console):
        self.enforce_https_policy(location, label, logger, console)

        last_error: Optional[Exception] = None
        for method in ("HEAD", "GET"):
            try:
                response = self.requests.request(
                    method,
                    location,
                    allow_redirects=True,
                    timeout=30,
                    stream=(method == "GET"),
                )
                response.raise_for_status()
                response.close()
                return
            except self.requests.RequestException as exc:
                last_error = exc

        raise ClusterUpError(f"{label} is not accessible: {last_error}")
