import json
import subprocess

import pytest
import yaml

import clusterup.core as core_module
from clusterup.core import ClusterUp
from clusterup.errors import CommandError
from clusterup.models import NodeState, RunConfiguration

JOIN_COMMAND = "kubeadm join 203.0.113.10:6443 --token abcdef.0123456789abcdef --discovery-token-ca-cert-hash sha256:00"
KUBECONFIG = "apiVersion: v1\nclusters:\n- cluster:\n    server: https://203.0.113.10:6443\n"
ADDRESSES = {"203.0.113.10": "control-plane", "203.0.113.11": "worker"}


class FakeResponse:
    def raise_for_status(self):
        return None

    def close(self):
        return None


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self):
        self.urls = []

    def request(self, method, url, **_kwargs):
        self.urls.append(url)
        return FakeResponse()


class FakeFleet:
    """Answers terraform, ssh, docker and kubectl like a healthy environment."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.calls = []
        self.events = []
        self.objects = {}

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        event, stdout = getattr(self, "_" + cmd[0])(cmd, kwargs)
        self.events.append(event)
        if event == self.fail_on:
            raise CommandError("Command failed (1)", cmd=cmd, returncode=1, stderr=f"{event}: failed")
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")

    def _terraform(self, cmd, _kwargs):
        action = cmd[2]
        stdout = ""
        if action == "output":
            stdout = json.dumps(
                {
                    "control_plane_ip": {"value": "203.0.113.10"},
                    "worker_ip": {"value": "203.0.113.11"},
                }
            )
        return f"terraform {action}", stdout

    def _ssh(self, cmd, kwargs):
        target = next(part for part in cmd if part.startswith("ubuntu@"))
        role = ADDRESSES[target.split("@", 1)[1]]
        remote = cmd[cmd.index(target) + 1 :]
        script = kwargs.get("input_text") or ""
        if "--print-join-command" in remote:
            return f"{role} token", JOIN_COMMAND
        if "--raw=/readyz" in remote:
            return f"{role} readyz", "ok"
        if remote[:2] == ["sudo", "cat"]:
            return f"{role} kubeconfig", KUBECONFIG
        if "kubeadm init" in script:
            return f"{role} init", ""
        if "kubeadm join" in script:
            return f"{role} join", ""
        if "apt-get install -y kubelet" in script:
            return f"{role} tools", ""
        return f"{role} runtime", ""

    def _docker(self, cmd, _kwargs):
        return f"docker {cmd[1]}", "24.0.7" if cmd[1] == "version" else ""

    def _kubectl(self, cmd, _kwargs):
        args = cmd[3:]
        if args[0] == "apply":
            source = args[2]
            if not source.startswith("https://"):
                with open(source, "r", encoding="utf-8") as file_obj:
                    for doc in yaml.safe_load_all(file_obj):
                        metadata = doc["metadata"]
                        self.objects[(doc["kind"], metadata.get("namespace"), metadata["name"])] = doc
            return f"kubectl apply {source.rsplit('/', 1)[-1]}", ""
        return f"kubectl rollout {args[4]}/{args[2]}", ""


@pytest.fixture
def ssh_key(tmp_path):
    key = tmp_path / "keys" / "id_rsa"
    key.parent.mkdir()
    key.write_text("private", encoding="utf-8")
    (tmp_path / "keys" / "id_rsa.pub").write_text("ssh-rsa AAAA", encoding="utf-8")
    return str(key)


def make_config(ssh_key, **overrides):
    values = {
        "compartment_id": "ocid1.compartment.oc1..aaaa",
        "availability_domain": "Uocm:PHX-AD-1",
        "subnet_id": "ocid1.subnet.oc1.phx.aaaa",
        "registry_namespace": "tenancy",
        "domain": "example.org",
        "email": "ops@example.org",
        "region": "us-phoenix-1",
        "namespace": "default",
        "ssh_private_key": ssh_key,
    }
    values.update(overrides)
    return RunConfiguration(**values)


def build_cluster(tmp_path, config, fleet, **kwargs):
    cluster = ClusterUp(config=config, output_dir=str(tmp_path / "output"), retry_backoff_seconds=0, **kwargs)
    cluster.command_runner.run = fleet
    cluster.toolchain_service.which = lambda tool, path=None: f"/usr/bin/{tool}"
    cluster.validation_service.requests = FakeRequestsModule()
    cluster.image_build_service.environ = {}
    return cluster


def test_run_provisions_bootstraps_and_deploys(tmp_path, ssh_key):
    fleet = FakeFleet()
    cluster = build_cluster(tmp_path, make_config(ssh_key), fleet)

    assert cluster.run() == 0

    assert fleet.events == [
        "docker version",
        "terraform init",
        "terraform apply",
        "terraform output",
        "control-plane runtime",
        "control-plane tools",
        "control-plane init",
        "worker runtime",
        "worker tools",
        "control-plane readyz",
        "control-plane token",
        "worker join",
        "control-plane kubeconfig",
        "docker build",
        "docker push",
        "kubectl apply workload.yaml",
        "kubectl apply cert-manager.yaml",
        "kubectl rollout cert-manager/deployment/cert-manager",
        "kubectl rollout cert-manager/deployment/cert-manager-cainjector",
        "kubectl rollout cert-manager/deployment/cert-manager-webhook",
        "kubectl apply certificate.yaml",
        "kubectl apply deploy.yaml",
        "kubectl rollout ingress-nginx/deployment/ingress-nginx-controller",
        "kubectl apply ingress.yaml",
    ]

    deployment = fleet.objects[("Deployment", "default", "erlang-api-deployment")]
    assert deployment["spec"]["replicas"] == 2
    assert ("Service", "default", "erlang-api-service") in fleet.objects
    ingress = fleet.objects[("Ingress", "default", "erlang-api-ingress")]
    assert ingress["spec"]["rules"][0]["host"] == "example.org"
    assert ingress["spec"]["tls"][0]["secretName"] == "tls-secret"

    progress = cluster.remote_bootstrap_service.progress
    assert progress["master-node"].state == NodeState.DONE
    assert progress["worker-node"].state == NodeState.DONE

    manifest = json.loads((tmp_path / "output" / "run-manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "success"
    assert manifest["artifacts"]["service_url"] == "https://example.org"
    assert manifest["artifacts"]["image"] == "iad.ocir.io/tenancy/my-erlang-api:v1"
    assert (tmp_path / "output" / "kubeconfig").read_text(encoding="utf-8") == KUBECONFIG


def test_placeholder_configuration_fails_before_any_command(tmp_path, ssh_key):
    fleet = FakeFleet()
    cluster = build_cluster(tmp_path, make_config(ssh_key, domain="your-domain.com"), fleet)

    assert cluster.run() == 1

    assert fleet.calls == []
    assert cluster.validation_service.requests.urls == []
    manifest = json.loads((tmp_path / "output" / "run-manifest.json").read_text(encoding="utf-8"))
    assert manifest["status"] == "failed"
    assert "domain" in manifest["error"]


def test_dry_run_renders_artifacts_without_invoking_tools(tmp_path, ssh_key):
    fleet = FakeFleet()
    cluster = build_cluster(tmp_path, make_config(ssh_key), fleet, dry_run=True)

    assert cluster.run() == 0

    assert fleet.calls == []
    output = tmp_path / "output"
    assert (output / "terraform" / "main.tf").exists()
    assert (output / "manifests" / "ingress.yaml").exists()
    assert not (output / "run-state.json").exists()
    manifest = json.loads((output / "run-manifest.json").read_text(encoding="utf-8"))
    assert manifest["dry_run"] is True
    assert [step["name"] for step in manifest["steps"]] == ["validate_configuration", "render_artifacts"]


def test_plan_lists_every_step_in_order(tmp_path, ssh_key):
    cluster = build_cluster(tmp_path, make_config(ssh_key), FakeFleet())

    plan = cluster.plan()

    assert plan[:4] == ["validate_configuration", "check_toolchain", "render_artifacts", "provision_infrastructure"]
    assert plan[-1] == "apply_ingress_route"
    assert plan.index("bootstrap_control_plane") < plan.index("bootstrap_worker")
    assert plan.index("publish_image") < plan.index("apply_workload")


def test_failed_step_returns_one_and_leaves_resources(tmp_path, ssh_key):
    fleet = FakeFleet(fail_on="worker tools")
    cluster = build_cluster(tmp_path, make_config(ssh_key), fleet, resume=True)

    assert cluster.run() == 1

    assert fleet.events[-1] == "worker tools"
    assert not any(event.startswith("terraform destroy") for event in fleet.events)
    state = json.loads((tmp_path / "output" / "run-state.json").read_text(encoding="utf-8"))
    assert state["status"] == "failed"
    assert state["steps"]["bootstrap_control_plane"]["status"] == "success"
    assert state["steps"]["bootstrap_worker"]["status"] == "failed"
    assert state["node_progress"]["master-node"]["state"] == "done"
    assert state["node_progress"]["worker-node"]["history"] == ["pending", "runtime-installed", "failed"]
    assert [node["public_address"] for node in state["nodes"]] == ["203.0.113.10", "203.0.113.11"]


def test_resume_skips_completed_steps(tmp_path, ssh_key):
    config = make_config(ssh_key)
    first = build_cluster(tmp_path, config, FakeFleet(fail_on="docker push"), resume=True)
    assert first.run() == 1

    fleet = FakeFleet()
    second = build_cluster(tmp_path, config, fleet, resume=True)

    assert second.run() == 0
    assert second.run_context.run_id == first.run_context.run_id
    manifest = json.loads((tmp_path / "output" / "run-manifest.json").read_text(encoding="utf-8"))
    state = json.loads((tmp_path / "output" / "run-state.json").read_text(encoding="utf-8"))
    assert manifest["run_id"] == state["run_context"]["run_id"] == first.run_context.run_id
    assert "terraform apply" not in fleet.events
    assert not any(event.startswith("control-plane") for event in fleet.events)
    assert fleet.events[:2] == ["docker version", "docker push"]


def test_unexpected_error_is_reported(tmp_path, ssh_key, monkeypatch):
    fleet = FakeFleet()
    cluster = build_cluster(tmp_path, make_config(ssh_key), fleet)

    def explode():
        raise RuntimeError("disk full")

    monkeypatch.setattr(cluster, "render_artifacts", explode)
    printed = []
    monkeypatch.setattr(core_module.console, "print", lambda *args, **_kwargs: printed.append(args))

    assert cluster.run() == 1
    assert any("disk full" in str(args[0]) for args in printed)
