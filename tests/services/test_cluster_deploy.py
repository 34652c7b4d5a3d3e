import subprocess

import pytest
import yaml

from clusterup.errors import ApplyRejected, CommandError, CommandTimeout, ReadinessTimeout
from clusterup.models import RunConfiguration, RunContext
from clusterup.services import cluster_deploy as cluster_deploy_module
from clusterup.services.cluster_deploy import ClusterDeployService
from clusterup.services.renderer import TemplateRenderer


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeCluster:
    """Keeps applied objects keyed by (kind, namespace, name)."""

    def __init__(self, rollout_failures=None):
        self.objects = {}
        self.applied = []
        self.rollouts = []
        self.rollout_failures = dict(rollout_failures or {})

    def __call__(self, cmd, **kwargs):
        assert cmd[:3] == ["kubectl", "--kubeconfig", "/work/kubeconfig"]
        args = cmd[3:]
        if args[0] == "apply":
            source = args[2]
            self.applied.append(source)
            if source.startswith("https://"):
                self.objects[("Remote", None, source)] = source
            else:
                with open(source, "r", encoding="utf-8") as file_obj:
                    for doc in yaml.safe_load_all(file_obj):
                        metadata = doc["metadata"]
                        key = (doc["kind"], metadata.get("namespace"), metadata["name"])
                        self.objects[key] = doc
            return subprocess.CompletedProcess(cmd, 0, stdout="configured", stderr="")

        if args[:2] == ["rollout", "status"]:
            resource, namespace = args[2], args[4]
            self.rollouts.append((namespace, resource))
            failure = self.rollout_failures.get(resource)
            if failure:
                outcome = failure.pop(0)
                if not failure:
                    del self.rollout_failures[resource]
                raise outcome
            return subprocess.CompletedProcess(cmd, 0, stdout="successfully rolled out", stderr="")

        raise AssertionError(f"unexpected kubectl call: {cmd}")


def _config():
    return RunConfiguration(
        registry_namespace="tenancy",
        domain="example.org",
        email="ops@example.org",
        namespace="default",
    )


def _run_context(tmp_path):
    config = _config()
    manifests_dir = tmp_path / "manifests"
    manifests_dir.mkdir()
    renderer = TemplateRenderer()
    for name, template in (
        ("workload.yaml", "workload.yaml.j2"),
        ("certificate.yaml", "certificate.yaml.j2"),
        ("ingress.yaml", "ingress.yaml.j2"),
    ):
        (manifests_dir / name).write_text(renderer.render(template, config), encoding="utf-8")
    return RunContext(
        run_id="run-1",
        work_dir=str(tmp_path),
        terraform_dir=str(tmp_path / "terraform"),
        build_dir=str(tmp_path / "build"),
        manifests_dir=str(manifests_dir),
        bootstrap_dir=str(tmp_path / "bootstrap"),
        kubeconfig_path="/work/kubeconfig",
    )


def _deploy(service, run_context, config, run_cmd, command_timeout, readiness_timeout):
    completed = []
    for name, action in service.deployment_steps(
        run_context, config, run_cmd, command_timeout, readiness_timeout
    ):
        action()
        completed.append(name)
    return completed


def _not_found(resource):
    return CommandError(
        "Command failed (1)",
        cmd=["kubectl"],
        returncode=1,
        stderr=f'Error from server (NotFound): deployments.apps "{resource}" not found',
    )


def test_deploy_applies_in_dependency_order(tmp_path):
    cluster = FakeCluster()
    service = ClusterDeployService(DummyLogger(), DummyConsole())
    run_context = _run_context(tmp_path)

    completed = _deploy(service, run_context, _config(), cluster, command_timeout=60, readiness_timeout=300)

    assert completed == [
        "apply_workload",
        "install_cert_manager",
        "wait_for_cert_manager",
        "apply_certificate_resources",
        "install_ingress_controller",
        "wait_for_ingress_controller",
        "apply_ingress_route",
    ]
    assert cluster.applied == [
        str(tmp_path / "manifests" / "workload.yaml"),
        "https://github.com/cert-manager/cert-manager/releases/download/v1.8.0/cert-manager.yaml",
        str(tmp_path / "manifests" / "certificate.yaml"),
        _config().ingress_nginx_manifest_url,
        str(tmp_path / "manifests" / "ingress.yaml"),
    ]
    assert cluster.rollouts == [
        ("cert-manager", "deployment/cert-manager"),
        ("cert-manager", "deployment/cert-manager-cainjector"),
        ("cert-manager", "deployment/cert-manager-webhook"),
        ("ingress-nginx", "deployment/ingress-nginx-controller"),
    ]


def test_deploy_end_state_matches_configuration(tmp_path):
    cluster = FakeCluster()
    service = ClusterDeployService(DummyLogger(), DummyConsole())

    _deploy(service, _run_context(tmp_path), _config(), cluster, command_timeout=60, readiness_timeout=300)

    deployment = cluster.objects[("Deployment", "default", "erlang-api-deployment")]
    assert deployment["spec"]["replicas"] == 2
    service_obj = cluster.objects[("Service", "default", "erlang-api-service")]
    assert service_obj["spec"]["ports"][0]["targetPort"] == 8080
    ingress = cluster.objects[("Ingress", "default", "erlang-api-ingress")]
    assert ingress["spec"]["rules"][0]["host"] == "example.org"
    assert ingress["spec"]["tls"][0]["secretName"] == "tls-secret"
    certificate = cluster.objects[("Certificate", "default", "tls-cert")]
    assert certificate["spec"]["secretName"] == "tls-secret"


def test_redeploy_converges_to_same_objects(tmp_path):
    cluster = FakeCluster()
    service = ClusterDeployService(DummyLogger(), DummyConsole())
    run_context = _run_context(tmp_path)

    _deploy(service, run_context, _config(), cluster, command_timeout=60, readiness_timeout=300)
    first = dict(cluster.objects)
    _deploy(service, run_context, _config(), cluster, command_timeout=60, readiness_timeout=300)

    assert cluster.objects == first


def test_rejected_apply_raises_apply_rejected():
    def rejecting(cmd, **kwargs):
        raise CommandError(
            "Command failed (1)",
            cmd=cmd,
            returncode=1,
            stderr='error: error validating "ingress.yaml": unknown field "ingressClass"',
        )

    service = ClusterDeployService(DummyLogger(), DummyConsole())

    with pytest.raises(ApplyRejected, match="unknown field"):
        service.apply("/work/kubeconfig", "ingress.yaml", rejecting)


def test_rollout_polls_until_controller_exists(monkeypatch):
    sleeps = []
    monkeypatch.setattr(cluster_deploy_module.time, "sleep", sleeps.append)
    resource = "deployment/ingress-nginx-controller"
    cluster = FakeCluster(rollout_failures={resource: [_not_found("ingress-nginx-controller")]})
    service = ClusterDeployService(DummyLogger(), DummyConsole())

    service.wait_for_rollout(
        "/work/kubeconfig",
        "ingress-nginx",
        "ingress-nginx-controller",
        cluster,
        timeout_seconds=300,
        poll_interval=2,
    )

    assert cluster.rollouts == [("ingress-nginx", resource), ("ingress-nginx", resource)]
    assert sleeps == [2]


def test_rollout_timeout_is_readiness_timeout_not_apply_rejected():
    resource = "deployment/cert-manager-webhook"
    timeout = CommandTimeout("Command timed out after 330s", cmd=["kubectl"])
    cluster = FakeCluster(rollout_failures={resource: [timeout]})
    service = ClusterDeployService(DummyLogger(), DummyConsole())

    with pytest.raises(ReadinessTimeout) as failure:
        service.wait_for_rollout("/work/kubeconfig", "cert-manager", "cert-manager-webhook", cluster, 300)

    assert not isinstance(failure.value, ApplyRejected)
    assert failure.value.namespace == "cert-manager"
    assert failure.value.resource == resource
    assert "Timed out after 300s" in str(failure.value)


def test_rollout_status_timeout_message_is_readiness_timeout():
    resource = "deployment/cert-manager"
    error = CommandError(
        "Command failed (1)",
        cmd=["kubectl"],
        returncode=1,
        stderr="error: timed out waiting for the condition",
    )
    cluster = FakeCluster(rollout_failures={resource: [error]})
    service = ClusterDeployService(DummyLogger(), DummyConsole())

    with pytest.raises(ReadinessTimeout, match="timed out waiting for the condition"):
        service.wait_for_rollout("/work/kubeconfig", "cert-manager", "cert-manager", cluster, 60)


def test_rollout_gives_up_when_deadline_passes(monkeypatch):
    readings = [0.0, 0.0]
    monkeypatch.setattr(
        cluster_deploy_module.time,
        "monotonic",
        lambda: readings.pop(0) if readings else 1000.0,
    )
    monkeypatch.setattr(cluster_deploy_module.time, "sleep", lambda _seconds: None)
    resource = "deployment/cert-manager"
    cluster = FakeCluster(rollout_failures={resource: [_not_found("cert-manager")]})
    service = ClusterDeployService(DummyLogger(), DummyConsole())

    with pytest.raises(ReadinessTimeout, match="NotFound"):
        service.wait_for_rollout("/work/kubeconfig", "cert-manager", "cert-manager", cluster, 30)

    assert len(cluster.rollouts) == 1
