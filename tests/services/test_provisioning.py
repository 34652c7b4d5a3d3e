import json
import subprocess

import pytest

from clusterup.errors import CommandError, ProvisioningFailure
from clusterup.models import NodeRole, RunConfiguration
from clusterup.services.provisioning import ProvisioningService


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None


class DummyConsole:
    def print(self, *_args, **_kwargs):
        return None


class FakeTerraform:
    def __init__(self, outputs=None, fail_on=None, stderr=""):
        self.outputs = outputs if outputs is not None else {
            "control_plane_ip": {"value": "203.0.113.10", "type": "string"},
            "worker_ip": {"value": "203.0.113.11", "type": "string"},
        }
        self.fail_on = fail_on
        self.stderr = stderr
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        action = cmd[2]
        if action == self.fail_on:
            raise CommandError("Command failed (1)", cmd=cmd, returncode=1, stderr=self.stderr)
        stdout = json.dumps(self.outputs) if action == "output" else ""
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr="")


def _service():
    return ProvisioningService(logger=DummyLogger(), console=DummyConsole())


def test_provision_runs_init_apply_output_and_returns_nodes(tmp_path):
    terraform = FakeTerraform()
    config = RunConfiguration(control_plane_name="cp", worker_name="wk")

    nodes = _service().provision(str(tmp_path), config, terraform, timeout=60)

    assert [call[2] for call in terraform.calls] == ["init", "apply", "output"]
    assert terraform.calls[0][1] == f"-chdir={tmp_path}"
    assert "-auto-approve" in terraform.calls[1]
    assert [(node.role, node.name, node.public_address) for node in nodes] == [
        (NodeRole.CONTROL_PLANE, "cp", "203.0.113.10"),
        (NodeRole.WORKER, "wk", "203.0.113.11"),
    ]


def test_provision_failure_carries_terraform_output(tmp_path):
    error = "Error: 404-NotAuthorizedOrNotFound, Authorization failed or requested resource not found"
    terraform = FakeTerraform(fail_on="apply", stderr=error)

    with pytest.raises(ProvisioningFailure) as failure:
        _service().provision(str(tmp_path), RunConfiguration(), terraform)

    assert failure.value.output == error
    assert error in str(failure.value)
    assert [call[2] for call in terraform.calls] == ["init", "apply"]


def test_missing_output_is_a_provisioning_failure(tmp_path):
    terraform = FakeTerraform(outputs={"control_plane_ip": {"value": "203.0.113.10"}})

    with pytest.raises(ProvisioningFailure, match="'worker_ip' is missing"):
        _service().read_nodes(str(tmp_path), RunConfiguration(), terraform)


def test_parse_outputs_accepts_plain_and_wrapped_values():
    raw = json.dumps({"control_plane_ip": {"value": " 1.2.3.4 "}, "worker_ip": "5.6.7.8", "count": {"value": 2}})

    assert ProvisioningService.parse_outputs(raw) == {"control_plane_ip": "1.2.3.4", "worker_ip": "5.6.7.8"}


def test_parse_outputs_rejects_garbage():
    with pytest.raises(ProvisioningFailure, match="Could not parse terraform output JSON"):
        ProvisioningService.parse_outputs("not json")
