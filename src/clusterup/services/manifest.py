"""Run manifest: a JSON record of what one invocation did."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from clusterup.models import ProvisionedNode
from clusterup.services.state import utc_now, write_json_atomic


def _seconds_between(started_at: str, finished_at: str) -> float:
    return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()


class ManifestService:
    """Collects step timings, nodes and produced artifacts for a single run.

    Unlike the state file, the manifest is rewritten on every run and is never
    read back. Write errors are logged and otherwise ignored.
    """

    def __init__(self, manifest_file: str, logger):
        self.manifest_file = manifest_file
        self.logger = logger
        self.manifest: Dict[str, Any] = {
            "run_id": None,
            "status": "running",
            "dry_run": False,
            "started_at": None,
            "finished_at": None,
            "duration_seconds": None,
            "metadata": {},
            "nodes": [],
            "steps": [],
            "artifacts": {},
            "error": None,
        }

    def start_run(self, run_id: str, metadata: Dict[str, Any], dry_run: bool = False):
        self.manifest.update(
            {
                "run_id": run_id,
                "status": "running",
                "dry_run": dry_run,
                "started_at": utc_now(),
                "metadata": metadata,
            }
        )
        self.write()

    def set_run_id(self, run_id: str):
        self.manifest["run_id"] = run_id
        self.write()

    def set_nodes(self, nodes: List[ProvisionedNode]):
        self.manifest["nodes"] = [node.to_dict() for node in nodes]
        self.write()

    def step_started(self, step_name: str, details: Optional[Dict[str, Any]] = None):
        self.manifest["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": utc_now(),
                "finished_at": None,
                "duration_seconds": None,
                "details": dict(details or {}),
                "error": None,
            }
        )
        self.write()

    def step_finished(
        self,
        step_name: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        step = self._running_step(step_name)
        if step is not None:
            finished_at = utc_now()
            step.update(
                {
                    "status": status,
                    "finished_at": finished_at,
                    "duration_seconds": _seconds_between(step["started_at"], finished_at),
                    "error": error,
                }
            )
            step["details"].update(details or {})
        self.write()

    def add_artifact(self, key: str, value: str):
        self.manifest["artifacts"][key] = value
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        finished_at = utc_now()
        self.manifest.update({"status": status, "finished_at": finished_at, "error": error})
        if self.manifest["started_at"]:
            self.manifest["duration_seconds"] = _seconds_between(self.manifest["started_at"], finished_at)
        self.write()

    def write(self):
        try:
            write_json_atomic(self.manifest_file, self.manifest, prefix="run-manifest-")
        except OSError as exc:
            self.logger.warning("Could not write manifest file '%s': %s", self.manifest_file, exc)

    def _running_step(self, step_name: str) -> Optional[Dict[str, Any]]:
        for step in reversed(self.manifest["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                return step
        return None
