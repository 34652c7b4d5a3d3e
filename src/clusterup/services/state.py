"""Checkpoint persistence so an interrupted run can resume where it stopped."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from clusterup.errors import ClusterUpError
from clusterup.models import NodeProgress, ProvisionedNode


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_json_atomic(path: str, payload: Dict[str, Any], prefix: str):
    """Writes ``payload`` next to ``path`` and renames it into place."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(prefix=prefix, suffix=".json", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
            json.dump(payload, file_obj, indent=2, sort_keys=True)
            file_obj.write("\n")
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


class StateService:
    """Reads and writes the run state file.

    Steps are keyed by name. A step counts as done only once it has been
    marked successful; a step that was running when the process died is
    simply started again on resume.
    """

    SCHEMA_VERSION = 2

    def __init__(self, state_file: str, logger):
        self.state_file = state_file
        self.logger = logger

    def load(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.state_file):
            return None

        try:
            with open(self.state_file, "r", encoding="utf-8") as file_obj:
                data = json.load(file_obj)
        except (OSError, json.JSONDecodeError) as exc:
            raise ClusterUpError(f"Could not read state file '{self.state_file}': {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("steps", {}), dict):
            raise ClusterUpError(f"State file '{self.state_file}' has invalid format.")
        if data.get("schema_version", self.SCHEMA_VERSION) != self.SCHEMA_VERSION:
            raise ClusterUpError(
                f"State file '{self.state_file}' was written by an incompatible version. "
                "Start a fresh run without --resume."
            )
        return data

    def save(self, state: Dict[str, Any]):
        state["schema_version"] = self.SCHEMA_VERSION
        state["updated_at"] = utc_now()
        try:
            write_json_atomic(self.state_file, state, prefix="run-state-")
        except OSError as exc:
            raise ClusterUpError(f"Could not write state file '{self.state_file}': {exc}") from exc

    def initialize(
        self,
        metadata: Dict[str, Any],
        run_context: Dict[str, Any],
        resume: bool,
    ) -> Tuple[Dict[str, Any], bool]:
        existing = self.load()
        if resume and existing:
            self._check_same_configuration(existing, metadata)
            return existing, True

        now = utc_now()
        state = {
            "created_at": now,
            "status": "running",
            "metadata": metadata,
            "run_context": run_context,
            "current_step": None,
            "steps": {},
            "nodes": [],
            "node_progress": {},
            "last_error": None,
        }
        self.save(state)
        return state, False

    def mark_step_started(self, state: Dict[str, Any], step_name: str):
        record = state["steps"].setdefault(step_name, {"attempts": 0})
        record.update(
            {
                "status": "running",
                "attempts": record.get("attempts", 0) + 1,
                "started_at": utc_now(),
                "finished_at": None,
                "error": None,
            }
        )
        state["current_step"] = step_name
        self.save(state)

    def mark_step_completed(self, state: Dict[str, Any], step_name: str):
        self._finish_step(state, step_name, "success")
        state["current_step"] = None
        self.save(state)

    def mark_step_failed(self, state: Dict[str, Any], step_name: str, error: str):
        self._finish_step(state, step_name, "failed", error)
        state["status"] = "failed"
        state["last_error"] = error
        self.save(state)

    def mark_status(self, state: Dict[str, Any], status: str, error: Optional[str] = None):
        state["status"] = status
        if error:
            state["last_error"] = error
        self.save(state)

    def is_step_completed(self, state: Dict[str, Any], step_name: str) -> bool:
        return state.get("steps", {}).get(step_name, {}).get("status") == "success"

    def completed_steps(self, state: Dict[str, Any]) -> List[str]:
        return [name for name, record in state.get("steps", {}).items() if record.get("status") == "success"]

    def set_nodes(self, state: Dict[str, Any], nodes: List[ProvisionedNode]):
        state["nodes"] = [node.to_dict() for node in nodes]
        self.save(state)

    def get_nodes(self, state: Dict[str, Any]) -> List[ProvisionedNode]:
        try:
            return [ProvisionedNode.from_dict(item) for item in state.get("nodes", [])]
        except (KeyError, ValueError, TypeError) as exc:
            raise ClusterUpError(f"State file '{self.state_file}' has invalid node records: {exc}") from exc

    def record_node_progress(self, state: Dict[str, Any], progress: Iterable[NodeProgress]):
        for item in progress:
            state["node_progress"][item.node.name] = {
                "state": item.state.value,
                "history": [entry.value for entry in item.history],
                "error": item.error,
            }
        self.save(state)

    def _check_same_configuration(self, state: Dict[str, Any], metadata: Dict[str, Any]):
        previous = state.get("metadata", {})
        changed = sorted(key for key in set(previous) | set(metadata) if previous.get(key) != metadata.get(key))
        if changed:
            raise ClusterUpError(
                "Cannot resume run with different configuration. "
                f"Mismatched fields: {', '.join(changed)}."
            )

    @staticmethod
    def _finish_step(state: Dict[str, Any], step_name: str, status: str, error: Optional[str] = None):
        record = state["steps"].get(step_name)
        if record is None or record.get("status") != "running":
            return
        record["status"] = status
        record["finished_at"] = utc_now()
        record["error"] = error
