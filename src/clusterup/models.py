"""Shared domain models for ClusterUp."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import (
    DEFAULT_ACME_SERVER,
    DEFAULT_CNI_MANIFEST_URL,
    DEFAULT_INGRESS_NGINX_MANIFEST_URL,
    DEFAULT_NODE_IMAGE_ID,
    DEFAULT_SHAPE,
)


@dataclass(frozen=True)
class RunConfiguration:
    """Deployment inputs supplied once at start and never mutated."""

    compartment_id: Optional[str] = None
    availability_domain: Optional[str] = None
    subnet_id: Optional[str] = None
    registry_namespace: Optional[str] = None
    domain: Optional[str] = None
    email: Optional[str] = None
    region: str = "us-phoenix-1"
    node_image_id: str = DEFAULT_NODE_IMAGE_ID
    control_plane_shape: str = DEFAULT_SHAPE
    worker_shape: str = DEFAULT_SHAPE
    control_plane_name: str = "master-node"
    worker_name: str = "worker-node"
    ssh_private_key: str = "~/.ssh/id_rsa"
    ssh_public_key: Optional[str] = None
    ssh_user: str = "ubuntu"
    registry: str = "iad.ocir.io"
    registry_username: Optional[str] = None
    image_name: str = "my-erlang-api"
    image_tag: str = "v1"
    namespace: str = "default"
    app_name: str = "erlang-api"
    replicas: int = 2
    container_port: int = 8080
    service_port: int = 80
    pod_network_cidr: str = "10.244.0.0/16"
    kubernetes_version: str = "v1.30"
    cert_manager_version: str = "v1.8.0"
    ingress_nginx_manifest_url: str = DEFAULT_INGRESS_NGINX_MANIFEST_URL
    cni_manifest_url: str = DEFAULT_CNI_MANIFEST_URL
    acme_server: str = DEFAULT_ACME_SERVER

    REQUIRED_FIELDS = (
        "compartment_id",
        "availability_domain",
        "subnet_id",
        "registry_namespace",
        "domain",
        "email",
    )

    @property
    def image_ref(self) -> str:
        return f"{self.registry}/{self.registry_namespace}/{self.image_name}:{self.image_tag}"

    @property
    def public_key_path(self) -> str:
        return self.ssh_public_key or f"{self.ssh_private_key}.pub"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class NodeRole(str, Enum):
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


@dataclass(frozen=True)
class ProvisionedNode:
    role: NodeRole
    name: str
    public_address: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "name": self.name, "public_address": self.public_address}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ProvisionedNode":
        return cls(
            role=NodeRole(data["role"]),
            name=data["name"],
            public_address=data["public_address"],
        )


class NodeState(str, Enum):
    PENDING = "pending"
    RUNTIME_INSTALLED = "runtime-installed"
    TOOLS_INSTALLED = "tools-installed"
    CLUSTER_INITIALIZED = "cluster-initialized"
    CLUSTER_JOINED = "cluster-joined"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    NodeState.PENDING: {NodeState.RUNTIME_INSTALLED},
    NodeState.RUNTIME_INSTALLED: {NodeState.TOOLS_INSTALLED},
    NodeState.TOOLS_INSTALLED: {NodeState.CLUSTER_INITIALIZED, NodeState.CLUSTER_JOINED},
    NodeState.CLUSTER_INITIALIZED: {NodeState.DONE},
    NodeState.CLUSTER_JOINED: {NodeState.DONE},
    NodeState.DONE: set(),
    NodeState.FAILED: set(),
}

_ROLE_BOOTSTRAP_STATE = {
    NodeRole.CONTROL_PLANE: NodeState.CLUSTER_INITIALIZED,
    NodeRole.WORKER: NodeState.CLUSTER_JOINED,
}


@dataclass
class NodeProgress:
    """Bootstrap state machine for a single node. Terminal on first failure."""

    node: ProvisionedNode
    state: NodeState = NodeState.PENDING
    history: List[NodeState] = field(default_factory=lambda: [NodeState.PENDING])
    error: Optional[str] = None

    def advance(self, target: NodeState):
        if target not in _TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal bootstrap transition for {self.node.name}: "
                f"{self.state.value} -> {target.value}"
            )
        if target in _ROLE_BOOTSTRAP_STATE.values() and target != _ROLE_BOOTSTRAP_STATE[self.node.role]:
            raise ValueError(
                f"Node {self.node.name} with role {self.node.role.value} cannot enter {target.value}"
            )
        self.state = target
        self.history.append(target)

    def fail(self, error: str):
        if self.is_terminal:
            raise ValueError(f"Node {self.node.name} is already in terminal state {self.state.value}")
        self.state = NodeState.FAILED
        self.history.append(NodeState.FAILED)
        self.error = error

    @property
    def is_terminal(self) -> bool:
        return self.state in (NodeState.DONE, NodeState.FAILED)

    @property
    def cluster_ready(self) -> bool:
        """True once the node has initialized or joined the cluster."""
        return self.state in (NodeState.CLUSTER_INITIALIZED, NodeState.CLUSTER_JOINED, NodeState.DONE)


@dataclass(frozen=True)
class RenderedArtifact:
    name: str
    relative_path: str
    content: str
    executable: bool = False


@dataclass(frozen=True)
class RunContext:
    """Per-run identifiers and work directories."""

    run_id: str
    work_dir: str
    terraform_dir: str
    build_dir: str
    manifests_dir: str
    bootstrap_dir: str
    kubeconfig_path: str
