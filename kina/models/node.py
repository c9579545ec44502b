"""Data models for nodes and command execution."""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from kina.exceptions import InvalidStateTransition


class NodeRole(str, Enum):
    """Kubernetes role of a node."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    def __str__(self) -> str:
        return self.value


class NodeState(str, Enum):
    """Bootstrap state of a single node."""

    CREATED = "Created"
    RUNTIME_CONFIGURED = "RuntimeConfigured"
    CLUSTER_JOINED = "ClusterJoined"
    NETWORK_PENDING = "NetworkPending"
    READY = "Ready"
    FAILED = "Failed"


NODE_TRANSITIONS: dict[NodeState, set[NodeState]] = {
    NodeState.CREATED: {NodeState.RUNTIME_CONFIGURED},
    NodeState.RUNTIME_CONFIGURED: {NodeState.CLUSTER_JOINED},
    NodeState.CLUSTER_JOINED: {NodeState.NETWORK_PENDING},
    NodeState.NETWORK_PENDING: {NodeState.READY},
    NodeState.READY: set(),
    NodeState.FAILED: set(),
}


class NodeHandle(BaseModel):
    """Backend instance as reported by a provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    cluster_name: str
    role: NodeRole
    address: str | None = None
    status: str = "unknown"
    image: str | None = None
    primary: bool = False

    @property
    def running(self) -> bool:
        return self.status == "running"

    def __str__(self) -> str:
        return f"{self.name} ({self.address or 'no address'}) - {self.status}"


class Node(BaseModel):
    """A node owned by a cluster.

    ``cluster_name`` is only a lookup key. The owning ``Cluster`` holds the
    node, the node never holds the cluster.
    """

    handle: NodeHandle
    state: NodeState = NodeState.CREATED
    error: str | None = None

    @property
    def name(self) -> str:
        return self.handle.name

    @property
    def role(self) -> NodeRole:
        return self.handle.role

    @property
    def address(self) -> str | None:
        return self.handle.address

    @property
    def cluster_name(self) -> str:
        return self.handle.cluster_name

    @property
    def is_control_plane(self) -> bool:
        return self.handle.role == NodeRole.CONTROL_PLANE

    def transition(self, new_state: NodeState) -> None:
        """Advance the node to ``new_state``.

        Raises:
            InvalidStateTransition: If the move is not forward along the
                bootstrap path. ``Failed`` is always allowed.
        """
        if new_state == NodeState.FAILED:
            self.state = NodeState.FAILED
            return
        if new_state not in NODE_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Node '{self.name}' cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def fail(self, reason: str) -> None:
        self.error = reason
        self.transition(NodeState.FAILED)


class ExecResult(BaseModel):
    """Result of a command executed inside a node."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
