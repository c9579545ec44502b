"""Data models for cluster definitions and lifecycle state."""

import ipaddress
import re
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kina.exceptions import InvalidStateTransition, ValidationError
from kina.models.node import Node, NodeHandle, NodeRole

DEFAULT_IMAGE = "kindest/node:v1.31.0"
DEFAULT_KUBERNETES_VERSION = "v1.31.0"
DEFAULT_POD_SUBNET = "10.244.0.0/16"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/16"

# Longest suffix is "-control-plane" plus a counter; node names must stay DNS labels
MAX_CLUSTER_NAME_LENGTH = 45


class ClusterState(str, Enum):
    """Lifecycle state of a cluster."""

    CREATED = "Created"
    PROVISIONING = "Provisioning"
    BOOTSTRAPPING = "Bootstrapping"
    NETWORK_CONFIGURING = "NetworkConfiguring"
    APPROVING_CERTIFICATES = "ApprovingCertificates"
    READY = "Ready"
    FAILED = "Failed"
    DELETING = "Deleting"
    DELETED = "Deleted"


CLUSTER_TRANSITIONS: dict[ClusterState, set[ClusterState]] = {
    ClusterState.CREATED: {ClusterState.PROVISIONING, ClusterState.FAILED},
    ClusterState.PROVISIONING: {ClusterState.BOOTSTRAPPING, ClusterState.FAILED},
    ClusterState.BOOTSTRAPPING: {ClusterState.NETWORK_CONFIGURING, ClusterState.FAILED},
    ClusterState.NETWORK_CONFIGURING: {ClusterState.APPROVING_CERTIFICATES, ClusterState.FAILED},
    ClusterState.APPROVING_CERTIFICATES: {ClusterState.READY, ClusterState.FAILED},
    ClusterState.READY: {ClusterState.DELETING},
    ClusterState.FAILED: {ClusterState.DELETING},
    ClusterState.DELETING: {ClusterState.DELETED, ClusterState.FAILED},
    ClusterState.DELETED: set(),
}


class ClusterSpec(BaseModel):
    """Declarative description of a cluster. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    name: str
    control_planes: int = Field(default=1, ge=1)
    workers: int = Field(default=0, ge=0)
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    pod_subnet: str = DEFAULT_POD_SUBNET
    service_subnet: str = DEFAULT_SERVICE_SUBNET
    image: str = DEFAULT_IMAGE

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the cluster name is a lowercase DNS label."""
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > MAX_CLUSTER_NAME_LENGTH:
            raise ValueError(f"name cannot exceed {MAX_CLUSTER_NAME_LENGTH} characters")
        if not re.fullmatch(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?", v):
            raise ValueError(
                f"name '{v}' must contain only lowercase alphanumeric characters and hyphens, "
                "and cannot start or end with a hyphen"
            )
        return v

    @field_validator("kubernetes_version")
    @classmethod
    def validate_kubernetes_version(cls, v: str) -> str:
        """Validate kubernetes_version looks like v1.31.0."""
        if not re.fullmatch(r"v\d+\.\d+\.\d+", v):
            raise ValueError(f"kubernetes_version '{v}' must look like v1.31.0")
        return v

    @field_validator("pod_subnet", "service_subnet")
    @classmethod
    def validate_subnet(cls, v: str) -> str:
        """Validate and normalize an IPv4 CIDR."""
        try:
            return str(ipaddress.IPv4Network(v, strict=True))
        except ValueError as e:
            raise ValueError(f"'{v}' is not a valid IPv4 CIDR: {e}")

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if not v or v.strip() != v:
            raise ValueError("image must be a non-empty reference without whitespace")
        return v

    @property
    def total_nodes(self) -> int:
        return self.control_planes + self.workers

    @property
    def is_single_node(self) -> bool:
        return self.total_nodes == 1

    @property
    def primary_node_name(self) -> str:
        return f"{self.name}-control-plane"

    def node_names(self) -> list[tuple[str, NodeRole]]:
        """Return the node names this spec produces, control planes first."""
        names = [(self.primary_node_name, NodeRole.CONTROL_PLANE)]
        for i in range(2, self.control_planes + 1):
            names.append((f"{self.name}-control-plane{i}", NodeRole.CONTROL_PLANE))
        for i in range(1, self.workers + 1):
            names.append((f"{self.name}-worker{i}", NodeRole.WORKER))
        return names


class Cluster(BaseModel):
    """Runtime cluster entity, owned by the orchestrator."""

    spec: ClusterSpec
    state: ClusterState = ClusterState.CREATED
    nodes: list[Node] = Field(default_factory=list)
    endpoint: str | None = None
    kubeconfig_path: Path | None = None
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def primary_control_plane(self) -> Node | None:
        return next((n for n in self.nodes if n.is_control_plane), None)

    def add_node(self, node: Node) -> None:
        """Add a node, rejecting duplicate backend identifiers."""
        if any(n.name == node.name for n in self.nodes):
            raise ValidationError(f"Cluster '{self.name}' already has a node named '{node.name}'")
        if node.cluster_name != self.name:
            raise ValidationError(
                f"Node '{node.name}' belongs to cluster '{node.cluster_name}', not '{self.name}'"
            )
        self.nodes.append(node)

    def get_node(self, name: str) -> Node | None:
        return next((n for n in self.nodes if n.name == name), None)

    def transition(self, new_state: ClusterState) -> None:
        """Advance the cluster lifecycle.

        Raises:
            InvalidStateTransition: If ``new_state`` is not reachable from the
                current state.
        """
        if new_state not in CLUSTER_TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Cluster '{self.name}' cannot move from {self.state.value} to {new_state.value}"
            )
        self.state = new_state

    def fail(self, reason: str) -> None:
        self.error = reason
        if self.state != ClusterState.FAILED:
            self.transition(ClusterState.FAILED)


class ClusterHealth(str, Enum):
    """Backend-level health of a cluster's nodes."""

    RUNNING = "Running"
    DEGRADED = "Degraded"
    STOPPED = "Stopped"


class ClusterStatus(BaseModel):
    """What ``kina status`` reports for one cluster."""

    name: str
    health: ClusterHealth
    endpoint: str | None = None
    kubeconfig_path: Path | None = None
    nodes: list[NodeHandle] = Field(default_factory=list)

    @classmethod
    def from_nodes(
        cls,
        name: str,
        nodes: list[NodeHandle],
        endpoint: str | None = None,
        kubeconfig_path: Path | None = None,
    ) -> "ClusterStatus":
        running = sum(1 for n in nodes if n.running)
        if nodes and running == len(nodes):
            health = ClusterHealth.RUNNING
        elif running:
            health = ClusterHealth.DEGRADED
        else:
            health = ClusterHealth.STOPPED
        return cls(name=name, health=health, endpoint=endpoint, kubeconfig_path=kubeconfig_path, nodes=nodes)
