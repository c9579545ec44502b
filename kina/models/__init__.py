"""Data models for cluster definitions, nodes and network state."""

from kina.models.certificate import ApprovalState, CertificateRequest
from kina.models.cluster import Cluster, ClusterHealth, ClusterSpec, ClusterState, ClusterStatus
from kina.models.network import CNIConfig
from kina.models.node import ExecResult, Node, NodeHandle, NodeRole, NodeState

__all__ = [
    "ApprovalState",
    "CertificateRequest",
    "Cluster",
    "ClusterHealth",
    "ClusterSpec",
    "ClusterState",
    "ClusterStatus",
    "CNIConfig",
    "ExecResult",
    "Node",
    "NodeHandle",
    "NodeRole",
    "NodeState",
]
