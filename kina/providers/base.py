"""Runtime provider interface.

A provider owns backend instances (VMs or containers) and knows nothing
about Kubernetes. Backends differ in what they can do, so each declares a
``ProviderCapabilities`` and the orchestrator gates features on it instead
of branching on the backend type.
"""

import posixpath
import shlex
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from kina.exceptions import ExecError, ImageLoadError
from kina.logging_config import get_logger
from kina.models.cluster import ClusterSpec
from kina.models.node import ExecResult, NodeHandle

logger = get_logger(__name__)

CLUSTER_LABEL = "io.kina.cluster"
ROLE_LABEL = "io.kina.role"
IMAGE_LABEL = "io.kina.image"
PRIMARY_LABEL = "io.kina.primary"

API_SERVER_PORT = 6443

IMAGE_ARCHIVE_PATH = "/tmp/kina-image.tar"
IMAGE_NAMESPACE = "k8s.io"


class ProviderCapabilities(BaseModel):
    """What a backend supports."""

    model_config = ConfigDict(frozen=True)

    multi_node: bool = False
    static_addressing: bool = False
    hostname_flag: bool = False
    privileged_flag: bool = False


class DeleteResult(BaseModel):
    """Outcome of a best-effort node deletion."""

    deleted: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class Provider(ABC):
    """Capability contract every node backend satisfies."""

    @property
    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Capabilities of this backend."""

    @abstractmethod
    def provision(self, spec: ClusterSpec) -> list[NodeHandle]:
        """Create every node of ``spec``.

        Raises:
            AlreadyProvisioned: If nodes for ``spec.name`` already exist.
            ProvisionError: If any node could not be created or started.
        """

    @abstractmethod
    def list_nodes(self, cluster_name: str) -> list[NodeHandle]:
        """Return backend instances labelled with ``cluster_name``.

        An unknown cluster yields an empty list.
        """

    @abstractmethod
    def delete_nodes(self, nodes: Sequence[NodeHandle]) -> DeleteResult:
        """Delete ``nodes``, attempting every one.

        Raises:
            DeleteError: If any node could not be deleted. ``failures`` maps
                node name to reason.
        """

    @abstractmethod
    def get_api_server_endpoint(self, cluster_name: str) -> str:
        """Return ``https://<address>:6443`` for the cluster's control plane.

        Raises:
            NotFoundError: If no running control-plane node has an address.
        """

    @abstractmethod
    def exec_in_node(
        self,
        node: NodeHandle,
        command: Sequence[str],
        timeout: float | None = None,
        stdin: str | None = None,
    ) -> ExecResult:
        """Run ``command`` inside ``node`` and wait for it.

        A non-zero exit code is returned in the result, not raised.

        Raises:
            ExecTimeout: If the command does not finish within ``timeout``.
            ExecError: If the command could not be started at all.
        """

    @abstractmethod
    def save_image(self, image: str, destination: Path) -> None:
        """Export ``image`` from the host image store to a tar archive.

        Raises:
            ImageLoadError: If the image is unknown or cannot be exported.
        """

    @abstractmethod
    def copy_to_node(self, node: NodeHandle, source: Path, path: str, timeout: float | None = None) -> None:
        """Copy the host file ``source`` to ``path`` inside ``node`` byte for byte.

        Raises:
            ExecError: If the copy fails or times out.
        """

    def load_image(self, node: NodeHandle, archive: Path, timeout: float | None = None) -> None:
        """Import an image archive into the node's containerd (namespace k8s.io).

        The archive is removed from the node again whether or not the import
        worked.

        Raises:
            ImageLoadError: If the import fails.
            ExecError: If the archive cannot be copied into the node.
        """
        self.copy_to_node(node, archive, IMAGE_ARCHIVE_PATH, timeout=timeout)
        try:
            result = self.exec_in_node(
                node,
                ["ctr", "-n", IMAGE_NAMESPACE, "images", "import", IMAGE_ARCHIVE_PATH],
                timeout=timeout,
            )
        finally:
            try:
                self.exec_in_node(node, ["rm", "-f", IMAGE_ARCHIVE_PATH])
            except ExecError as e:
                logger.warning(f"[{node.name}] could not remove {IMAGE_ARCHIVE_PATH}: {e.message}")

        if not result.ok:
            raise ImageLoadError(
                f"Failed to import image archive on node '{node.name}'",
                result.stderr.strip() or result.stdout.strip(),
            )
        logger.info(f"[{node.name}] image archive imported")

    def list_clusters(self) -> list[str]:
        """Names of clusters with at least one node on this backend."""
        return []

    def write_file(self, node: NodeHandle, path: str, content: str) -> None:
        """Write ``content`` to ``path`` inside ``node``, creating parent dirs."""
        directory = posixpath.dirname(path) or "/"
        script = f"mkdir -p {shlex.quote(directory)} && cat > {shlex.quote(path)}"
        result = self.exec_in_node(node, ["sh", "-c", script], stdin=content)
        if not result.ok:
            raise ExecError(f"Failed to write {path} on node '{node.name}'", result.stderr.strip())

    def read_file(self, node: NodeHandle, path: str) -> str:
        """Return the contents of ``path`` inside ``node``."""
        result = self.exec_in_node(node, ["cat", path])
        if not result.ok:
            raise ExecError(f"Failed to read {path} on node '{node.name}'", result.stderr.strip())
        return result.stdout
