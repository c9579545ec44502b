"""Cluster lifecycle orchestration.

The orchestrator drives a cluster through

    Created -> Provisioning -> Bootstrapping -> NetworkConfiguring
            -> ApprovingCertificates -> Ready

and guarantees that a create which does not reach Ready leaves no backend
nodes and no kubeconfig behind.
"""

import tempfile
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from kina.bootstrap import NodeBootstrapper
from kina.certificates import ApprovalReport, CertificateApprover
from kina.cluster_api import ClusterAPI, KubernetesClusterAPI
from kina.config import KinaConfig
from kina.exceptions import (
    AlreadyProvisioned,
    CertificateApprovalIncomplete,
    DeleteError,
    ImageLoadError,
    KinaError,
    MultiNodeUnsupported,
    NotFoundError,
    OperationCancelled,
)
from kina.kubeconfig import KubeconfigManager
from kina.locks import ClusterLock
from kina.logging_config import get_logger
from kina.models.cluster import Cluster, ClusterSpec, ClusterState, ClusterStatus
from kina.models.node import Node, NodeHandle, NodeRole
from kina.network import NetworkConfigurator
from kina.providers.base import Provider

logger = get_logger(__name__)

ClusterAPIFactory = Callable[[dict], ClusterAPI]


def _check_cancelled(cancel: threading.Event | None, step: str) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelled(f"Cluster creation cancelled before {step}")


def _on_node(node: Node, func: Callable, *args):
    """Run a node step, marking the node Failed if it raises."""
    try:
        return func(node, *args)
    except KinaError as e:
        node.fail(e.message)
        raise


class ClusterOrchestrator:
    """Creates and deletes clusters on top of a Provider."""

    def __init__(
        self,
        provider: Provider,
        config: KinaConfig | None = None,
        cluster_api_factory: ClusterAPIFactory | None = None,
        kubeconfig: KubeconfigManager | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            provider: Backend that owns the nodes
            config: kina configuration (defaults when omitted)
            cluster_api_factory: Builds a ClusterAPI from a kubeconfig dict
            kubeconfig: Kubeconfig writer, defaults to ``config.kubeconfig_dir``
        """
        self.provider = provider
        self.config = config or KinaConfig()
        self.cluster_api_factory = cluster_api_factory or KubernetesClusterAPI
        self.kubeconfig = kubeconfig or KubeconfigManager(self.config.kubeconfig_dir)
        self.bootstrapper = NodeBootstrapper(provider, self.config)
        self.approver = CertificateApprover(provider, self.config)
        self.clusters: dict[str, Cluster] = {}

    def _lock(self, name: str) -> ClusterLock:
        return ClusterLock(self.config.lock_dir, name, timeout=self.config.lock_timeout)

    # Create

    def create(self, spec: ClusterSpec, cancel: threading.Event | None = None) -> Cluster:
        """Create a cluster and wait until it is Ready.

        Raises:
            MultiNodeUnsupported: If the backend cannot network ``spec``'s nodes.
            ClusterBusyError: If another operation holds the cluster lock.
            AlreadyProvisioned: If nodes for ``spec.name`` already exist. Those
                nodes are left untouched.
            KinaError: Any failure after provisioning started, re-raised
                after the cluster has been rolled back.
        """
        if spec.total_nodes > 1 and not self.provider.capabilities.multi_node:
            raise MultiNodeUnsupported(
                f"Cluster '{spec.name}' needs {spec.total_nodes} nodes but the backend "
                "cannot network more than one",
                "Apple container VMs cannot reach each other on this system. Create a "
                "single-node cluster, or set multi_node_networking: true in the kina "
                "configuration if inter-VM networking is available.",
            )

        with self._lock(spec.name):
            existing = self.provider.list_nodes(spec.name)
            if existing:
                raise AlreadyProvisioned(
                    f"Cluster '{spec.name}' already exists with {len(existing)} node(s)",
                    f"Delete it first with: kina delete {spec.name}",
                )

            cluster = Cluster(spec=spec)
            self.clusters[spec.name] = cluster
            try:
                self._create(cluster, cancel)
            except AlreadyProvisioned as e:
                # Nodes appeared after the check above; they are not ours to delete
                logger.error(f"Cluster '{spec.name}' creation failed: {e.message}")
                cluster.fail(e.message)
                raise
            except (Exception, KeyboardInterrupt) as e:
                reason = e.message if isinstance(e, KinaError) else (str(e) or type(e).__name__)
                logger.error(f"Cluster '{spec.name}' creation failed: {reason}")
                cluster.fail(reason)
                self._rollback(cluster)
                raise
        return cluster

    def _create(self, cluster: Cluster, cancel: threading.Event | None) -> None:
        spec = cluster.spec

        _check_cancelled(cancel, "provisioning")
        cluster.transition(ClusterState.PROVISIONING)
        logger.info(f"Provisioning {spec.total_nodes} node(s) for cluster '{spec.name}'")
        for handle in self.provider.provision(spec):
            cluster.add_node(Node(handle=handle))

        _check_cancelled(cancel, "bootstrapping")
        cluster.transition(ClusterState.BOOTSTRAPPING)
        admin_conf = self._bootstrap(cluster, cancel)

        cluster.endpoint = self.provider.get_api_server_endpoint(spec.name)
        kubeconfig = self.kubeconfig.rewrite(admin_conf, spec.name, cluster.endpoint)
        api = self.cluster_api_factory(kubeconfig)

        _check_cancelled(cancel, "network configuration")
        cluster.transition(ClusterState.NETWORK_CONFIGURING)
        network = NetworkConfigurator(self.provider, self.config, spec)
        for node in cluster.nodes:
            _check_cancelled(cancel, f"network configuration of {node.name}")
            _on_node(node, network.configure, api)

        _check_cancelled(cancel, "certificate approval")
        cluster.transition(ClusterState.APPROVING_CERTIFICATES)
        if self.config.approve_csrs:
            report = self.approver.approve(api, cluster.nodes)
            if not report.complete:
                warning = CertificateApprovalIncomplete(
                    "Kubelet serving certificates were not approved for: " + ", ".join(report.missing),
                    f"Approve them later with: kina approve-csr {spec.name}",
                )
                logger.warning(warning.message)
                cluster.warnings.append(warning.format_message())

        _check_cancelled(cancel, "writing the kubeconfig")
        cluster.kubeconfig_path = self.kubeconfig.write(spec.name, kubeconfig)
        cluster.transition(ClusterState.READY)
        logger.info(f"Cluster '{spec.name}' is Ready at {cluster.endpoint}")

    def _bootstrap(self, cluster: Cluster, cancel: threading.Event | None) -> str:
        spec = cluster.spec
        nodes = cluster.nodes

        with ThreadPoolExecutor(max_workers=len(nodes)) as pool:
            futures = [pool.submit(_on_node, node, self.bootstrapper.configure_runtime, spec) for node in nodes]
        errors = []
        for future in futures:
            try:
                cluster.warnings.extend(future.result())
            except KinaError as e:
                errors.append(e)
        if errors:
            raise errors[0]

        _check_cancelled(cancel, "kubeadm init")
        primary = cluster.primary_control_plane
        admin_conf = _on_node(primary, self.bootstrapper.init_primary, spec)

        for node in nodes:
            if node is primary:
                continue
            _check_cancelled(cancel, f"joining {node.name}")
            join_command = self.bootstrapper.join_command(primary, control_plane=node.is_control_plane)
            _on_node(node, self.bootstrapper.join, join_command)

        for node in nodes:
            self.bootstrapper.mark_network_pending(node)
        return admin_conf

    def _rollback(self, cluster: Cluster) -> None:
        """Best-effort cleanup after a failed create. Never raises."""
        handles = {node.name: node.handle for node in cluster.nodes}
        try:
            for handle in self.provider.list_nodes(cluster.name):
                handles.setdefault(handle.name, handle)
        except KinaError as e:
            logger.error(f"Rollback: could not list nodes of cluster '{cluster.name}': {e.message}")

        if handles:
            logger.info(f"Rolling back cluster '{cluster.name}': deleting {len(handles)} node(s)")
            try:
                self.provider.delete_nodes(list(handles.values()))
            except DeleteError as e:
                for node_name, reason in e.failures.items():
                    logger.error(f"Rollback: failed to delete node '{node_name}': {reason}")
            except KinaError as e:
                logger.error(f"Rollback of cluster '{cluster.name}' failed: {e.message}")

        try:
            self.kubeconfig.remove(cluster.name)
        except KinaError as e:
            logger.error(f"Rollback: could not remove kubeconfig of '{cluster.name}': {e.message}")
        cluster.kubeconfig_path = None

    # Delete

    def _discover(self, name: str, handles: Sequence[NodeHandle]) -> Cluster:
        """Rebuild a Cluster for nodes created by an earlier process."""
        control_planes = sum(1 for h in handles if h.role == NodeRole.CONTROL_PLANE)
        spec = ClusterSpec.model_construct(
            name=name,
            control_planes=max(control_planes, 1),
            workers=len(handles) - control_planes,
        )
        cluster = Cluster(spec=spec, state=ClusterState.READY)
        for handle in handles:
            cluster.add_node(Node(handle=handle))
        return cluster

    def delete(self, name: str) -> None:
        """Delete a cluster. Unknown or already deleted clusters are a no-op.

        Raises:
            ClusterBusyError: If another operation holds the cluster lock.
            DeleteError: If any node could not be deleted. Every node is
                attempted first and the cluster is left Failed.
        """
        with self._lock(name):
            handles = self.provider.list_nodes(name)
            cluster = self.clusters.get(name)

            if not handles and (cluster is None or cluster.state == ClusterState.DELETED):
                logger.info(f"Cluster '{name}' does not exist, nothing to delete")
                self.kubeconfig.remove(name)
                return

            if cluster is None or cluster.state == ClusterState.DELETED:
                cluster = self._discover(name, handles)
                self.clusters[name] = cluster
            if cluster.state not in (ClusterState.READY, ClusterState.FAILED):
                cluster.fail("Interrupted before reaching Ready")
            cluster.transition(ClusterState.DELETING)

            targets = {node.name: node.handle for node in cluster.nodes}
            for handle in handles:
                targets.setdefault(handle.name, handle)

            logger.info(f"Deleting cluster '{name}' ({len(targets)} node(s))")
            try:
                if targets:
                    self.provider.delete_nodes(list(targets.values()))
                self.kubeconfig.remove(name)
            except KinaError as e:
                cluster.fail(e.message)
                raise

            cluster.kubeconfig_path = None
            cluster.transition(ClusterState.DELETED)
            logger.info(f"Cluster '{name}' deleted")

    # Queries

    def get(self, name: str) -> Cluster | None:
        return self.clusters.get(name)

    def list_clusters(self) -> list[str]:
        """Names of clusters known in this process or found on the backend."""
        names = set(self.provider.list_clusters())
        names.update(n for n, c in self.clusters.items() if c.state == ClusterState.READY)
        return sorted(names)

    def get_nodes(self, name: str) -> list[NodeHandle]:
        return self.provider.list_nodes(name)

    def approve_certificates(self, name: str) -> ApprovalReport:
        """Approve pending kubelet-serving CSRs of an existing cluster.

        Raises:
            NotFoundError: If the cluster has no kubeconfig or nodes.
        """
        kubeconfig = self.kubeconfig.load(name)
        handles = self.provider.list_nodes(name)
        if not handles:
            raise NotFoundError(f"Cluster '{name}' has no nodes")
        api = self.cluster_api_factory(kubeconfig)
        return self.approver.approve(api, [Node(handle=h) for h in handles])

    def status(self, name: str) -> ClusterStatus:
        """Report node and endpoint status of an existing cluster.

        Raises:
            NotFoundError: If the backend has no nodes for ``name``.
        """
        handles = self.provider.list_nodes(name)
        if not handles:
            raise NotFoundError(f"Cluster '{name}' not found", "List clusters with: kina list")
        try:
            endpoint = self.provider.get_api_server_endpoint(name)
        except NotFoundError:
            endpoint = None
        kubeconfig_path = self.kubeconfig.cluster_path(name)
        return ClusterStatus.from_nodes(
            name,
            handles,
            endpoint=endpoint,
            kubeconfig_path=kubeconfig_path if kubeconfig_path.exists() else None,
        )

    # Images

    def load_image(self, name: str, image: str, archive: Path | None = None) -> list[str]:
        """Load a host image into the containerd of every node of a cluster.

        The image is exported once and imported on all nodes in parallel.
        ``archive`` skips the export and loads an existing tar file instead.

        Returns:
            Names of the nodes the image was loaded into.

        Raises:
            NotFoundError: If the cluster has no nodes or ``archive`` is missing.
            ClusterBusyError: If another operation holds the cluster lock.
            ImageLoadError: If the export fails or any node could not import
                the image. Every node is attempted first.
        """
        if archive is not None and not archive.is_file():
            raise NotFoundError(f"Image archive not found: {archive}")

        with self._lock(name):
            handles = self.provider.list_nodes(name)
            if not handles:
                raise NotFoundError(f"Cluster '{name}' not found", "List clusters with: kina list")

            with tempfile.TemporaryDirectory(prefix="kina-image-") as workdir:
                if archive is None:
                    archive = Path(workdir) / "image.tar"
                    self.provider.save_image(image, archive)

                logger.info(f"Loading image '{image}' into {len(handles)} node(s) of cluster '{name}'")
                with ThreadPoolExecutor(max_workers=len(handles)) as pool:
                    futures = {
                        h.name: pool.submit(self.provider.load_image, h, archive, self.config.image_load_timeout)
                        for h in handles
                    }

            failures = {}
            for node_name, future in futures.items():
                try:
                    future.result()
                except KinaError as e:
                    logger.error(f"[{node_name}] image load failed: {e.message}")
                    failures[node_name] = e.message
            if failures:
                details = "\n".join(f"{node}: {reason}" for node, reason in sorted(failures.items()))
                raise ImageLoadError(f"Failed to load image '{image}' into {len(failures)} node(s)", details)

        return sorted(futures)
