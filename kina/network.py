"""Pod network configuration.

kina does not deploy a CNI controller. A static ptp conflist is written to
every node, kubelet is restarted to pick it up, and the node is only
reported Ready once the cluster API agrees.
"""

from kina.cluster_api import ClusterAPI
from kina.config import KinaConfig
from kina.exceptions import ExecError, KubernetesError, NetworkConfigError, NetworkConfigTimeout
from kina.logging_config import get_logger
from kina.models.cluster import ClusterSpec
from kina.models.network import CNI_CONFIG_PATH, CNIConfig
from kina.models.node import Node, NodeState
from kina.polling import RetryError, poll_until, retrying
from kina.providers.base import Provider

logger = get_logger(__name__)


def restart_kubelet(provider: Provider, node: Node, config: KinaConfig) -> None:
    """Restart kubelet on ``node``, retrying per the service_restart policy.

    Raises:
        NetworkConfigError: If every attempt fails.
    """

    def attempt():
        result = provider.exec_in_node(node.handle, ["systemctl", "restart", "kubelet"])
        if not result.ok:
            raise ExecError(f"kubelet restart failed on node '{node.name}'", result.stderr.strip())

    try:
        for try_ in retrying(config.service_restart, retry_on=(ExecError,)):
            with try_:
                attempt()
    except ExecError as e:
        raise NetworkConfigError(f"Failed to restart kubelet on node '{node.name}'", e.details or e.message)
    logger.info(f"[{node.name}] kubelet restarted")


class NetworkConfigurator:
    """Installs the pod network on each node."""

    def __init__(self, provider: Provider, config: KinaConfig, spec: ClusterSpec):
        self.provider = provider
        self.config = config
        self.cni = CNIConfig.for_spec(spec)
        # Rendered once so every node receives identical bytes
        self.conflist = self.cni.render()

    def install(self, node: Node) -> None:
        """Write the conflist and restart kubelet.

        Raises:
            NetworkConfigError: If the file cannot be written or kubelet
                cannot be restarted.
        """
        logger.info(f"[{node.name}] Installing CNI configuration at {CNI_CONFIG_PATH}")
        try:
            self.provider.write_file(node.handle, CNI_CONFIG_PATH, self.conflist)
        except ExecError as e:
            raise NetworkConfigError(f"Failed to write CNI configuration on node '{node.name}'", e.details)
        restart_kubelet(self.provider, node, self.config)

    def wait_ready(self, node: Node, api: ClusterAPI) -> None:
        """Block until the cluster API reports ``node`` Ready.

        Raises:
            NetworkConfigTimeout: If the node_ready policy runs out first.
        """
        try:
            poll_until(lambda: api.node_ready(node.name), self.config.node_ready, retry_on=(KubernetesError,))
        except RetryError:
            raise NetworkConfigTimeout(
                f"Node '{node.name}' did not become Ready within {self.config.node_ready.timeout:g}s",
                f"Check kubelet with: container exec {node.name} journalctl -u kubelet",
            )
        node.transition(NodeState.READY)
        logger.info(f"[{node.name}] Node is Ready")

    def configure(self, node: Node, api: ClusterAPI) -> None:
        """Install the network on ``node`` and wait for it to become Ready."""
        self.install(node)
        self.wait_ready(node, api)
