"""Node bootstrapping: runtime preparation and kubeadm init/join.

Runtime preparation is a list of declarative settings. Each one is checked
first and only applied when the check fails, so re-running against a node
that is already configured changes nothing.
"""

import ipaddress
import shlex

import yaml
from pydantic import BaseModel, ConfigDict

from kina.config import KinaConfig
from kina.exceptions import BootstrapError, ExecError
from kina.logging_config import get_logger
from kina.models.cluster import ClusterSpec
from kina.models.node import ExecResult, Node, NodeState
from kina.providers.base import API_SERVER_PORT, Provider

logger = get_logger(__name__)

KUBEADM_CONFIG_PATH = "/kind/kubeadm.conf"
KUBELET_CONFIG_PATH = "/var/lib/kubelet/config.yaml"
ADMIN_KUBECONFIG_PATH = "/etc/kubernetes/admin.conf"
MODULES_LOAD_PATH = "/etc/modules-load.d/kina.conf"
SYSCTL_PATH = "/etc/sysctl.d/99-kina.conf"
CRI_SOCKET = "unix:///run/containerd/containerd.sock"
PAUSE_IMAGE = "registry.k8s.io/pause:3.9"
CLUSTER_DOMAIN = "cluster.local"
CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane:NoSchedule-"


class NodeSetting(BaseModel):
    """A node setting expressed as a shell check and a shell fix.

    ``module`` and ``sysctl`` name what is persisted for the next boot once
    the setting holds.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    check: str
    apply: str
    required: bool = True
    timeout: float | None = None
    module: str | None = None
    sysctl: tuple[str, str] | None = None


def _module_setting(module: str, check: str, required: bool) -> NodeSetting:
    return NodeSetting(
        name=f"kernel module {module}",
        check=check,
        apply=f"modprobe {module}",
        required=required,
        module=module,
    )


def _sysctl_setting(key: str, value: str, required: bool) -> NodeSetting:
    return NodeSetting(
        name=f"sysctl {key}={value}",
        check=f'[ "$(sysctl -n {key} 2>/dev/null)" = "{value}" ]',
        apply=f"sysctl -w {key}={value}",
        required=required,
        sysctl=(key, value),
    )


# The guest kernel may lack bridge netfilter; the ptp CNI does not need it
RUNTIME_SETTINGS = [
    NodeSetting(
        name="swap disabled",
        check="[ $(tail -n +2 /proc/swaps | wc -l) -eq 0 ]",
        apply="swapoff -a",
    ),
    _module_setting(
        "overlay", "grep -qw overlay /proc/filesystems || [ -d /sys/module/overlay ]", required=True
    ),
    _module_setting("br_netfilter", "[ -d /sys/module/br_netfilter ]", required=False),
    _sysctl_setting("net.ipv4.ip_forward", "1", required=True),
    _sysctl_setting("net.bridge.bridge-nf-call-iptables", "1", required=False),
    _sysctl_setting("net.bridge.bridge-nf-call-ip6tables", "1", required=False),
    NodeSetting(
        name="containerd running",
        check="systemctl is-active --quiet containerd",
        apply="systemctl enable --now containerd",
    ),
    NodeSetting(
        name=f"pause image {PAUSE_IMAGE}",
        check=f"crictl --runtime-endpoint {CRI_SOCKET} inspecti {PAUSE_IMAGE} >/dev/null 2>&1",
        apply=f"crictl --runtime-endpoint {CRI_SOCKET} pull {PAUSE_IMAGE}",
        required=False,
        timeout=300,
    ),
]


def cluster_dns_address(spec: ClusterSpec) -> str:
    """Return the cluster DNS service address (the 10th host of the service subnet)."""
    return str(ipaddress.IPv4Network(spec.service_subnet)[10])


def render_kubelet_config(spec: ClusterSpec) -> dict:
    """KubeletConfiguration shared by init and the pre-written node config."""
    return {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "cgroupDriver": "systemd",
        "failSwapOn": False,
        "containerRuntimeEndpoint": CRI_SOCKET,
        "authentication": {
            "anonymous": {"enabled": False},
            "webhook": {"enabled": True},
        },
        "authorization": {"mode": "Webhook"},
        "serverTLSBootstrap": True,
        "clusterDomain": CLUSTER_DOMAIN,
        "clusterDNS": [cluster_dns_address(spec)],
    }


def render_kubeadm_config(spec: ClusterSpec, node_name: str, address: str) -> str:
    """Render the multi-document kubeadm configuration for the primary node."""
    init_config = {
        "apiVersion": "kubeadm.k8s.io/v1beta3",
        "kind": "InitConfiguration",
        "localAPIEndpoint": {"advertiseAddress": address, "bindPort": API_SERVER_PORT},
        "nodeRegistration": {
            "name": node_name,
            "criSocket": CRI_SOCKET,
            "kubeletExtraArgs": {"node-ip": address},
        },
    }
    cluster_config = {
        "apiVersion": "kubeadm.k8s.io/v1beta3",
        "kind": "ClusterConfiguration",
        "clusterName": spec.name,
        "kubernetesVersion": spec.kubernetes_version,
        "controlPlaneEndpoint": f"{address}:{API_SERVER_PORT}",
        "networking": {
            "podSubnet": spec.pod_subnet,
            "serviceSubnet": spec.service_subnet,
            "dnsDomain": CLUSTER_DOMAIN,
        },
        "apiServer": {"certSANs": ["localhost", "127.0.0.1", address, node_name]},
    }
    proxy_config = {
        "apiVersion": "kubeproxy.config.k8s.io/v1alpha1",
        "kind": "KubeProxyConfiguration",
        "clusterCIDR": spec.pod_subnet,
    }
    documents = [init_config, cluster_config, render_kubelet_config(spec), proxy_config]
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


def persisted_modules(held: list[NodeSetting]) -> str:
    """modules-load.d content for the kernel modules that actually loaded."""
    return "".join(f"{s.module}\n" for s in held if s.module)


def persisted_sysctls(held: list[NodeSetting]) -> str:
    """sysctl.d content for the sysctls that actually took effect."""
    return "".join(f"{s.sysctl[0]} = {s.sysctl[1]}\n" for s in held if s.sysctl)


class NodeBootstrapper:
    """Turns running nodes into Kubernetes nodes."""

    def __init__(self, provider: Provider, config: KinaConfig):
        self.provider = provider
        self.config = config

    def _exec(self, node: Node, command: list[str], timeout: float | None = None) -> ExecResult:
        try:
            return self.provider.exec_in_node(node.handle, command, timeout=timeout)
        except ExecError as e:
            raise BootstrapError(f"Command failed to run on node '{node.name}'", e.format_message())

    def _shell(self, node: Node, script: str, timeout: float | None = None) -> ExecResult:
        return self._exec(node, ["sh", "-c", script], timeout=timeout)

    def ensure_setting(self, node: Node, setting: NodeSetting) -> bool:
        """Check ``setting`` and apply it when needed.

        Returns:
            True if the setting holds afterwards.
        """
        if self._shell(node, setting.check).ok:
            logger.debug(f"[{node.name}] {setting.name}: already satisfied")
            return True

        logger.info(f"[{node.name}] Applying {setting.name}")
        result = self._shell(node, setting.apply, timeout=setting.timeout)
        if not result.ok:
            logger.debug(f"[{node.name}] {setting.name} apply failed: {result.stderr.strip()}")
        return self._shell(node, setting.check).ok

    def configure_runtime(self, node: Node, spec: ClusterSpec) -> list[str]:
        """Prepare the container runtime and kernel settings on ``node``.

        Returns:
            Warnings for optional settings that could not be applied.

        Raises:
            BootstrapError: If a required setting cannot be applied.
        """
        warnings = []
        held = []
        for setting in RUNTIME_SETTINGS:
            if self.ensure_setting(node, setting):
                held.append(setting)
                continue
            if setting.required:
                raise BootstrapError(
                    f"Node '{node.name}' could not satisfy required setting: {setting.name}",
                    f"Check command: {setting.check}",
                )
            message = f"Node '{node.name}': optional setting not applied: {setting.name}"
            logger.warning(message)
            warnings.append(message)

        # Only settings that hold are persisted
        try:
            self.provider.write_file(node.handle, MODULES_LOAD_PATH, persisted_modules(held))
            self.provider.write_file(node.handle, SYSCTL_PATH, persisted_sysctls(held))
        except ExecError as e:
            raise BootstrapError(f"Failed to persist kernel settings on node '{node.name}'", e.details)

        self.write_kubelet_config(node, spec)
        node.transition(NodeState.RUNTIME_CONFIGURED)
        return warnings

    def write_kubelet_config(self, node: Node, spec: ClusterSpec) -> None:
        content = yaml.safe_dump(render_kubelet_config(spec), default_flow_style=False, sort_keys=False)
        try:
            self.provider.write_file(node.handle, KUBELET_CONFIG_PATH, content)
        except ExecError as e:
            raise BootstrapError(f"Failed to write kubelet configuration on node '{node.name}'", e.details)

    def init_primary(self, node: Node, spec: ClusterSpec) -> str:
        """Run ``kubeadm init`` on the primary control plane.

        Returns:
            The admin kubeconfig generated by kubeadm.

        Raises:
            BootstrapError: If init fails. Never retried.
        """
        if not node.address:
            raise BootstrapError(f"Node '{node.name}' has no address to advertise")

        config = render_kubeadm_config(spec, node.name, node.address)
        try:
            self.provider.write_file(node.handle, KUBEADM_CONFIG_PATH, config)
        except ExecError as e:
            raise BootstrapError(f"Failed to write kubeadm configuration on node '{node.name}'", e.details)

        logger.info(f"[{node.name}] Running kubeadm init")
        result = self._exec(
            node,
            ["kubeadm", "init", f"--config={KUBEADM_CONFIG_PATH}", "--skip-phases=preflight", "--v=1"],
            timeout=self.config.kubeadm_timeout,
        )
        if not result.ok:
            raise BootstrapError(
                f"kubeadm init failed on node '{node.name}' (exit code {result.exit_code})",
                result.stderr.strip() or result.stdout.strip(),
            )

        if spec.is_single_node:
            self.remove_control_plane_taint(node)

        try:
            admin_conf = self.provider.read_file(node.handle, ADMIN_KUBECONFIG_PATH)
        except ExecError as e:
            raise BootstrapError(f"Failed to read admin kubeconfig from node '{node.name}'", e.details)

        node.transition(NodeState.CLUSTER_JOINED)
        return admin_conf

    def remove_control_plane_taint(self, node: Node) -> None:
        """Allow workloads on a control plane. Failure only warns."""
        try:
            result = self._exec(
                node,
                [
                    "kubectl",
                    f"--kubeconfig={ADMIN_KUBECONFIG_PATH}",
                    "taint",
                    "nodes",
                    node.name,
                    CONTROL_PLANE_TAINT,
                ],
            )
        except BootstrapError as e:
            logger.warning(f"[{node.name}] Failed to remove control-plane taint: {e.details or e.message}")
            return
        if result.ok:
            logger.info(f"[{node.name}] Removed control-plane taint")
        else:
            logger.warning(f"[{node.name}] Failed to remove control-plane taint: {result.stderr.strip()}")

    def join_command(self, primary: Node, control_plane: bool = False) -> list[str]:
        """Build a ``kubeadm join`` argv using fresh credentials from ``primary``."""
        result = self._exec(primary, ["kubeadm", "token", "create", "--print-join-command"])
        if not result.ok or not result.stdout.strip():
            raise BootstrapError(
                f"Failed to create join token on node '{primary.name}'", result.stderr.strip()
            )
        command = shlex.split(result.stdout.strip().splitlines()[-1])
        if command[:2] != ["kubeadm", "join"]:
            raise BootstrapError("Unexpected join command output", result.stdout.strip())

        if control_plane:
            result = self._exec(
                primary,
                ["kubeadm", "init", "phase", "upload-certs", "--upload-certs"],
                timeout=self.config.kubeadm_timeout,
            )
            lines = result.stdout.strip().splitlines()
            if not result.ok or not lines:
                raise BootstrapError(
                    f"Failed to upload control-plane certificates on node '{primary.name}'",
                    result.stderr.strip(),
                )
            command += ["--control-plane", "--certificate-key", lines[-1].strip()]

        return command + [f"--cri-socket={CRI_SOCKET}", "--ignore-preflight-errors=all"]

    def join(self, node: Node, join_command: list[str]) -> None:
        """Join ``node`` to the cluster.

        Raises:
            BootstrapError: If the join fails. Never retried.
        """
        if node.is_control_plane and node.address:
            join_command = join_command + [f"--apiserver-advertise-address={node.address}"]

        logger.info(f"[{node.name}] Running kubeadm join")
        result = self._exec(node, join_command, timeout=self.config.kubeadm_timeout)
        if not result.ok:
            raise BootstrapError(
                f"kubeadm join failed on node '{node.name}' (exit code {result.exit_code})",
                result.stderr.strip() or result.stdout.strip(),
            )
        node.transition(NodeState.CLUSTER_JOINED)

    def mark_network_pending(self, node: Node) -> None:
        node.transition(NodeState.NETWORK_PENDING)
