"""Provider backed by Apple's ``container`` CLI.

Every node is a full lightweight VM. The CLI only supports naming an
instance: it has no hostname, privileged or network flags, and it assigns
each VM an address on its own. The driver therefore reads addresses back
after boot and does all per-node identity setup from inside the guest.
"""

import json
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import BinaryIO

from kina.config import KinaConfig
from kina.exceptions import (
    AlreadyProvisioned,
    BackendError,
    BackendNotFoundError,
    DeleteError,
    ExecError,
    ExecTimeout,
    ImageLoadError,
    KinaError,
    NotFoundError,
    ProvisionError,
)
from kina.logging_config import get_logger
from kina.models.cluster import ClusterSpec
from kina.models.node import ExecResult, NodeHandle, NodeRole
from kina.polling import RetryError, poll_until
from kina.providers.base import (
    API_SERVER_PORT,
    CLUSTER_LABEL,
    IMAGE_LABEL,
    PRIMARY_LABEL,
    ROLE_LABEL,
    DeleteResult,
    Provider,
    ProviderCapabilities,
)

logger = get_logger(__name__)

# Checked before PATH so that unrelated binaries named "container" lose
CLI_INSTALL_PATHS = [
    "/usr/local/bin/container",
    "/opt/homebrew/bin/container",
    "/usr/local/bin/apple-container",
    "/opt/homebrew/bin/apple-container",
]
CLI_NAMES = ["container", "apple-container"]

STOP_ATTEMPTS = [[], ["--signal", "SIGKILL", "--time", "10"]]
ALREADY_STOPPED_MARKERS = ("is not running", "No such container", "not found")
ALREADY_REMOVED_MARKERS = ("No such container", "not found")

CLI_TIMEOUT = 60


class AppleContainerProvider(Provider):
    """Runtime provider driving the Apple ``container`` CLI."""

    def __init__(self, config: KinaConfig | None = None, cli_path: str | None = None):
        """Initialize the provider.

        Args:
            config: kina configuration (defaults when omitted)
            cli_path: Explicit CLI path, skips detection
        """
        self.config = config or KinaConfig()
        self.cli_path = cli_path or self.detect_cli_path(self.config.cli_path)

    @staticmethod
    def detect_cli_path(configured: Path | None = None) -> str:
        """Locate the ``container`` CLI.

        Raises:
            BackendNotFoundError: If no CLI can be found.
        """
        if configured is not None:
            if configured.exists():
                return str(configured)
            raise BackendNotFoundError(
                f"Configured container CLI does not exist: {configured}",
                "Fix cli_path in ~/.config/kina/config.yaml or remove it to auto-detect",
            )

        for path in CLI_INSTALL_PATHS:
            if Path(path).exists():
                logger.info(f"Found container CLI at: {path}")
                return path

        for name in CLI_NAMES:
            found = shutil.which(name)
            if found:
                logger.info(f"Found container CLI in PATH: {found}")
                return found

        raise BackendNotFoundError(
            "Apple container CLI not found",
            "Install it from https://github.com/apple/container/releases\n"
            "Or set cli_path in ~/.config/kina/config.yaml",
        )

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(multi_node=self.config.multi_node_networking)

    def _run(
        self,
        args: Sequence[str],
        timeout: float | None = CLI_TIMEOUT,
        stdin: str | None = None,
        stdin_file: BinaryIO | None = None,
    ) -> subprocess.CompletedProcess:
        cmd = [self.cli_path, *args]
        logger.debug(f"Executing: {shlex.join(cmd)}")
        # A binary file is handed to the child as its stdin, text goes through a pipe
        feed = {"stdin": stdin_file} if stdin_file is not None else {"input": stdin}
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                **feed,
            )
        except FileNotFoundError:
            raise BackendNotFoundError(
                f"Container CLI disappeared: {self.cli_path}",
                "Reinstall Apple container or update cli_path",
            )

    # Listing

    def _list_instances(self) -> list[dict]:
        try:
            result = self._run(["list", "--format", "json", "--all"])
        except subprocess.TimeoutExpired:
            raise BackendError(
                "Timed out listing containers",
                f"'container list' did not answer within {CLI_TIMEOUT} seconds. "
                "Check the service with: container system status",
            )
        if result.returncode != 0:
            raise BackendError("Failed to list containers", result.stderr.strip())

        stdout = result.stdout.strip()
        if not stdout:
            return []
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse container list output: {e}")
            raise BackendError(
                "Failed to parse container list output",
                "The CLI returned invalid JSON. This may indicate an unsupported CLI version.",
            )
        return data if isinstance(data, list) else []

    @staticmethod
    def parse_instance(entry: dict) -> NodeHandle | None:
        """Turn one ``container list`` entry into a NodeHandle.

        Returns None for instances kina does not manage.
        """
        configuration = entry.get("configuration") or {}
        labels = configuration.get("labels") or {}
        cluster_name = labels.get(CLUSTER_LABEL)
        name = configuration.get("id")
        if not cluster_name or not name:
            return None

        role = NodeRole.WORKER
        if labels.get(ROLE_LABEL, "").startswith(NodeRole.CONTROL_PLANE.value):
            role = NodeRole.CONTROL_PLANE

        address = None
        networks = entry.get("networks") or []
        if networks:
            raw = networks[0].get("address")
            if raw:
                address = raw.split("/")[0]

        return NodeHandle(
            name=name,
            cluster_name=cluster_name,
            role=role,
            address=address,
            status=str(entry.get("status", "unknown")).lower(),
            image=labels.get(IMAGE_LABEL),
            primary=labels.get(PRIMARY_LABEL) == "true",
        )

    def _all_handles(self) -> list[NodeHandle]:
        handles = []
        for entry in self._list_instances():
            handle = self.parse_instance(entry)
            if handle is not None:
                handles.append(handle)
        return handles

    def _find(self, name: str) -> NodeHandle | None:
        return next((h for h in self._all_handles() if h.name == name), None)

    def list_nodes(self, cluster_name: str) -> list[NodeHandle]:
        nodes = [h for h in self._all_handles() if h.cluster_name == cluster_name]
        return sorted(nodes, key=lambda h: (not h.primary, h.role != NodeRole.CONTROL_PLANE, h.name))

    def list_clusters(self) -> list[str]:
        return sorted({h.cluster_name for h in self._all_handles()})

    # Provisioning

    def provision(self, spec: ClusterSpec) -> list[NodeHandle]:
        existing = self.list_nodes(spec.name)
        if existing:
            raise AlreadyProvisioned(
                f"Cluster '{spec.name}' already has {len(existing)} node(s)",
                f"Delete it first with: kina delete {spec.name}",
            )

        names = spec.node_names()
        logger.info(f"Provisioning {len(names)} node(s) for cluster '{spec.name}'")

        handles: list[NodeHandle] = []
        errors: dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=len(names)) as pool:
            futures = {
                pool.submit(self._create_node, spec, name, role, index == 0): name
                for index, (name, role) in enumerate(names)
            }
            for future in as_completed(futures):
                name = futures[future]
                try:
                    handles.append(future.result())
                except KinaError as e:
                    logger.error(f"Failed to provision node '{name}': {e.message}")
                    errors[name] = e.format_message()

        if errors:
            raise ProvisionError(
                f"Failed to provision {len(errors)} of {len(names)} node(s) for cluster '{spec.name}'",
                "\n".join(f"{name}: {reason}" for name, reason in sorted(errors.items())),
            )

        order = {name: index for index, (name, _) in enumerate(names)}
        return sorted(handles, key=lambda h: order[h.name])

    def _create_node(self, spec: ClusterSpec, name: str, role: NodeRole, primary: bool) -> NodeHandle:
        args = [
            "run",
            "-d",
            "--name",
            name,
            "--label",
            f"{CLUSTER_LABEL}={spec.name}",
            "--label",
            f"{ROLE_LABEL}={role.value}",
            "--label",
            f"{IMAGE_LABEL}={spec.image}",
        ]
        if primary:
            args += ["--label", f"{PRIMARY_LABEL}=true"]
        # systemd inside the VM needs these as tmpfs
        args += ["--tmpfs", "/tmp", "--tmpfs", "/run", "--tmpfs", "/run/lock"]
        args += ["--env", "container=docker", spec.image, "/sbin/init"]

        logger.info(f"Creating node '{name}' ({role.value})")
        try:
            result = self._run(args, timeout=max(self.config.boot.timeout, CLI_TIMEOUT))
        except subprocess.TimeoutExpired:
            raise ProvisionError(f"Timed out creating node '{name}'")
        if result.returncode != 0:
            raise ProvisionError(f"Failed to create node '{name}'", result.stderr.strip())

        self._wait_for_running(name)
        handle = self._wait_for_address(name)
        logger.info(f"Node '{name}' running at {handle.address}")
        self._set_hostname(handle)
        return handle

    def _wait_for_running(self, name: str) -> NodeHandle:
        def check():
            handle = self._find(name)
            return handle if handle is not None and handle.running else None

        try:
            return poll_until(check, self.config.boot, retry_on=(BackendError,))
        except (RetryError, BackendError):
            raise ProvisionError(
                f"Node '{name}' did not reach running state within {self.config.boot.timeout:g}s",
                f"Inspect it with: container logs {name}",
            )

    def _wait_for_address(self, name: str) -> NodeHandle:
        # Address assignment can lag behind the running state
        def check():
            handle = self._find(name)
            return handle if handle is not None and handle.address else None

        try:
            return poll_until(check, self.config.address, retry_on=(BackendError,))
        except (RetryError, BackendError):
            raise ProvisionError(
                f"Node '{name}' was not assigned an address within {self.config.address.timeout:g}s"
            )

    def _set_hostname(self, handle: NodeHandle) -> None:
        name = shlex.quote(handle.name)
        script = (
            f"hostname {name} && echo {name} > /etc/hostname && "
            f"(grep -qw {name} /etc/hosts || echo \"127.0.1.1 {handle.name}\" >> /etc/hosts)"
        )
        try:
            result = self.exec_in_node(handle, ["sh", "-c", script])
        except ExecError as e:
            raise ProvisionError(f"Failed to set hostname on node '{handle.name}'", e.message)
        if not result.ok:
            raise ProvisionError(
                f"Failed to set hostname on node '{handle.name}'", result.stderr.strip()
            )

    # Deletion

    def delete_nodes(self, nodes: Sequence[NodeHandle]) -> DeleteResult:
        outcome = DeleteResult()
        for node in nodes:
            try:
                self._delete_instance(node.name)
                outcome.deleted.append(node.name)
            except KinaError as e:
                logger.error(f"Failed to delete node '{node.name}': {e.message}")
                outcome.failures[node.name] = e.details or e.message

        if outcome.failures:
            raise DeleteError(
                f"Failed to delete {len(outcome.failures)} of {len(nodes)} node(s)",
                outcome.failures,
            )
        return outcome

    def _stop_instance(self, name: str) -> None:
        for attempt, extra in enumerate(STOP_ATTEMPTS):
            try:
                result = self._run(["stop", *extra, name])
            except subprocess.TimeoutExpired:
                logger.warning(f"Stop attempt {attempt + 1} for '{name}' timed out")
                continue

            if result.returncode == 0:
                logger.info(f"Stopped node '{name}'")
                return
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in ALREADY_STOPPED_MARKERS):
                logger.debug(f"Node '{name}' already stopped or gone")
                return
            if attempt == 0:
                logger.warning(f"Graceful stop failed for '{name}': {stderr}, trying force stop")

        # Removal may still work, the CLI state can lag behind the VM
        logger.warning(f"All stop attempts failed for '{name}', proceeding with removal anyway")

    def _delete_instance(self, name: str) -> None:
        self._stop_instance(name)

        for use_force in (False, True):
            args = ["delete", "--force", name] if use_force else ["delete", name]
            try:
                result = self._run(args)
            except subprocess.TimeoutExpired:
                if use_force:
                    raise BackendError(f"Timed out removing node '{name}'", f"No answer within {CLI_TIMEOUT} seconds")
                continue

            if result.returncode == 0:
                logger.info(f"Removed node '{name}'")
                return
            stderr = result.stderr.strip()
            if any(marker in stderr for marker in ALREADY_REMOVED_MARKERS):
                logger.debug(f"Node '{name}' already removed")
                return
            if use_force:
                raise BackendError(f"Failed to remove node '{name}'", stderr)
            logger.warning(f"Removal of '{name}' failed ({stderr}), trying force removal")

    # Access

    def get_api_server_endpoint(self, cluster_name: str) -> str:
        candidates = [
            n
            for n in self.list_nodes(cluster_name)
            if n.role == NodeRole.CONTROL_PLANE and n.running and n.address
        ]
        if not candidates:
            raise NotFoundError(
                f"No running control-plane node with an address in cluster '{cluster_name}'",
                f"Check the node with: container list --all | grep {cluster_name}",
            )
        return f"https://{candidates[0].address}:{API_SERVER_PORT}"

    def exec_in_node(
        self,
        node: NodeHandle,
        command: Sequence[str],
        timeout: float | None = None,
        stdin: str | None = None,
    ) -> ExecResult:
        timeout = timeout if timeout is not None else self.config.exec_timeout
        args = ["exec"]
        if stdin is not None:
            args.append("-i")
        args += [node.name, *command]

        try:
            result = self._run(args, timeout=timeout, stdin=stdin)
        except subprocess.TimeoutExpired:
            # subprocess.run has already killed the local exec client
            raise ExecTimeout(
                f"Command timed out after {timeout:g}s on node '{node.name}'",
                shlex.join(command),
            )
        except BackendNotFoundError as e:
            raise ExecError(e.message, e.details)

        return ExecResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)

    # Images

    def save_image(self, image: str, destination: Path) -> None:
        logger.info(f"Exporting image '{image}' to {destination}")
        try:
            result = self._run(
                ["image", "save", "--output", str(destination), image],
                timeout=self.config.image_load_timeout,
            )
        except subprocess.TimeoutExpired:
            raise ImageLoadError(f"Timed out exporting image '{image}'")
        if result.returncode != 0:
            raise ImageLoadError(
                f"Failed to export image '{image}'",
                f"{result.stderr.strip()}\nCheck that it exists with: container image list",
            )

    def copy_to_node(self, node: NodeHandle, source: Path, path: str, timeout: float | None = None) -> None:
        timeout = timeout if timeout is not None else self.config.exec_timeout
        script = f"cat > {shlex.quote(path)}"
        try:
            with open(source, "rb") as f:
                result = self._run(["exec", "-i", node.name, "sh", "-c", script], timeout=timeout, stdin_file=f)
        except subprocess.TimeoutExpired:
            raise ExecTimeout(f"Copying {source.name} to node '{node.name}' timed out after {timeout:g}s")
        except OSError as e:
            raise ExecError(f"Cannot read {source}", str(e))
        if result.returncode != 0:
            raise ExecError(f"Failed to copy {source.name} to {path} on node '{node.name}'", result.stderr.strip())
