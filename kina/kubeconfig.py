"""Kubeconfig handling.

The admin kubeconfig produced by kubeadm is renamed for the cluster, its
server rewritten to the reachable API endpoint, written to
``<kubeconfig_dir>/<name>`` and merged into ``<kubeconfig_dir>/config``.
ruamel.yaml keeps the user's existing config formatting intact.
"""

import io
import os
from pathlib import Path

from filelock import FileLock
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from kina.exceptions import ConfigurationError, NotFoundError
from kina.logging_config import get_logger

logger = get_logger(__name__)

SECTIONS = ("clusters", "users", "contexts")


def admin_user(cluster_name: str) -> str:
    return f"{cluster_name}-admin"


class KubeconfigManager:
    """Reads, writes and merges kubeconfig files for kina clusters."""

    def __init__(self, kubeconfig_dir: str | Path):
        """Initialize kubeconfig manager.

        Args:
            kubeconfig_dir: Directory holding per-cluster files and ``config``
        """
        self.kubeconfig_dir = Path(kubeconfig_dir)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=2, offset=0)

    @property
    def merged_path(self) -> Path:
        return self.kubeconfig_dir / "config"

    def cluster_path(self, name: str) -> Path:
        return self.kubeconfig_dir / name

    def _lock(self) -> FileLock:
        return FileLock(str(self.kubeconfig_dir / ".kina-config.lock"))

    def parse(self, text: str) -> dict:
        """Parse kubeconfig text.

        Raises:
            ConfigurationError: If the text is not a kubeconfig mapping.
        """
        try:
            data = self.yaml.load(text)
        except Exception as e:
            raise ConfigurationError("Failed to parse kubeconfig", str(e))
        if not isinstance(data, dict):
            raise ConfigurationError("Invalid kubeconfig", "The top level must be a mapping")
        return data

    def dumps(self, data: dict) -> str:
        stream = io.StringIO()
        self.yaml.dump(data, stream)
        return stream.getvalue()

    def rewrite(self, admin_conf: str, cluster_name: str, server: str) -> dict:
        """Rename the kubeadm admin kubeconfig for ``cluster_name``.

        Returns:
            A kubeconfig with cluster ``<name>``, user ``<name>-admin``,
            context ``<name>`` and ``server`` as the API endpoint.
        """
        data = self.parse(admin_conf)
        clusters = data.get("clusters") or []
        users = data.get("users") or []
        if not clusters or not users:
            raise ConfigurationError(
                "Admin kubeconfig has no cluster or user entry",
                "kubeadm init may not have completed",
            )

        cluster = clusters[0].get("cluster") or CommentedMap()
        cluster["server"] = server
        user = users[0].get("user") or CommentedMap()

        result = CommentedMap()
        result["apiVersion"] = data.get("apiVersion", "v1")
        result["kind"] = data.get("kind", "Config")
        result["clusters"] = [CommentedMap([("cluster", cluster), ("name", cluster_name)])]
        result["users"] = [CommentedMap([("name", admin_user(cluster_name)), ("user", user)])]
        context = CommentedMap([("cluster", cluster_name), ("user", admin_user(cluster_name))])
        result["contexts"] = [CommentedMap([("context", context), ("name", cluster_name)])]
        result["current-context"] = cluster_name
        result["preferences"] = CommentedMap()
        return result

    def _read_merged(self) -> dict:
        if not self.merged_path.exists():
            return CommentedMap(
                [("apiVersion", "v1"), ("kind", "Config"), ("preferences", CommentedMap())]
            )
        with open(self.merged_path) as f:
            data = self.yaml.load(f)
        if data is None:
            return CommentedMap([("apiVersion", "v1"), ("kind", "Config")])
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid kubeconfig: {self.merged_path}", "The top level must be a mapping"
            )
        return data

    def _write_private(self, path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            self.yaml.dump(data, f)
        os.chmod(path, 0o600)

    @staticmethod
    def _drop_entries(data: dict, cluster_name: str) -> None:
        names = {cluster_name, admin_user(cluster_name)}
        for section in SECTIONS:
            entries = data.get(section) or []
            data[section] = [e for e in entries if e.get("name") not in names]

    def write(self, cluster_name: str, kubeconfig: dict) -> Path:
        """Write the cluster kubeconfig and merge it into the shared config.

        Returns:
            Path of the per-cluster kubeconfig file.
        """
        path = self.cluster_path(cluster_name)
        try:
            self._write_private(path, kubeconfig)
            logger.info(f"Wrote kubeconfig: {path}")

            with self._lock():
                merged = self._read_merged()
                self._drop_entries(merged, cluster_name)
                for section in SECTIONS:
                    merged[section] = list(merged.get(section) or []) + list(kubeconfig.get(section) or [])
                merged["current-context"] = cluster_name
                self._write_private(self.merged_path, merged)
            logger.info(f"Merged context '{cluster_name}' into {self.merged_path}")
        except OSError as e:
            raise ConfigurationError(
                f"Failed to write kubeconfig for cluster '{cluster_name}': {e}",
                f"Check permissions on {self.kubeconfig_dir}",
            )
        return path

    def remove(self, cluster_name: str) -> None:
        """Remove the cluster's kubeconfig file and its merged entries."""
        path = self.cluster_path(cluster_name)
        try:
            if path.exists():
                path.unlink()
                logger.info(f"Removed kubeconfig: {path}")

            if not self.merged_path.exists():
                return
            with self._lock():
                merged = self._read_merged()
                self._drop_entries(merged, cluster_name)
                if merged.get("current-context") == cluster_name:
                    merged["current-context"] = ""
                self._write_private(self.merged_path, merged)
        except OSError as e:
            raise ConfigurationError(
                f"Failed to remove kubeconfig for cluster '{cluster_name}': {e}",
                f"Check permissions on {self.kubeconfig_dir}",
            )

    def load(self, cluster_name: str) -> dict:
        """Load the per-cluster kubeconfig.

        Raises:
            NotFoundError: If kina never wrote one for ``cluster_name``.
        """
        path = self.cluster_path(cluster_name)
        if not path.exists():
            raise NotFoundError(
                f"No kubeconfig for cluster '{cluster_name}'",
                f"Expected {path}. Is the cluster Ready?",
            )
        return self.parse(path.read_text())
