"""User configuration for kina.

Loaded from ``~/.config/kina/config.yaml`` (or the path in ``KINA_CONFIG``).
Every field has a default, so a missing file is not an error.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from kina.exceptions import ConfigurationError
from kina.logging_config import get_logger
from kina.models.cluster import DEFAULT_IMAGE, DEFAULT_KUBERNETES_VERSION

logger = get_logger(__name__)

CONFIG_ENV_VAR = "KINA_CONFIG"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / "kina" / "config.yaml"


class PollPolicy(BaseModel):
    """Bounded retry policy for a poll loop."""

    timeout: float = Field(default=60.0, ge=0)
    initial_wait: float = Field(default=1.0, ge=0)
    max_wait: float = Field(default=10.0, ge=0)
    attempts: int | None = Field(default=None, ge=1)


class KinaConfig(BaseModel):
    """kina configuration."""

    default_image: str = DEFAULT_IMAGE
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    cli_path: Path | None = None
    # Apple container VMs cannot reach each other before macOS 26
    multi_node_networking: bool = False
    kubeconfig_dir: Path = Field(default_factory=lambda: Path.home() / ".kube")
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".kina")
    approve_csrs: bool = True
    lock_timeout: float = Field(default=0.0, ge=0)
    exec_timeout: float = Field(default=60.0, gt=0)
    kubeadm_timeout: float = Field(default=600.0, gt=0)
    image_load_timeout: float = Field(default=300.0, gt=0)
    boot: PollPolicy = Field(default_factory=lambda: PollPolicy(timeout=60, initial_wait=1, max_wait=4))
    address: PollPolicy = Field(
        default_factory=lambda: PollPolicy(timeout=30, initial_wait=0.5, max_wait=4)
    )
    node_ready: PollPolicy = Field(
        default_factory=lambda: PollPolicy(timeout=300, initial_wait=2, max_wait=10)
    )
    csr: PollPolicy = Field(default_factory=lambda: PollPolicy(timeout=120, initial_wait=5, max_wait=5))
    service_restart: PollPolicy = Field(
        default_factory=lambda: PollPolicy(timeout=60, initial_wait=1, max_wait=5, attempts=3)
    )

    @field_validator("kubeconfig_dir", "state_dir", "cli_path")
    @classmethod
    def expand_user(cls, v: Path | None) -> Path | None:
        return v.expanduser() if v is not None else None

    @property
    def lock_dir(self) -> Path:
        return self.state_dir / "locks"

    def save(self, path: str | Path) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "KinaConfig":
        """Load configuration from YAML, falling back to defaults.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed or
                contains invalid values.
        """
        if path is None:
            path = os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
        path = Path(path).expanduser()

        if not path.exists():
            logger.debug(f"No configuration file at {path}, using defaults")
            return cls()

        logger.info(f"Loading configuration from: {path}")
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to read configuration file: {path}",
                f"{e}\n\nFix the YAML syntax or remove the file to use defaults.",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid configuration file: {path}", "The top level must be a mapping"
            )

        try:
            return cls(**data)
        except ValidationError as e:
            problems = "\n".join(
                f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid configuration in {path}", problems)
