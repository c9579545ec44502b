"""Custom exceptions for kina."""


class KinaError(Exception):
    """Base exception for all kina errors."""

    def __init__(self, message: str, details: str = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(KinaError):
    """Exception raised for configuration errors."""

    pass


class ValidationError(KinaError):
    """Exception raised for validation errors."""

    pass


class BackendError(KinaError):
    """Exception raised when a container runtime CLI command fails."""

    pass


class BackendNotFoundError(BackendError):
    """Exception raised when the container runtime CLI cannot be located."""

    pass


class ProvisionError(KinaError):
    """Exception raised when the backend could not create or start a node."""

    pass


class AlreadyProvisioned(ProvisionError):
    """Exception raised when provisioning a cluster that already has nodes."""

    pass


class MultiNodeUnsupported(ProvisionError):
    """Exception raised when the backend cannot network more than one node."""

    pass


class NotFoundError(KinaError):
    """Exception raised when a cluster, node or endpoint does not exist."""

    pass


class ExecError(KinaError):
    """Exception raised when a command could not be run inside a node."""

    pass


class ExecTimeout(ExecError):
    """Exception raised when a command inside a node exceeds its timeout."""

    pass


class BootstrapError(KinaError):
    """Exception raised when kubeadm init/join or runtime setup fails."""

    pass


class NetworkConfigError(KinaError):
    """Exception raised when the pod network cannot be configured on a node."""

    pass


class NetworkConfigTimeout(NetworkConfigError):
    """Exception raised when a node never reports Ready after CNI injection."""

    pass


class CertificateApprovalIncomplete(KinaError):
    """Non-fatal: kubelet serving certificates were not all approved."""

    pass


class KubernetesError(KinaError):
    """Exception raised for Kubernetes API errors."""

    pass


class DeleteError(KinaError):
    """Exception raised when one or more nodes could not be torn down."""

    def __init__(self, message: str, failures: dict[str, str] | None = None, details: str = None):
        self.failures = dict(failures or {})
        if details is None and self.failures:
            details = "\n".join(f"{node}: {reason}" for node, reason in sorted(self.failures.items()))
        super().__init__(message, details)


class ClusterBusyError(KinaError):
    """Exception raised when another lifecycle operation holds the cluster lock."""

    pass


class InvalidStateTransition(KinaError):
    """Exception raised for a backwards or unknown lifecycle transition."""

    pass


class OperationCancelled(KinaError):
    """Exception raised when the caller cancels a running create."""

    pass


class ImageLoadError(KinaError):
    """Exception raised when an image cannot be exported or imported into nodes."""

    pass
