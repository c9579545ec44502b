"""Access to a cluster's Kubernetes API."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from kina.exceptions import KubernetesError
from kina.logging_config import get_logger
from kina.models.certificate import ApprovalState, CertificateRequest

logger = get_logger(__name__)


class ClusterAPI(ABC):
    """The slice of the Kubernetes API kina needs."""

    @abstractmethod
    def node_ready(self, node_name: str) -> bool:
        """Whether ``node_name`` reports the Ready condition as True.

        A node that is not registered yet is simply not ready.
        """

    @abstractmethod
    def list_certificate_requests(self) -> list[CertificateRequest]:
        """All certificate signing requests in the cluster."""

    @abstractmethod
    def approve_certificate_request(self, name: str) -> None:
        """Approve the CSR called ``name``."""

    def pending_certificate_requests(self) -> list[CertificateRequest]:
        return [r for r in self.list_certificate_requests() if r.state == ApprovalState.PENDING]


class KubernetesClusterAPI(ClusterAPI):
    """ClusterAPI backed by the official kubernetes client."""

    def __init__(self, kubeconfig: dict):
        """Build API clients from an in-memory kubeconfig.

        Raises:
            KubernetesError: If the kubeconfig cannot be loaded.
        """
        try:
            api_client = config.new_client_from_config_dict(kubeconfig)
        except Exception as e:
            raise KubernetesError("Failed to load cluster kubeconfig", str(e))
        self.core = client.CoreV1Api(api_client)
        self.certificates = client.CertificatesV1Api(api_client)

    def node_ready(self, node_name: str) -> bool:
        try:
            node = self.core.read_node(node_name)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Node {node_name} not registered yet")
                return False
            raise KubernetesError(f"Failed to read node {node_name}", f"{e.status} {e.reason}")

        conditions = (node.status.conditions if node.status else None) or []
        ready_condition = next((c for c in conditions if c.type == "Ready"), None)
        return ready_condition is not None and ready_condition.status == "True"

    def list_certificate_requests(self) -> list[CertificateRequest]:
        try:
            response = self.certificates.list_certificate_signing_request()
        except ApiException as e:
            raise KubernetesError("Failed to list certificate signing requests", f"{e.status} {e.reason}")
        return [CertificateRequest.from_kubernetes_api(csr) for csr in response.items]

    def approve_certificate_request(self, name: str) -> None:
        try:
            csr = self.certificates.read_certificate_signing_request(name)
            if csr.status is None:
                csr.status = client.V1CertificateSigningRequestStatus()
            csr.status.conditions = list(csr.status.conditions or [])
            csr.status.conditions.append(
                client.V1CertificateSigningRequestCondition(
                    type="Approved",
                    status="True",
                    reason="KinaApprove",
                    message="Approved by kina for a cluster node",
                    last_update_time=datetime.now(timezone.utc),
                )
            )
            self.certificates.replace_certificate_signing_request_approval(name, csr)
        except ApiException as e:
            raise KubernetesError(f"Failed to approve certificate request {name}", f"{e.status} {e.reason}")
        logger.info(f"Approved certificate signing request {name}")
