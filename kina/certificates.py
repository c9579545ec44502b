"""Approval of kubelet serving certificates.

Kubelets run with ``serverTLSBootstrap: true`` and request their serving
certificate through a CSR that nothing approves by default. Without it,
``kubectl logs`` and ``kubectl exec`` fail against the node.
"""

from pydantic import BaseModel, Field

from kina.cluster_api import ClusterAPI
from kina.config import KinaConfig
from kina.exceptions import KinaError, KubernetesError
from kina.logging_config import get_logger
from kina.models.certificate import ApprovalState
from kina.models.node import Node
from kina.network import restart_kubelet
from kina.polling import RetryError, poll_until
from kina.providers.base import Provider

logger = get_logger(__name__)


class ApprovalReport(BaseModel):
    """Outcome of a CSR approval run."""

    complete: bool
    approved: list[str] = Field(default_factory=list)
    missing: list[str] = Field(default_factory=list)


class CertificateApprover:
    """Approves kubelet-serving CSRs for the nodes of one cluster."""

    def __init__(self, provider: Provider, config: KinaConfig):
        self.provider = provider
        self.config = config

    def approve_pending(
        self, api: ClusterAPI, node_names: set[str], approved_nodes: list[str] | None = None
    ) -> list[str]:
        """Approve every pending kubelet-serving CSR for ``node_names``.

        Requests for other signers or other nodes are left alone. Each
        approval is appended to ``approved_nodes`` as soon as it is made, so
        a caller keeps earlier approvals when a later call raises.

        Returns:
            ``approved_nodes``, extended with the nodes approved in this pass.
        """
        if approved_nodes is None:
            approved_nodes = []
        for request in api.pending_certificate_requests():
            if not request.matches_node(node_names):
                logger.debug(f"Ignoring certificate request {request.name} ({request.signer_name})")
                continue
            api.approve_certificate_request(request.name)
            approved_nodes.append(request.node_name)
        return approved_nodes

    def _nodes_with_approved_cert(self, api: ClusterAPI, node_names: set[str]) -> set[str]:
        return {
            r.node_name
            for r in api.list_certificate_requests()
            if r.state == ApprovalState.APPROVED and r.matches_node(node_names)
        }

    def approve(self, api: ClusterAPI, nodes: list[Node]) -> ApprovalReport:
        """Approve serving CSRs until every node has one or the csr policy runs out.

        Kubelet is restarted on each node that received an approval so it
        starts serving with the new certificate.
        """
        node_names = {n.name for n in nodes}
        approved: list[str] = []

        def step():
            self.approve_pending(api, node_names, approved)
            return self._nodes_with_approved_cert(api, node_names) >= node_names

        complete = True
        try:
            poll_until(step, self.config.csr, retry_on=(KubernetesError,))
        except RetryError:
            complete = False

        missing = sorted(node_names - self._safe_approved(api, node_names))
        if missing:
            complete = False
            logger.warning(f"Serving certificates not approved for: {', '.join(missing)}")

        for node in nodes:
            if node.name not in approved:
                continue
            try:
                restart_kubelet(self.provider, node, self.config)
            except KinaError as e:
                logger.warning(f"[{node.name}] kubelet restart after approval failed: {e.message}")

        return ApprovalReport(complete=complete, approved=sorted(set(approved)), missing=missing)

    def _safe_approved(self, api: ClusterAPI, node_names: set[str]) -> set[str]:
        try:
            return self._nodes_with_approved_cert(api, node_names)
        except KubernetesError as e:
            logger.warning(f"Could not list certificate requests: {e.message}")
            return set()
