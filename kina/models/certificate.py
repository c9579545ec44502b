"""Certificate signing request model."""

from enum import Enum

from pydantic import BaseModel

KUBELET_SERVING_SIGNER = "kubernetes.io/kubelet-serving"
NODE_USER_PREFIX = "system:node:"


class ApprovalState(str, Enum):
    """Approval state of a certificate signing request."""

    PENDING = "Pending"
    APPROVED = "Approved"
    DENIED = "Denied"


class CertificateRequest(BaseModel):
    """A CSR as seen through the cluster API. Never persisted."""

    name: str
    username: str
    signer_name: str
    state: ApprovalState = ApprovalState.PENDING

    @property
    def node_name(self) -> str | None:
        """Node the request was made for, if it comes from a kubelet."""
        if self.username.startswith(NODE_USER_PREFIX):
            return self.username[len(NODE_USER_PREFIX) :]
        return None

    @property
    def is_kubelet_serving(self) -> bool:
        return self.signer_name == KUBELET_SERVING_SIGNER

    def matches_node(self, node_names: set[str]) -> bool:
        """Whether this is a kubelet-serving request for one of ``node_names``."""
        return self.is_kubelet_serving and self.node_name in node_names

    @classmethod
    def from_kubernetes_api(cls, csr) -> "CertificateRequest":
        """Build from a ``V1CertificateSigningRequest`` object."""
        state = ApprovalState.PENDING
        conditions = (csr.status.conditions if csr.status else None) or []
        for condition in conditions:
            if condition.status not in (None, "True"):
                continue
            if condition.type == "Denied" or condition.type == "Failed":
                state = ApprovalState.DENIED
                break
            if condition.type == "Approved":
                state = ApprovalState.APPROVED

        return cls(
            name=csr.metadata.name,
            username=csr.spec.username or "",
            signer_name=csr.spec.signer_name or "",
            state=state,
        )
