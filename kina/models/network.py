"""Pod network (CNI) configuration model."""

import json

from pydantic import BaseModel, ConfigDict, Field

CNI_CONFIG_DIR = "/etc/cni/net.d"
CNI_CONFIG_PATH = f"{CNI_CONFIG_DIR}/10-ptp.conflist"


class CNIConfig(BaseModel):
    """Point-to-point CNI configuration shared by every node of a cluster.

    The ptp plugin gives each pod its own veth pair, so no bridge device and
    no bridge netfilter support is needed in the guest kernel. Pods are only
    routable within their node.
    """

    model_config = ConfigDict(frozen=True)

    subnet: str
    cni_version: str = "0.4.0"
    name: str = "ptp-net"
    ip_masq: bool = True
    ipam_type: str = "host-local"
    port_mappings: bool = True
    routes: tuple[str, ...] = Field(default=("0.0.0.0/0",))

    @classmethod
    def for_spec(cls, spec) -> "CNIConfig":
        """Build the network configuration for a ClusterSpec."""
        return cls(subnet=spec.pod_subnet)

    def to_conflist(self) -> dict:
        """Return the conflist document as a dict."""
        plugins = [
            {
                "type": "ptp",
                "ipMasq": self.ip_masq,
                "ipam": {
                    "type": self.ipam_type,
                    "subnet": self.subnet,
                    "routes": [{"dst": dst} for dst in self.routes],
                },
            }
        ]
        if self.port_mappings:
            plugins.append({"type": "portmap", "capabilities": {"portMappings": True}})
        return {"cniVersion": self.cni_version, "name": self.name, "plugins": plugins}

    def render(self) -> str:
        """Render the conflist as JSON. Same config, same bytes."""
        return json.dumps(self.to_conflist(), indent=2) + "\n"
