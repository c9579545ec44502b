"""kina: local Kubernetes clusters in Apple container VMs."""

__version__ = "0.1.0"
