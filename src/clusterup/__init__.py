"""
ClusterUp - two-node Kubernetes provisioning and TLS service deployment
"""

__version__ = "0.1.0"

from .core import ClusterUp, ClusterUpError

__all__ = ["ClusterUp", "ClusterUpError"]
