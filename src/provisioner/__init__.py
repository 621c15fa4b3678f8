"""Multi-cloud managed Kubernetes provisioning reconciler."""

__version__ = "0.1.0"
