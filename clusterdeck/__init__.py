"""Local control plane for browsing and operating Kubernetes clusters."""

__all__ = ["__version__"]
__version__ = "0.1.0"
