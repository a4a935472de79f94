"""Node provisioning helpers for Azure-backed Kubernetes clusters: scheduling model, image selection, ARM helpers, VM construction and instance lifecycle."""

__version__ = "0.1.0"
__all__ = ["models", "imagefamily", "armutils", "vmutils", "instance"]