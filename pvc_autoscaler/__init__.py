"""Annotation driven autoscaler for PersistentVolumeClaims."""

__version__ = "0.1.0"
