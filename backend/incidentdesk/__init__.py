"""Incident report management core: RBAC, incident workflow, encrypted fields."""

__version__ = "1.0.0"
