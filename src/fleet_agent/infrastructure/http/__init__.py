"""
HTTP Infrastructure

Client for the backend controller.
"""

from .backend_client import BackendClient

__all__ = ["BackendClient"]
