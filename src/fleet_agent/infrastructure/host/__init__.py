"""
Host Infrastructure
"""

from .host_info import collect_identity, get_resources, snapshot_resources

__all__ = ["collect_identity", "get_resources", "snapshot_resources"]
