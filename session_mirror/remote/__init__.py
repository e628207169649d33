"""
Client of the remote assistant service.
"""

from .client import RemoteClient

__all__ = ["RemoteClient"]
