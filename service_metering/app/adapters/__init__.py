"""
HTTP clients for upstream services.
"""

from .decode_client import DecodeClient

__all__ = ["DecodeClient"]
