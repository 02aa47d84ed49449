"""
dnsmesh - DNS policy controller.

Reconciles declarative DnsPolicy objects into a fingerprint-keyed index
that DNS enforcement sidecars query over a small HTTP API.
"""

__version__ = "0.1.0"
__author__ = "dnsmesh Contributors"

from dnsmesh.config import DnsMeshConfig, load_config

__all__ = ["DnsMeshConfig", "load_config", "__version__"]
