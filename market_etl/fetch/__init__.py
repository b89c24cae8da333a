"""
Upstream fetching through the cache and the rate gate.
"""

from .orchestrator import FetchOrchestrator
from .upstream import HttpUpstream, RequestDescriptor, Upstream, UpstreamResponse

__all__ = [
    "FetchOrchestrator",
    "HttpUpstream",
    "RequestDescriptor",
    "Upstream",
    "UpstreamResponse",
]
