"""
Per-source request rate limiting.
"""

from .rate_gate import Permit, RateGate

__all__ = ["Permit", "RateGate"]
