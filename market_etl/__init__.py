"""
market-etl: rate-gated, cached ingestion of market data with run tracking
and cross-provider symbol resolution.
"""

__version__ = "0.1.0"
