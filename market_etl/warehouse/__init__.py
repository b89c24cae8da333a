"""
Persistence: connection pool and store implementations.
"""
