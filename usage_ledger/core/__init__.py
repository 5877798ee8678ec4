"""
Core modules for the usage ledger.

This package contains pricing, latency digests, the event buffer, settlement,
aggregation and the quota ledger.
"""
