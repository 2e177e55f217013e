"""
Edge Meter.

Turns CDN real-time log records into per-identity usage aggregates and costs.
"""

__version__ = "0.1.0"
