"""
Core modules for Edge Meter.

This package contains record decoding, identity extraction, pricing,
rollup and usage lookups.
"""
