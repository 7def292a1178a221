"""Counter store adapters.

This package provides the atomic increment-with-expiry primitive the admission
engine counts requests with: an in-process store for single-instance use (and
as the degraded-mode fallback) and a Redis store shared across instances.
"""
