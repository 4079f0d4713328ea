"""
Trade Monitor.

Polls a paginated trade-status API on a fixed interval and forwards every
newly observed OPEN / PROCESSING / PENDING trade to a webhook receiver,
with retry on delivery failure and deduplication across scan cycles.
"""

__version__ = "1.0.0"
