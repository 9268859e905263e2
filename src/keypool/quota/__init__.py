"""
Quota tracking for credential models.

Durable usage counters per (tenant, credential, model) with a short-lived
exhaustion set in the ephemeral cache tier.
"""

from keypool.quota.tracker import Headroom, QuotaTracker, exhaustion_key

__all__ = [
    "Headroom",
    "QuotaTracker",
    "exhaustion_key",
]
