"""
Ledgerline recurring-billing engine.

Subscription lifecycle, billing periods and proration, usage limits,
entitlements and exactly-once webhook ingestion.
"""

__version__ = "1.0.0"

__all__ = ["__version__"]
