"""Usage counters and limits."""

from ledgerline.billing.usage.service import LimitCheckResult, LimitService

__all__ = ["LimitCheckResult", "LimitService"]
