"""Entitlement resolution."""

from ledgerline.billing.entitlements.service import EntitlementService, ResolvedEntitlements

__all__ = ["EntitlementService", "ResolvedEntitlements"]
