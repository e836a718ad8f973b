"""Renewal and failed-payment sweeps."""

from ledgerline.billing.dunning.service import DunningScheduler, SweepResult

__all__ = ["DunningScheduler", "SweepResult"]
