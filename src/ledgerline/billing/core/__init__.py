"""Billing enums and domain models."""
