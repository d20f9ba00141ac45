"""Idempotent webhook processing, subscription billing and payout settlement."""

__version__ = "1.0.0"
