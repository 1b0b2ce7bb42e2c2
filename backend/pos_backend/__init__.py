"""
POS backend: tenant entitlement engine.

Decides which plan a tenant is entitled to at any instant, repairs the
entitlement ledger when temporary upgrades or base subscriptions lapse,
enforces plan/addon resource limits and cascades account activation.
"""

__version__ = "0.1.0"
