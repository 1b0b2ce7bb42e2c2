"""Business services built on the entitlement engine."""
