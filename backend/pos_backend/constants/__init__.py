"""Shared constants: roles, plans, addon and resource types."""
