"""Pydantic schemas for entitlement responses."""
