"""Reusable FastAPI dependencies."""
