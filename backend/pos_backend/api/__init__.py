"""HTTP surface: FastAPI dependencies and response schemas."""
