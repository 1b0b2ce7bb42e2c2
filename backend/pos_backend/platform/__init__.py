"""Cross-cutting platform helpers: time source and request actor context."""
