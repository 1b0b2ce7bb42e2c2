"""YAML-backed configuration loaders."""
