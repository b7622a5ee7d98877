"""Lifecycle, identity, event and in-memory services."""
