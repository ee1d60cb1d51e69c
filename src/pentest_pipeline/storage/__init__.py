"""Persistence helpers for pipeline session state."""
