"""Saved-filter matching and notification delivery."""
