"""Immutable application state and its observable container."""
