"""Pause domain layer."""
